from __future__ import annotations

import re
import unicodedata

from app.errors import ValidationError


CANCELLATION_REASON_MIN = 15
CANCELLATION_REASON_MAX = 255
CORRECTION_TEXT_MIN = 15
CORRECTION_TEXT_MAX = 1000
MAX_CORRECTION_SEQUENCE = 20

CORRECTION_USAGE_CONDITIONS = (
    "A Carta de Correcao e disciplinada pelo paragrafo 1o-A do art. 7o do Convenio S/N, "
    "de 15 de dezembro de 1970 e pode ser utilizada para regularizacao de erro ocorrido "
    "na emissao de documento fiscal, desde que o erro nao esteja relacionado com: "
    "I - as variaveis que determinam o valor do imposto tais como: base de calculo, "
    "aliquota, diferenca de preco, quantidade, valor da operacao ou da prestacao; "
    "II - a correcao de dados cadastrais que implique mudanca do remetente ou do destinatario; "
    "III - a data de emissao ou de saida."
)

_WHITESPACE = re.compile(r"\s+")


def normalize_reason(value: object) -> str:
    """Collapse whitespace and drop control characters before the text reaches the XML event."""
    text = "".join(
        char for char in str(value or "") if char in "\t\n\r " or unicodedata.category(char)[0] != "C"
    )
    return _WHITESPACE.sub(" ", text).strip()


def validate_cancellation_reason(value: object) -> str:
    reason = normalize_reason(value)
    if not CANCELLATION_REASON_MIN <= len(reason) <= CANCELLATION_REASON_MAX:
        raise ValidationError(
            code="reason_invalid",
            message_key="reason_invalid",
            http_status=400,
            critical=False,
            details=f"justificativa com {len(reason)} caracteres",
        )
    return reason


def validate_correction_text(value: object) -> str:
    text = normalize_reason(value)
    if not CORRECTION_TEXT_MIN <= len(text) <= CORRECTION_TEXT_MAX:
        raise ValidationError(
            code="correction_text_invalid",
            message_key="correction_text_invalid",
            http_status=400,
            critical=False,
            details=f"correcao com {len(text)} caracteres",
        )
    return text
