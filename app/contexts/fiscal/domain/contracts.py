from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from app.contexts.fiscal.domain.access_key import UF_IBGE_CODES
from app.contexts.fiscal.domain.status import (
    VERDICT_PROCESSING,
    classify_status,
    is_event_success,
)


ENVIRONMENT_PRODUCTION = "production"
ENVIRONMENT_HOMOLOGATION = "homologation"
ENVIRONMENTS = (ENVIRONMENT_PRODUCTION, ENVIRONMENT_HOMOLOGATION)


def normalize_environment(value: object | None, default: str = ENVIRONMENT_HOMOLOGATION) -> str:
    raw = str(value or "").strip().lower()
    if raw in {"1", "production", "producao", "prod"}:
        return ENVIRONMENT_PRODUCTION
    if raw in {"2", "homologation", "homologacao", "homolog", "hml"}:
        return ENVIRONMENT_HOMOLOGATION
    return default


@dataclass
class SefazContext:
    tenant_id: str
    uf: str
    environment: str
    issuer_cnpj: str
    certificate: Any | None = None

    @property
    def tp_amb(self) -> str:
        return "1" if normalize_environment(self.environment) == ENVIRONMENT_PRODUCTION else "2"

    @property
    def uf_code(self) -> str:
        return UF_IBGE_CODES.get(str(self.uf or "").strip().upper(), "35")


@dataclass
class SefazResponse:
    operation: str
    status_code: str | None = None
    status_message: str | None = None
    receipt_number: str | None = None
    protocol_number: str | None = None
    received_at: str | None = None
    protocol_xml: str | None = None
    event_status_code: str | None = None
    event_status_message: str | None = None
    event_protocol: str | None = None
    batch_status_code: str | None = None
    raw_xml: str | None = None
    http_status: int | None = None

    @property
    def verdict(self) -> str:
        return classify_status(self.status_code)

    @property
    def is_processing(self) -> bool:
        return self.verdict == VERDICT_PROCESSING

    @property
    def event_succeeded(self) -> bool:
        return is_event_success(self.batch_status_code, self.event_status_code)
