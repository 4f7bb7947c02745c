from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime


ACCESS_KEY_LENGTH = 44

IBGE_UF_CODES = {
    "11": "RO",
    "12": "AC",
    "13": "AM",
    "14": "RR",
    "15": "PA",
    "16": "AP",
    "17": "TO",
    "21": "MA",
    "22": "PI",
    "23": "CE",
    "24": "RN",
    "25": "PB",
    "26": "PE",
    "27": "AL",
    "28": "SE",
    "29": "BA",
    "31": "MG",
    "32": "ES",
    "33": "RJ",
    "35": "SP",
    "41": "PR",
    "42": "SC",
    "43": "RS",
    "50": "MS",
    "51": "MT",
    "52": "GO",
    "53": "DF",
}

UF_IBGE_CODES = {uf: code for code, uf in IBGE_UF_CODES.items()}

_NON_DIGITS = re.compile(r"\D+")


class AccessKeyError(ValueError):
    pass


@dataclass(frozen=True)
class AccessKeyParts:
    uf_code: str
    year_month: str
    cnpj: str
    model: str
    series: int
    number: int
    emission_type: str
    numeric_code: str
    check_digit: int

    @property
    def uf(self) -> str | None:
        return IBGE_UF_CODES.get(self.uf_code)

    def to_dict(self) -> dict:
        return {
            "uf_code": self.uf_code,
            "uf": self.uf,
            "year_month": self.year_month,
            "cnpj": self.cnpj,
            "model": self.model,
            "series": self.series,
            "number": self.number,
            "emission_type": self.emission_type,
            "numeric_code": self.numeric_code,
            "check_digit": self.check_digit,
        }


def only_digits(value: object) -> str:
    return _NON_DIGITS.sub("", str(value or ""))


def normalize_access_key(value: object) -> str:
    return only_digits(value)


def compute_check_digit(base43: str) -> int:
    """Modulo 11 check digit with weights 2..9 cycling from the rightmost digit."""
    digits = only_digits(base43)
    if len(digits) != ACCESS_KEY_LENGTH - 1:
        raise AccessKeyError(f"base da chave deve ter 43 digitos, recebido {len(digits)}")
    total = 0
    weight = 2
    for char in reversed(digits):
        total += int(char) * weight
        weight = 2 if weight == 9 else weight + 1
    remainder = total % 11
    digit = 11 - remainder
    return 0 if digit >= 10 else digit


def _resolve_uf_code(uf_code: str | int) -> str:
    raw = str(uf_code or "").strip().upper()
    if raw in UF_IBGE_CODES:
        return UF_IBGE_CODES[raw]
    digits = only_digits(raw).zfill(2)
    if digits not in IBGE_UF_CODES:
        raise AccessKeyError(f"UF desconhecida: {uf_code!r}")
    return digits


def derive_numeric_code(cnpj: str, series: int, number: int, emitted_at: datetime) -> str:
    seed = f"{only_digits(cnpj)}:{int(series)}:{int(number)}:{emitted_at.strftime('%Y%m%d')}"
    value = int(hashlib.sha256(seed.encode("utf-8")).hexdigest(), 16) % 100_000_000
    if value == int(number) % 100_000_000:
        value = (value + 1) % 100_000_000
    return f"{value:08d}"


def build_access_key(
    uf_code: str | int,
    emitted_at: datetime,
    cnpj: str,
    model: str | int,
    series: int,
    number: int,
    emission_type: str | int = "1",
    numeric_code: str | None = None,
) -> str:
    cnpj_digits = only_digits(cnpj)
    if len(cnpj_digits) != 14:
        raise AccessKeyError("CNPJ do emitente deve ter 14 digitos")
    series = int(series)
    number = int(number)
    if not 0 <= series <= 999:
        raise AccessKeyError("serie fora da faixa 0-999")
    if not 1 <= number <= 999_999_999:
        raise AccessKeyError("numero fora da faixa 1-999999999")

    code = only_digits(numeric_code) if numeric_code else derive_numeric_code(cnpj_digits, series, number, emitted_at)
    if len(code) != 8:
        raise AccessKeyError("codigo numerico deve ter 8 digitos")

    base = (
        _resolve_uf_code(uf_code)
        + emitted_at.strftime("%y%m")
        + cnpj_digits
        + only_digits(model).zfill(2)[-2:]
        + f"{series:03d}"
        + f"{number:09d}"
        + only_digits(emission_type)[:1]
        + code
    )
    return base + str(compute_check_digit(base))


def parse_access_key(value: object) -> AccessKeyParts:
    key = normalize_access_key(value)
    if len(key) != ACCESS_KEY_LENGTH:
        raise AccessKeyError(f"chave de acesso deve ter 44 digitos, recebido {len(key)}")
    if set(key) == {"0"}:
        raise AccessKeyError("chave de acesso zerada")
    expected = compute_check_digit(key[:43])
    if expected != int(key[43]):
        raise AccessKeyError("digito verificador invalido")
    if key[:2] not in IBGE_UF_CODES:
        raise AccessKeyError(f"codigo de UF invalido: {key[:2]}")
    return AccessKeyParts(
        uf_code=key[0:2],
        year_month=key[2:6],
        cnpj=key[6:20],
        model=key[20:22],
        series=int(key[22:25]),
        number=int(key[25:34]),
        emission_type=key[34],
        numeric_code=key[35:43],
        check_digit=int(key[43]),
    )


def is_valid_access_key(value: object) -> bool:
    try:
        parse_access_key(value)
    except AccessKeyError:
        return False
    return True


def uf_from_access_key(value: object) -> str | None:
    key = normalize_access_key(value)
    if len(key) != ACCESS_KEY_LENGTH:
        return None
    return IBGE_UF_CODES.get(key[:2])
