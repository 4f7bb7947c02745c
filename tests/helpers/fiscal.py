from __future__ import annotations

import json
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Deque, Dict, List

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from app import create_app
from app.config import Config
from app.contexts.fiscal.domain.contracts import SefazContext, SefazResponse
from app.contexts.fiscal.domain.gateway import SefazGateway
from app.contexts.fiscal.infrastructure.certificates import SigningCertificate, StaticCertificateProvider
from app.contexts.fiscal.infrastructure.circuit_breaker import reset_sefaz_circuit_breaker_for_tests
from app.contexts.fiscal.infrastructure.providers import CERTIFICATE_PROVIDER_KEY, GATEWAY_KEY
from app.contexts.fiscal.infrastructure.soap import STEP_EVENT, STEP_QUERY_ACCESS_KEY, STEP_QUERY_RECEIPT, STEP_SUBMIT
from app.observability import reset_metrics_for_tests


ISSUER_CNPJ = "11222333000181"
TENANT_ID = "tenant-fiscal"


@lru_cache(maxsize=4)
def generate_test_certificate(common_name: str = f"EMPRESA TESTE LTDA:{ISSUER_CNPJ}") -> SigningCertificate:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return SigningCertificate(private_key=key, certificate=certificate)


def build_fiscal_app(sandbox, *, gateway: SefazGateway | None = None, certificate=True, **overrides):
    attrs = {"TESTING": True, "AUTH_ENABLED": False, "PROPAGATE_EXCEPTIONS": False}
    attrs.update(overrides)
    app = create_app(sandbox.make_config(Config, **attrs))
    reset_sefaz_circuit_breaker_for_tests()
    reset_metrics_for_tests()
    if gateway is not None:
        app.extensions[GATEWAY_KEY] = gateway
    if certificate:
        app.extensions[CERTIFICATE_PROVIDER_KEY] = StaticCertificateProvider(generate_test_certificate())
    return app


def seed_tenant(db, tenant_id: str = TENANT_ID, *, cnpj: str = ISSUER_CNPJ, uf: str = "SP") -> None:
    db.execute(
        "INSERT INTO tenants (id, name, issuer_cnpj, uf, nfe_environment) VALUES (?, ?, ?, ?, 'homologation')",
        (tenant_id, f"Empresa {tenant_id}", cnpj, uf),
    )
    db.commit()


def sample_document(number: int = 1, *, series: int = 1, issued_at: str = "2026-10-19T10:00:00-03:00") -> Dict[str, Any]:
    return {
        "number": number,
        "series": series,
        "issued_at": issued_at,
        "issuer": {
            "cnpj": ISSUER_CNPJ,
            "name": "EMPRESA TESTE LTDA",
            "ie": "123456789110",
            "address": {
                "street": "RUA DAS FLORES",
                "number": "100",
                "district": "CENTRO",
                "city_code": "3550308",
                "city": "SAO PAULO",
                "uf": "SP",
                "zip": "01001000",
            },
        },
        "recipient": {"document": "12345678909", "name": "CLIENTE TESTE"},
        "items": [
            {
                "code": "SKU-1",
                "description": "PRODUTO TESTE",
                "ncm": "84713012",
                "cfop": "5102",
                "quantity": "2",
                "unit_price": "50.00",
                "icms": {"cst": "00", "rate": "18"},
            }
        ],
        "payments": [{"method": "01", "amount": "100.00"}],
    }


def insert_legacy_nfe(db, *, tenant_id: str, document_id: str, access_key: str, status: str, details: dict | None = None) -> int:
    cursor = db.execute(
        """
        INSERT INTO sales_document_nfes (tenant_id, document_id, nfe_key, nfe_number, nfe_series, status, issued_at, details)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            tenant_id,
            document_id,
            access_key,
            int(access_key[25:34]),
            int(access_key[22:25]),
            status,
            "2026-10-01T10:00:00-03:00",
            json.dumps(details or {}),
        ),
    )
    legacy_id = int(cursor.fetchall()[0][0])
    db.commit()
    return legacy_id


def protocol_xml(access_key: str, protocol_number: str | None, cstat: str = "100") -> str:
    nprot = f"<nProt>{protocol_number}</nProt>" if protocol_number else ""
    return (
        '<protNFe xmlns="http://www.portalfiscal.inf.br/nfe" versao="4.00"><infProt>'
        f"<tpAmb>2</tpAmb><chNFe>{access_key}</chNFe><dhRecbto>2026-10-19T10:05:00-03:00</dhRecbto>"
        f"{nprot}<cStat>{cstat}</cStat><xMotivo>teste</xMotivo></infProt></protNFe>"
    )


def receipt_reply(receipt: str = "351000000000001", code: str = "103") -> SefazResponse:
    return SefazResponse(operation=STEP_SUBMIT, status_code=code, status_message="Lote recebido", receipt_number=receipt)


def processing_reply() -> SefazResponse:
    return SefazResponse(operation=STEP_QUERY_RECEIPT, status_code="105", status_message="Lote em processamento")


def authorized_reply(access_key: str, protocol_number: str, *, operation: str = STEP_QUERY_RECEIPT) -> SefazResponse:
    return SefazResponse(
        operation=operation,
        status_code="100",
        status_message="Autorizado o uso da NF-e",
        protocol_number=protocol_number,
        received_at="2026-10-19T10:05:00-03:00",
        protocol_xml=protocol_xml(access_key, protocol_number),
    )


def status_reply(code: str, *, protocol_number: str | None = None, operation: str = STEP_QUERY_ACCESS_KEY) -> SefazResponse:
    return SefazResponse(
        operation=operation,
        status_code=code,
        status_message=f"cStat {code}",
        protocol_number=protocol_number,
        received_at="2026-10-19T10:05:00-03:00" if protocol_number else None,
    )


def event_reply(event_code: str, *, batch_code: str = "128", event_protocol: str | None = None) -> SefazResponse:
    return SefazResponse(
        operation=STEP_EVENT,
        status_code=event_code,
        status_message=f"evento {event_code}",
        batch_status_code=batch_code,
        event_status_code=event_code,
        event_status_message=f"evento {event_code}",
        event_protocol=event_protocol,
        raw_xml=f"<retEnvEvento><cStat>{batch_code}</cStat><infEvento><cStat>{event_code}</cStat></infEvento></retEnvEvento>",
    )


class ScriptedSefazGateway(SefazGateway):
    """Gateway that answers from per-operation queues; an Exception entry is raised."""

    def __init__(self) -> None:
        self.scripts: Dict[str, Deque[Any]] = defaultdict(deque)
        self.calls: List[tuple] = []

    def script(self, operation: str, *replies: Any) -> "ScriptedSefazGateway":
        self.scripts[operation].extend(replies)
        return self

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def _next(self, operation: str, *args) -> SefazResponse:
        self.calls.append((operation, *args))
        queue = self.scripts[operation]
        if not queue:
            raise AssertionError(f"chamada SEFAZ inesperada: {operation}")
        reply = queue.popleft()
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def submit_for_processing(self, signed_xml: str, context: SefazContext) -> SefazResponse:
        return self._next("submit", context.uf)

    def query_by_receipt(self, receipt_number: str, context: SefazContext) -> SefazResponse:
        return self._next("query_receipt", receipt_number)

    def query_by_access_key(self, access_key: str, context: SefazContext) -> SefazResponse:
        return self._next("query_access_key", access_key)

    def submit_cancellation(self, access_key: str, protocol_number: str, reason: str, context: SefazContext) -> SefazResponse:
        return self._next("cancel", access_key, protocol_number)

    def submit_correction_letter(self, access_key: str, sequence: int, correction_text: str, context: SefazContext) -> SefazResponse:
        return self._next("correction", access_key, int(sequence))
