from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict

from flask import current_app
from lxml import etree

from app.contexts.fiscal.domain.access_key import (
    AccessKeyError,
    normalize_access_key,
    parse_access_key,
)
from app.contexts.fiscal.domain.contracts import SefazContext, normalize_environment
from app.contexts.fiscal.domain.gateway import SefazGateway
from app.contexts.fiscal.domain.status import (
    STATUS_AUTHORIZED,
    STATUS_CANCELLED,
    STATUS_DENIED,
    STATUS_PROCESSING,
    STATUS_REJECTED,
    VERDICT_AUTHORIZED,
    VERDICT_CANCELLED,
)
from app.contexts.fiscal.application.remote import call_sefaz, sefaz_context
from app.contexts.fiscal.application.state_machine import reconcile_remote_status
from app.contexts.fiscal.infrastructure.providers import (
    get_artifact_store,
    get_certificate_provider,
    get_sefaz_gateway,
)
from app.contexts.fiscal.infrastructure.repositories.audit_repository import FiscalStatusEventRepository
from app.contexts.fiscal.infrastructure.repositories.emission_repository import (
    EmissionRepository,
    get_emission_any_tenant,
)
from app.contexts.fiscal.infrastructure.repositories.legacy_nfe_repository import LegacyNfeRepository
from app.contexts.fiscal.infrastructure.repositories.tenant_repository import TenantRepository
from app.db import is_unique_violation
from app.errors import NotFoundError, PermissionError as AppPermissionError, PreconditionError, ValidationError


_LOGGER = logging.getLogger("app")

DEFAULT_UF = "SP"

_LEGACY_STATUS_MAP = {
    "authorized": STATUS_AUTHORIZED,
    "autorizada": STATUS_AUTHORIZED,
    "autorizado": STATUS_AUTHORIZED,
    "emitida": STATUS_AUTHORIZED,
    "issued": STATUS_AUTHORIZED,
    "100": STATUS_AUTHORIZED,
    "cancelled": STATUS_CANCELLED,
    "canceled": STATUS_CANCELLED,
    "cancelada": STATUS_CANCELLED,
    "101": STATUS_CANCELLED,
    "denied": STATUS_DENIED,
    "denegada": STATUS_DENIED,
    "rejected": STATUS_REJECTED,
    "rejeitada": STATUS_REJECTED,
    "error": STATUS_REJECTED,
    "erro": STATUS_REJECTED,
}

# Where older integrations left the authorization protocol inside ``details``.
_LEGACY_PROTOCOL_PATHS = (
    ("protocol_number",),
    ("protNFe", "infProt", "nProt"),
    ("authorization", "nProt"),
    ("nProt",),
    ("sefaz", "nProt"),
    ("protCons", "nProt"),
    ("infProt", "nProt"),
)


class ProtocolUnavailableError(PreconditionError):
    default_code = "protocol_unavailable"
    default_message_key = "protocol_unavailable"
    default_http_status = 422


@dataclass(frozen=True)
class EmissionLookup:
    emission_id: int | None = None
    access_key: str | None = None
    sales_document_id: str | None = None
    document_number: int | None = None
    document_series: int | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.emission_id or self.access_key or self.sales_document_id)

    @staticmethod
    def from_payload(body: Dict[str, Any]) -> "EmissionLookup":
        def optional_int(key: str) -> int | None:
            value = body.get(key)
            if value in (None, ""):
                return None
            try:
                parsed = int(value)
            except (TypeError, ValueError):
                raise ValidationError(code="identifier_invalid", message_key="identifier_required") from None
            if parsed <= 0:
                raise ValidationError(code="identifier_invalid", message_key="identifier_required")
            return parsed

        access_key = None
        if body.get("accessKey") not in (None, ""):
            access_key = normalize_access_key(body.get("accessKey"))
            try:
                parse_access_key(access_key)
            except AccessKeyError as exc:
                raise ValidationError(
                    code="access_key_invalid",
                    message_key="access_key_invalid",
                    details=str(exc),
                ) from exc
        lookup = EmissionLookup(
            emission_id=optional_int("emissionId"),
            access_key=access_key,
            sales_document_id=str(body.get("documentId") or "").strip() or None,
            document_number=optional_int("documentNumber"),
            document_series=optional_int("documentSeries"),
        )
        if lookup.is_empty:
            raise ValidationError(code="identifier_required", message_key="identifier_required")
        return lookup


def _dig(data: Any, path: tuple) -> Any:
    current = data
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _legacy_details(row: dict) -> Dict[str, Any]:
    raw = row.get("details")
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(str(raw or ""))
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def legacy_protocol(row: dict | None) -> str | None:
    if not row:
        return None
    details = _legacy_details(row)
    for path in _LEGACY_PROTOCOL_PATHS:
        value = str(_dig(details, path) or "").strip()
        if value.isdigit():
            return value
    return None


def map_legacy_status(value: object) -> str:
    return _LEGACY_STATUS_MAP.get(str(value or "").strip().lower(), STATUS_PROCESSING)


def protocol_from_xml(xml: str | None) -> str | None:
    if not xml:
        return None
    parser = etree.XMLParser(resolve_entities=False, no_network=True)
    try:
        root = etree.fromstring(xml.encode("utf-8"), parser=parser)
    except etree.XMLSyntaxError:
        return None
    values = root.xpath("//*[local-name()='infProt']/*[local-name()='nProt']/text()")
    return str(values[0]).strip() if values else None


def resolve_emission_any_tenant(db, emission_id: int) -> dict | None:
    return get_emission_any_tenant(db, emission_id)


def _record_origin(db, tenant_id: str, emission_id: int, status: str, reason: str, status_code: str | None) -> None:
    FiscalStatusEventRepository(tenant_id=tenant_id).add_event(
        db,
        emission_id=emission_id,
        from_status=None,
        to_status=status,
        reason=reason,
        status_code=status_code,
    )


def _insert_known_emission(
    db,
    tenant_id: str,
    access_key: str,
    *,
    status: str,
    environment: str,
    reason: str,
    sales_document_id: str | None = None,
    document_number: int | None = None,
    document_series: int | None = None,
    protocol_number: str | None = None,
    authorized_at: str | None = None,
    status_code: str | None = None,
    status_message: str | None = None,
) -> dict | None:
    """Create an emission that already exists remotely, keyed on (tenant_id, access_key)."""
    parts = parse_access_key(access_key)
    repo = EmissionRepository(tenant_id=tenant_id)
    try:
        emission_id = repo.create(
            db,
            access_key=access_key,
            sales_document_id=sales_document_id,
            document_number=int(document_number or parts.number),
            document_series=int(document_series if document_series is not None else parts.series),
            model=parts.model,
            environment=environment,
            uf=parts.uf or DEFAULT_UF,
            issuer_cnpj=parts.cnpj,
            status=status,
            protocol_number=protocol_number,
            authorized_at=authorized_at,
            last_status_code=status_code,
            last_status_message=status_message,
        )
        _record_origin(db, tenant_id, emission_id, status, reason, status_code)
        db.commit()
    except Exception as exc:
        db.rollback()
        if not is_unique_violation(exc):
            raise
        # Someone else backfilled the same key first.
        return repo.get_by_access_key(db, access_key)
    _LOGGER.info(
        "emission_backfilled",
        extra={"tenant_id": tenant_id, "emission_id": emission_id, "status": status, "reason": reason},
    )
    return repo.get_by_id(db, emission_id)


def _default_environment(db, tenant_id: str) -> str:
    default = normalize_environment(current_app.config.get("FISCAL_DEFAULT_ENVIRONMENT"))
    return TenantRepository(tenant_id=tenant_id).get_fiscal_settings(db, default_environment=default).environment


def _find_legacy_row(db, tenant_id: str, lookup: EmissionLookup, access_key: str | None) -> dict | None:
    legacy = LegacyNfeRepository(tenant_id=tenant_id)
    if access_key:
        row = legacy.find_by_key(db, access_key)
        if row:
            return row
    if lookup.sales_document_id:
        for row in legacy.list_for_document(db, lookup.sales_document_id):
            if lookup.document_number is not None and int(row.get("nfe_number") or 0) != lookup.document_number:
                continue
            if lookup.document_series is not None and int(row.get("nfe_series") or 0) != lookup.document_series:
                continue
            if row.get("nfe_key"):
                return row
    if lookup.emission_id:
        return legacy.find_by_id(db, lookup.emission_id)
    return None


def _backfill_from_legacy(db, tenant_id: str, row: dict) -> dict | None:
    access_key = normalize_access_key(row.get("nfe_key"))
    try:
        parse_access_key(access_key)
    except AccessKeyError:
        _LOGGER.warning(
            "legacy_nfe_key_invalid",
            extra={"tenant_id": tenant_id, "legacy_id": row.get("id"), "nfe_key": row.get("nfe_key")},
        )
        return None
    existing = EmissionRepository(tenant_id=tenant_id).get_by_access_key(db, access_key)
    if existing:
        return existing

    details = _legacy_details(row)
    environment = normalize_environment(
        details.get("environment") or details.get("tpAmb"),
        default=_default_environment(db, tenant_id),
    )
    return _insert_known_emission(
        db,
        tenant_id,
        access_key,
        status=map_legacy_status(row.get("status")),
        environment=environment,
        reason="legacy_backfill",
        sales_document_id=str(row.get("document_id") or "") or None,
        document_number=row.get("nfe_number"),
        document_series=row.get("nfe_series"),
        protocol_number=legacy_protocol(row),
        authorized_at=row.get("issued_at"),
    )


def _reconstruction_context(db, tenant_id: str, access_key: str) -> SefazContext:
    parts = parse_access_key(access_key)
    return SefazContext(
        tenant_id=tenant_id,
        uf=parts.uf or DEFAULT_UF,
        environment=_default_environment(db, tenant_id),
        issuer_cnpj=parts.cnpj,
        certificate=get_certificate_provider().load(tenant_id),
    )


def _reconstruct_from_remote(
    db,
    tenant_id: str,
    lookup: EmissionLookup,
    access_key: str,
    gateway: SefazGateway,
    context_factory: Callable[[], SefazContext] | None,
) -> dict | None:
    context = context_factory() if context_factory else _reconstruction_context(db, tenant_id, access_key)
    response = call_sefaz(context, lambda: gateway.query_by_access_key(access_key, context))
    if response.verdict not in {VERDICT_AUTHORIZED, VERDICT_CANCELLED}:
        return None
    emission = _insert_known_emission(
        db,
        tenant_id,
        access_key,
        status=STATUS_AUTHORIZED,
        environment=normalize_environment(context.environment),
        reason="remote_reconstruction",
        sales_document_id=lookup.sales_document_id,
        protocol_number=response.protocol_number,
        authorized_at=response.received_at,
        status_code=response.status_code,
        status_message=response.status_message,
    )
    if emission and response.verdict == VERDICT_CANCELLED:
        emission = reconcile_remote_status(db, emission, response)
        db.commit()
    return emission


def resolve_emission(
    db,
    tenant_id: str,
    lookup: EmissionLookup,
    *,
    gateway: SefazGateway | None = None,
    context_factory: Callable[[], SefazContext] | None = None,
) -> dict | None:
    """Resolve a loose identifier to the single authoritative emission of ``tenant_id``.

    Order: exact id, access key, sales document, legacy backfill, and finally
    a remote reconstruction when only a valid access key is known. Returns
    ``None`` when nothing matches.
    """
    repo = EmissionRepository(tenant_id=tenant_id)
    if lookup.emission_id:
        emission = repo.get_by_id(db, lookup.emission_id)
        if emission:
            return emission

    access_key = normalize_access_key(lookup.access_key) if lookup.access_key else None
    if access_key:
        emission = repo.get_by_access_key(db, access_key)
        if emission:
            return emission

    if lookup.sales_document_id:
        emission = repo.find_by_sales_document(
            db,
            lookup.sales_document_id,
            number=lookup.document_number,
            series=lookup.document_series,
        )
        if emission:
            return emission

    legacy_row = _find_legacy_row(db, tenant_id, lookup, access_key)
    if legacy_row:
        emission = _backfill_from_legacy(db, tenant_id, legacy_row)
        if emission:
            return emission

    if access_key:
        try:
            parse_access_key(access_key)
        except AccessKeyError:
            return None
        return _reconstruct_from_remote(
            db,
            tenant_id,
            lookup,
            access_key,
            gateway or get_sefaz_gateway(),
            context_factory,
        )
    return None


def require_emission(db, tenant_id: str, lookup: EmissionLookup, **kwargs) -> dict:
    """Like ``resolve_emission`` but raises 403 for a foreign id and 404 when nothing matches."""
    emission = resolve_emission(db, tenant_id, lookup, **kwargs)
    if emission is None and lookup.emission_id:
        foreign = resolve_emission_any_tenant(db, lookup.emission_id)
        if foreign and str(foreign.get("tenant_id")) != tenant_id:
            raise AppPermissionError(code="tenant_mismatch", message_key="permission_denied", http_status=403)
    if emission is None:
        raise NotFoundError(code="emission_not_found", message_key="emission_not_found", http_status=404)
    if str(emission.get("tenant_id")) != tenant_id:
        raise AppPermissionError(code="tenant_mismatch", message_key="permission_denied", http_status=403)
    return emission


def ensure_protocol(
    db,
    emission: dict,
    *,
    gateway: SefazGateway | None = None,
    context: SefazContext | None = None,
) -> dict:
    """Return ``emission`` with a persisted ``protocol_number`` or raise ``ProtocolUnavailableError``.

    Sources, in order: the stored column, the authorized artifact, the legacy
    details and a remote query by access key. A remote cancellation seen on
    the way is reconciled. Remote failures propagate as ``SefazGatewayError``.
    """
    if emission.get("protocol_number"):
        return emission

    tenant_id = str(emission["tenant_id"])
    repo = EmissionRepository(tenant_id=tenant_id)
    emission_id = int(emission["id"])

    protocol = None
    store = get_artifact_store()
    if store.exists(emission.get("authorized_xml_ref")):
        protocol = protocol_from_xml(store.load(emission["authorized_xml_ref"]))
    if not protocol:
        protocol = legacy_protocol(LegacyNfeRepository(tenant_id=tenant_id).find_by_key(db, emission["access_key"]))
    if protocol:
        repo.set_protocol_if_missing(db, emission_id, protocol)
        db.commit()
        _LOGGER.info(
            "emission_protocol_recovered",
            extra={"tenant_id": tenant_id, "emission_id": emission_id, "source": "local"},
        )
        return repo.get_by_id(db, emission_id) or emission

    gateway = gateway or get_sefaz_gateway()
    context = context or sefaz_context(emission)
    access_key = emission["access_key"]
    response = call_sefaz(context, lambda: gateway.query_by_access_key(access_key, context))
    try:
        current = reconcile_remote_status(db, emission, response)
    finally:
        # Anomalies found while reconciling are kept even when they abort the caller.
        db.commit()
    if not current.get("protocol_number"):
        raise ProtocolUnavailableError(
            details=f"cStat={response.status_code}",
            payload={"emissionId": emission_id},
        )
    return current
