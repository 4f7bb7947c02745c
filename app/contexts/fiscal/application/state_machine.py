from __future__ import annotations

import logging
from typing import Iterable

from app.contexts.fiscal.domain.contracts import SefazResponse
from app.contexts.fiscal.domain.status import (
    FINAL_STATUSES,
    STATUS_AUTHORIZED,
    STATUS_CANCELLED,
    STATUS_DENIED,
    STATUS_PROCESSING,
    STATUS_QUEUED,
    VERDICT_AUTHORIZED,
    VERDICT_CANCELLED,
    VERDICT_DENIED,
    VERDICT_REJECTED,
    can_transition,
)
from app.contexts.fiscal.infrastructure.providers import get_artifact_store
from app.contexts.fiscal.infrastructure.repositories.audit_repository import (
    AnomalyRepository,
    FiscalStatusEventRepository,
)
from app.contexts.fiscal.infrastructure.repositories.emission_repository import EmissionRepository
from app.contexts.fiscal.infrastructure.xml_builder import build_nfe_proc
from app.observability import observe_anomaly, observe_emission_transition


_LOGGER = logging.getLogger("app")

ANOMALY_CONFLICTING_VERDICT = "conflicting_verdict"
ANOMALY_PROTOCOL_MISMATCH = "protocol_mismatch"


class StaleTransitionError(RuntimeError):
    def __init__(self, emission_id: int, current_status: str | None, to_status: str) -> None:
        super().__init__(f"emissao {emission_id} em {current_status}, transicao para {to_status} ignorada")
        self.emission_id = emission_id
        self.current_status = current_status
        self.to_status = to_status


class LifecycleAnomaly(RuntimeError):
    """A terminal verdict arrived that disagrees with the stored terminal status."""

    def __init__(self, emission_id: int, current_status: str | None, observed_status: str) -> None:
        super().__init__(f"emissao {emission_id}: status {current_status} conflita com {observed_status}")
        self.emission_id = emission_id
        self.current_status = current_status
        self.observed_status = observed_status


def record_anomaly(
    db,
    emission: dict,
    *,
    kind: str,
    current_value: str | None,
    observed_value: str | None,
    status_code: str | None = None,
    details: str | None = None,
) -> int:
    anomaly_id = AnomalyRepository(tenant_id=emission["tenant_id"]).add(
        db,
        emission_id=int(emission["id"]),
        kind=kind,
        current_value=current_value,
        observed_value=observed_value,
        status_code=status_code,
        details=details,
    )
    observe_anomaly(kind)
    _LOGGER.warning(
        "fiscal_anomaly",
        extra={
            "tenant_id": emission["tenant_id"],
            "emission_id": emission["id"],
            "kind": kind,
            "current_value": current_value,
            "observed_value": observed_value,
            "status_code": status_code,
        },
    )
    return anomaly_id


def _check_protocol(db, emission: dict, protocol_number: str | None, status_code: str | None) -> None:
    stored = str(emission.get("protocol_number") or "").strip()
    incoming = str(protocol_number or "").strip()
    if stored and incoming and stored != incoming:
        record_anomaly(
            db,
            emission,
            kind=ANOMALY_PROTOCOL_MISMATCH,
            current_value=stored,
            observed_value=incoming,
            status_code=status_code,
        )


def transition(
    db,
    emission: dict,
    to_status: str,
    *,
    expected: Iterable[str],
    reason: str,
    status_code: str | None = None,
    protocol_number: str | None = None,
    **fields,
) -> dict:
    """Apply ``to_status`` only if the stored status is one of ``expected``.

    Returns the emission as stored afterwards. Re-applying the terminal
    status already stored is a no-op; a different terminal verdict is
    recorded as an anomaly and raised as ``LifecycleAnomaly``.
    """
    expected = tuple(expected)
    illegal = [status for status in expected if not can_transition(status, to_status)]
    if illegal:
        raise ValueError(f"transicao nao permitida: {', '.join(illegal)} -> {to_status}")

    emission_id = int(emission["id"])
    repo = EmissionRepository(tenant_id=emission["tenant_id"])
    changed = repo.transition(
        db,
        emission_id,
        to_status=to_status,
        expected=expected,
        protocol_number=protocol_number,
        fields=fields,
    )
    current = repo.get_by_id(db, emission_id) or dict(emission)

    if changed:
        _check_protocol(db, current, protocol_number, status_code)
        from_status = emission.get("status") if emission.get("status") in expected else None
        FiscalStatusEventRepository(tenant_id=emission["tenant_id"]).add_event(
            db,
            emission_id=emission_id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            status_code=status_code,
        )
        observe_emission_transition(to_status)
        _LOGGER.info(
            "emission_transition",
            extra={
                "tenant_id": emission["tenant_id"],
                "emission_id": emission_id,
                "from_status": from_status,
                "to_status": to_status,
                "reason": reason,
                "status_code": status_code,
            },
        )
        return current

    current_status = current.get("status")
    already_there = current_status == to_status and to_status in FINAL_STATUSES
    # A late authorization for a document already cancelled adds nothing.
    superseded = current_status == STATUS_CANCELLED and to_status == STATUS_AUTHORIZED
    if already_there or superseded:
        _check_protocol(db, current, protocol_number, status_code)
        return current
    if current_status in FINAL_STATUSES and to_status in FINAL_STATUSES:
        record_anomaly(
            db,
            current,
            kind=ANOMALY_CONFLICTING_VERDICT,
            current_value=current_status,
            observed_value=to_status,
            status_code=status_code,
            details=reason,
        )
        raise LifecycleAnomaly(emission_id, current_status, to_status)
    raise StaleTransitionError(emission_id, current_status, to_status)


def store_authorized_artifact(emission: dict, protocol_xml: str | None) -> str | None:
    """Persist the nfeProc (signed NFe + protNFe) and return its reference."""
    if emission.get("authorized_xml_ref"):
        return emission["authorized_xml_ref"]
    if not protocol_xml:
        return None
    store = get_artifact_store()
    signed_ref = emission.get("signed_xml_ref")
    if not store.exists(signed_ref):
        return None
    proc = build_nfe_proc(store.load(signed_ref), protocol_xml)
    return store.save(emission["tenant_id"], emission["access_key"], "authorized", proc)


def _status_fields(response: SefazResponse) -> dict:
    return {
        "last_status_code": response.status_code,
        "last_status_message": response.status_message,
    }


def apply_remote_verdict(db, emission: dict, response: SefazResponse, *, reason: str | None = None) -> dict:
    """Persist what SEFAZ said about the authorization request of ``emission``."""
    verdict = response.verdict
    repo = EmissionRepository(tenant_id=emission["tenant_id"])

    if verdict in {VERDICT_AUTHORIZED, VERDICT_CANCELLED}:
        fields = dict(_status_fields(response), last_error=None)
        if response.received_at and not emission.get("authorized_at"):
            fields["authorized_at"] = response.received_at
        authorized_ref = store_authorized_artifact(emission, response.protocol_xml)
        if authorized_ref:
            fields["authorized_xml_ref"] = authorized_ref
        current = transition(
            db,
            emission,
            STATUS_AUTHORIZED,
            expected=(STATUS_QUEUED, STATUS_PROCESSING),
            reason=reason or "sefaz_authorized",
            status_code=response.status_code,
            protocol_number=response.protocol_number,
            **fields,
        )
        if verdict == VERDICT_CANCELLED:
            current = transition(
                db,
                current,
                STATUS_CANCELLED,
                expected=(STATUS_AUTHORIZED,),
                reason="sefaz_reported_cancelled",
                status_code=response.status_code,
            )
        return current

    if verdict in {VERDICT_DENIED, VERDICT_REJECTED}:
        fields = _status_fields(response)
        if verdict == VERDICT_REJECTED:
            fields["last_error"] = f"{response.status_code}: {response.status_message}"
        return transition(
            db,
            emission,
            verdict,
            expected=(STATUS_QUEUED, STATUS_PROCESSING),
            reason=reason or f"sefaz_{verdict}",
            status_code=response.status_code,
            protocol_number=response.protocol_number if verdict == STATUS_DENIED else None,
            **fields,
        )

    # Still processing, not found or service paused: only the last code is kept.
    repo.update_fields(db, int(emission["id"]), _status_fields(response))
    return repo.get_by_id(db, int(emission["id"])) or emission


def backfill_protocol(db, emission: dict, response: SefazResponse) -> dict:
    protocol = str(response.protocol_number or "").strip()
    if not protocol:
        return emission
    repo = EmissionRepository(tenant_id=emission["tenant_id"])
    emission_id = int(emission["id"])
    if not emission.get("protocol_number"):
        if repo.set_protocol_if_missing(db, emission_id, protocol, authorized_at=response.received_at):
            _LOGGER.info(
                "emission_protocol_backfilled",
                extra={"tenant_id": emission["tenant_id"], "emission_id": emission_id, "protocol_number": protocol},
            )
        current = repo.get_by_id(db, emission_id) or emission
    else:
        current = emission
    _check_protocol(db, current, protocol, response.status_code)
    if not current.get("authorized_xml_ref"):
        authorized_ref = store_authorized_artifact(current, response.protocol_xml)
        if authorized_ref:
            repo.update_fields(db, emission_id, {"authorized_xml_ref": authorized_ref})
            current = repo.get_by_id(db, emission_id) or current
    return current


def reconcile_remote_status(db, emission: dict, response: SefazResponse) -> dict:
    """Align a stored emission with a query-by-access-key answer."""
    verdict = response.verdict
    status = emission.get("status")
    if verdict in {VERDICT_AUTHORIZED, VERDICT_CANCELLED} and status in {STATUS_AUTHORIZED, STATUS_CANCELLED}:
        current = backfill_protocol(db, emission, response)
        EmissionRepository(tenant_id=emission["tenant_id"]).update_fields(
            db, int(emission["id"]), _status_fields(response)
        )
        if verdict == VERDICT_CANCELLED and current.get("status") == STATUS_AUTHORIZED:
            current = transition(
                db,
                current,
                STATUS_CANCELLED,
                expected=(STATUS_AUTHORIZED,),
                reason="remote_cancellation",
                status_code=response.status_code,
            )
        return EmissionRepository(tenant_id=emission["tenant_id"]).get_by_id(db, int(emission["id"])) or current
    return apply_remote_verdict(db, emission, response, reason="status_sync")
