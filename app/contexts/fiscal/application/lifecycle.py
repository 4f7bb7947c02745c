from __future__ import annotations

import contextlib
import json
import logging
from typing import Any, Dict

from flask import current_app

from app.contexts.fiscal.application.job_queue import (
    DeferredJobError,
    Job,
    RetryableJobError,
    TerminalJobError,
    enqueue_job,
)
from app.contexts.fiscal.application.remote import (
    SefazCircuitOpenError,
    call_sefaz,
    circuit_open_seconds,
    sefaz_context,
)
from app.contexts.fiscal.application.resolver import (
    EmissionLookup,
    ProtocolUnavailableError,
    ensure_protocol,
    require_emission,
)
from app.contexts.fiscal.application.state_machine import (
    LifecycleAnomaly,
    StaleTransitionError,
    apply_remote_verdict,
    reconcile_remote_status,
    transition,
)
from app.contexts.fiscal.domain.access_key import parse_access_key
from app.contexts.fiscal.domain.contracts import SefazContext, SefazResponse, normalize_environment
from app.contexts.fiscal.domain.gateway import SefazGatewayError
from app.contexts.fiscal.domain.jobs import (
    CancelNfeJob,
    CorrectionLetterJob,
    EmitNfeJob,
    PollReceiptJob,
    SyncStatusJob,
)
from app.contexts.fiscal.domain.rules import (
    MAX_CORRECTION_SEQUENCE,
    validate_cancellation_reason,
    validate_correction_text,
)
from app.contexts.fiscal.domain.status import (
    FINAL_STATUSES,
    REQUEST_FAILED,
    REQUEST_PENDING,
    REQUEST_PROCESSED,
    REQUEST_PROCESSING,
    STATUS_AUTHORIZED,
    STATUS_CANCELLED,
    STATUS_DRAFT,
    STATUS_PROCESSING,
    STATUS_QUEUED,
    STATUS_REJECTED,
    STATUS_SIGNED_OFFLINE,
    UNAVAILABLE_CODES,
    VERDICT_NOT_FOUND,
    VERDICT_PROCESSING,
    VERDICT_UNAVAILABLE,
)
from app.contexts.fiscal.infrastructure.artifacts import ArtifactStoreError
from app.contexts.fiscal.infrastructure.certificates import CertificateUnavailableError
from app.contexts.fiscal.infrastructure.providers import (
    get_artifact_store,
    get_certificate_provider,
    get_sefaz_gateway,
)
from app.contexts.fiscal.infrastructure.repositories.audit_repository import (
    AnomalyRepository,
    FiscalStatusEventRepository,
)
from app.contexts.fiscal.infrastructure.repositories.emission_repository import EmissionRepository
from app.contexts.fiscal.infrastructure.repositories.request_repository import (
    CancellationRepository,
    CorrectionLetterRepository,
)
from app.contexts.fiscal.infrastructure.repositories.tenant_repository import TenantRepository
from app.contexts.fiscal.infrastructure.signer import SignatureError, sign_xml
from app.contexts.fiscal.infrastructure.xml_builder import NfeBuildError, build_nfe_xml
from app.db import is_unique_violation
from app.errors import (
    ConflictError,
    IntegrationError,
    NotFoundError,
    PreconditionError,
    SystemError as AppSystemError,
    ValidationError,
    classify_sefaz_failure,
)


_LOGGER = logging.getLogger("app")

KIND_CANCELLATION = "cancellation"
KIND_CORRECTION_LETTER = "correction_letter"
_REQUEST_KINDS = {
    "cancellation": KIND_CANCELLATION,
    "cancel": KIND_CANCELLATION,
    "cancelamento": KIND_CANCELLATION,
    "correction_letter": KIND_CORRECTION_LETTER,
    "correction-letter": KIND_CORRECTION_LETTER,
    "cce": KIND_CORRECTION_LETTER,
}

# SEFAZ answers 573 when the same event was already registered.
DUPLICATE_EVENT_CODE = "573"
_SEQUENCE_ALLOCATION_ATTEMPTS = 5


# ---------------------------------------------------------------------------
# Synchronous side: called from HTTP handlers.
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def _remote_errors_as_app_errors():
    """Translate remote and custody failures on request paths into HTTP-facing errors."""
    try:
        yield
    except CertificateUnavailableError as exc:
        raise PreconditionError(
            code="certificate_unavailable",
            message_key="certificate_unavailable",
            details=str(exc),
        ) from exc
    except SefazGatewayError as exc:
        code, message_key, http_status = classify_sefaz_failure(str(exc), definitive=exc.definitive)
        raise IntegrationError(
            code=code,
            message_key=message_key,
            http_status=http_status,
            details=str(exc),
            payload={"sefazCode": exc.code} if exc.code else None,
        ) from exc
    except LifecycleAnomaly as exc:
        raise ConflictError(
            code="emission_state_conflict",
            message_key="emission_state_conflict",
            details=str(exc),
        ) from exc


def _default_environment() -> str:
    return normalize_environment(current_app.config.get("FISCAL_DEFAULT_ENVIRONMENT"))


def _with_tenant_defaults(document: Dict[str, Any], settings) -> Dict[str, Any]:
    merged = dict(document)
    issuer = dict(merged.get("issuer") or {})
    if not issuer.get("cnpj") and settings.issuer_cnpj:
        issuer["cnpj"] = settings.issuer_cnpj
    address = dict(issuer.get("address") or {})
    if not address.get("uf") and settings.uf:
        address["uf"] = settings.uf
    issuer["address"] = address
    merged["issuer"] = issuer
    return merged


def _build(document: Dict[str, Any], environment: str):
    try:
        return build_nfe_xml(document, environment=environment)
    except NfeBuildError as exc:
        raise ValidationError(
            code="document_invalid",
            message_key="document_invalid",
            details=str(exc),
            payload={"issues": exc.issues},
        ) from exc


def create_emission(
    db,
    tenant_id: str,
    document: Dict[str, Any],
    *,
    sales_document_id: str | None = None,
    environment: str | None = None,
) -> dict:
    """Create (or return) the emission for ``document`` and sign it offline.

    Idempotent on (issuer, model, series, number, environment): a second call
    returns the stored emission. The result is ``signed_offline`` unless the
    emission had already moved further.
    """
    if not isinstance(document, dict):
        raise ValidationError(code="document_invalid", message_key="document_invalid")
    settings = TenantRepository(tenant_id=tenant_id).get_fiscal_settings(
        db, default_environment=_default_environment()
    )
    environment = normalize_environment(environment or document.get("environment"), default=settings.environment)
    document = _with_tenant_defaults(document, settings)
    built = _build(document, environment)
    parts = parse_access_key(built.access_key)

    repo = EmissionRepository(tenant_id=tenant_id)
    lookup = dict(
        issuer_cnpj=parts.cnpj,
        model=parts.model,
        series=parts.series,
        number=parts.number,
        environment=environment,
    )
    emission = repo.get_by_document_number(db, **lookup)
    if emission is None:
        db.begin_immediate()
        try:
            emission_id = repo.create(
                db,
                access_key=built.access_key,
                sales_document_id=str(sales_document_id) if sales_document_id else None,
                document_number=parts.number,
                document_series=parts.series,
                model=parts.model,
                environment=environment,
                uf=parts.uf or str(document["issuer"]["address"]["uf"]).upper(),
                issuer_cnpj=parts.cnpj,
                status=STATUS_DRAFT,
                document_payload=json.dumps(document, ensure_ascii=True, sort_keys=True, default=str),
            )
            FiscalStatusEventRepository(tenant_id=tenant_id).add_event(
                db,
                emission_id=emission_id,
                from_status=None,
                to_status=STATUS_DRAFT,
                reason="emission_created",
            )
            db.commit()
        except Exception as exc:
            db.rollback()
            if not is_unique_violation(exc):
                raise
            emission = repo.get_by_document_number(db, **lookup) or repo.get_by_access_key(db, built.access_key)
            if emission is None:
                raise
        else:
            emission = repo.get_by_id(db, emission_id)
            _LOGGER.info(
                "emission_created",
                extra={"tenant_id": tenant_id, "emission_id": emission_id, "access_key": built.access_key},
            )

    if emission["status"] != STATUS_DRAFT:
        return emission
    if emission["access_key"] != built.access_key and emission.get("document_payload"):
        # A retried draft signs what was first stored, so the key stays stable.
        built = _build(json.loads(emission["document_payload"]), environment)
    return _sign_draft(db, emission, built)


def _sign_draft(db, emission: dict, built) -> dict:
    tenant_id = emission["tenant_id"]
    repo = EmissionRepository(tenant_id=tenant_id)
    try:
        certificate = get_certificate_provider().load(tenant_id)
    except CertificateUnavailableError as exc:
        repo.update_fields(db, int(emission["id"]), {"last_error": f"certificate_unavailable: {exc}"})
        db.commit()
        raise PreconditionError(
            code="certificate_unavailable",
            message_key="certificate_unavailable",
            details=str(exc),
            payload={"emissionId": emission["id"]},
        ) from exc

    store = get_artifact_store()
    unsigned_ref = store.save(tenant_id, built.access_key, "unsigned", built.xml)
    try:
        signed_xml = sign_xml(built.xml, built.reference_id, certificate)
    except SignatureError as exc:
        repo.update_fields(db, int(emission["id"]), {"last_error": f"signature_failed: {exc}"})
        db.commit()
        raise AppSystemError(code="signature_failed", details=str(exc)) from exc
    signed_ref = store.save(tenant_id, built.access_key, "signed", signed_xml)

    db.begin_immediate()
    try:
        current = transition(
            db,
            emission,
            STATUS_SIGNED_OFFLINE,
            expected=(STATUS_DRAFT,),
            reason="signed_offline",
            unsigned_xml_ref=unsigned_ref,
            signed_xml_ref=signed_ref,
            last_error=None,
        )
    except StaleTransitionError:
        # Signed concurrently by another request.
        db.rollback()
        return repo.get_by_id(db, int(emission["id"])) or emission
    except Exception:
        db.rollback()
        raise
    db.commit()
    return current


def queue_emission(db, emission: dict, *, request_id: str | None = None) -> int:
    """``signed_offline -> queued`` plus the NFE_EMIT job, in one transaction."""
    if emission.get("status") != STATUS_SIGNED_OFFLINE:
        raise PreconditionError(
            code="emission_not_queueable",
            message_key="emission_not_queueable",
            payload={"status": emission.get("status")},
        )
    db.begin_immediate()
    try:
        transition(db, emission, STATUS_QUEUED, expected=(STATUS_SIGNED_OFFLINE,), reason="emission_queued")
        job_id = enqueue_job(
            db,
            EmitNfeJob.job_type,
            EmitNfeJob(emission_id=int(emission["id"]), tenant_id=emission["tenant_id"]),
            tenant_id=emission["tenant_id"],
            request_id=request_id,
        )
    except StaleTransitionError as exc:
        db.rollback()
        raise ConflictError(
            code="emission_not_queueable",
            message_key="emission_not_queueable",
            payload={"status": exc.current_status},
        ) from exc
    except Exception:
        db.rollback()
        raise
    db.commit()
    return job_id


def _require_for_request(db, tenant_id: str, lookup: EmissionLookup) -> dict:
    with _remote_errors_as_app_errors():
        return require_emission(db, tenant_id, lookup)


def _enqueue_request_job(db, repo, request_row_id: int, payload, tenant_id: str) -> int:
    try:
        job_id = enqueue_job(db, payload.job_type, payload, tenant_id=tenant_id)
        db.commit()
    except Exception as exc:
        db.rollback()
        repo.mark_status(
            db,
            request_row_id,
            status=REQUEST_FAILED,
            expected=(REQUEST_PENDING,),
            status_message="falha ao enfileirar processamento",
        )
        db.commit()
        _LOGGER.exception(
            "request_enqueue_failed",
            extra={"tenant_id": tenant_id, "request_table": repo.table, "request_row_id": request_row_id},
        )
        raise AppSystemError(code="enqueue_failed", message_key="enqueue_failed", details=str(exc)) from exc
    return job_id


def request_cancellation(
    db,
    tenant_id: str,
    lookup: EmissionLookup,
    reason: object,
    *,
    requested_by: str | None = None,
) -> dict:
    reason = validate_cancellation_reason(reason)
    emission = _require_for_request(db, tenant_id, lookup)
    if emission["status"] == STATUS_CANCELLED:
        raise ConflictError(code="emission_already_cancelled", message_key="emission_already_cancelled")
    if emission["status"] != STATUS_AUTHORIZED:
        raise PreconditionError(
            code="emission_not_authorized",
            message_key="emission_not_authorized",
            payload={"status": emission["status"]},
        )
    with _remote_errors_as_app_errors():
        emission = ensure_protocol(db, emission)
    if emission["status"] == STATUS_CANCELLED:
        raise ConflictError(code="emission_already_cancelled", message_key="emission_already_cancelled")

    repo = CancellationRepository(tenant_id=tenant_id)
    existing = repo.get_for_access_key(db, emission["access_key"])
    if existing:
        raise ConflictError(
            code="cancellation_already_requested",
            message_key="cancellation_already_requested",
            payload={"cancellationId": existing["id"], "requestStatus": existing["status"]},
        )
    try:
        cancellation_id = repo.create(
            db,
            emission_id=int(emission["id"]),
            access_key=emission["access_key"],
            reason=reason,
            requested_by=requested_by,
        )
        db.commit()
    except Exception as exc:
        db.rollback()
        if is_unique_violation(exc):
            raise ConflictError(
                code="cancellation_already_requested",
                message_key="cancellation_already_requested",
            ) from exc
        raise

    job_id = _enqueue_request_job(
        db,
        repo,
        cancellation_id,
        CancelNfeJob(cancellation_id=cancellation_id, tenant_id=tenant_id),
        tenant_id,
    )
    _LOGGER.info(
        "cancellation_requested",
        extra={
            "tenant_id": tenant_id,
            "emission_id": emission["id"],
            "cancellation_id": cancellation_id,
            "job_id": job_id,
        },
    )
    return {
        "success": True,
        "requestId": cancellation_id,
        "cancellationId": cancellation_id,
        "sequence": 1,
        "jobId": job_id,
    }


def _allocate_correction_letter(
    db,
    repo: CorrectionLetterRepository,
    emission: dict,
    correction_text: str,
    requested_by: str | None,
) -> tuple[int, int]:
    for attempt in range(1, _SEQUENCE_ALLOCATION_ATTEMPTS + 1):
        db.begin_immediate()
        try:
            allocated = repo.create_next(
                db,
                emission_id=int(emission["id"]),
                access_key=emission["access_key"],
                correction_text=correction_text,
                requested_by=requested_by,
                max_sequence=MAX_CORRECTION_SEQUENCE,
            )
        except Exception as exc:
            db.rollback()
            if is_unique_violation(exc) and attempt < _SEQUENCE_ALLOCATION_ATTEMPTS:
                continue
            if is_unique_violation(exc):
                raise ConflictError(code="correction_sequence_conflict", message_key="conflict") from exc
            raise
        db.commit()
        if allocated is None:
            raise PreconditionError(
                code="correction_letter_limit",
                message_key="correction_letter_limit",
                payload={"maxSequence": MAX_CORRECTION_SEQUENCE},
            )
        return allocated
    raise ConflictError(code="correction_sequence_conflict", message_key="conflict")


def request_correction_letter(
    db,
    tenant_id: str,
    lookup: EmissionLookup,
    correction_text: object,
    *,
    requested_by: str | None = None,
) -> dict:
    correction_text = validate_correction_text(correction_text)
    emission = _require_for_request(db, tenant_id, lookup)
    if emission["status"] == STATUS_CANCELLED:
        raise ConflictError(code="emission_already_cancelled", message_key="emission_already_cancelled")
    if emission["status"] != STATUS_AUTHORIZED:
        raise PreconditionError(
            code="emission_not_authorized",
            message_key="emission_not_authorized",
            payload={"status": emission["status"]},
        )

    repo = CorrectionLetterRepository(tenant_id=tenant_id)
    correction_id, sequence = _allocate_correction_letter(db, repo, emission, correction_text, requested_by)
    job_id = _enqueue_request_job(
        db,
        repo,
        correction_id,
        CorrectionLetterJob(correction_letter_id=correction_id, tenant_id=tenant_id),
        tenant_id,
    )
    _LOGGER.info(
        "correction_letter_requested",
        extra={
            "tenant_id": tenant_id,
            "emission_id": emission["id"],
            "correction_letter_id": correction_id,
            "sequence": sequence,
            "job_id": job_id,
        },
    )
    return {
        "success": True,
        "requestId": correction_id,
        "correctionLetterId": correction_id,
        "sequence": sequence,
        "jobId": job_id,
    }


def request_status_sync(db, tenant_id: str, lookup: EmissionLookup) -> dict:
    emission = _require_for_request(db, tenant_id, lookup)
    if emission["status"] in {STATUS_DRAFT, STATUS_SIGNED_OFFLINE}:
        raise PreconditionError(
            code="emission_not_transmitted",
            message_key="precondition_failed",
            payload={"status": emission["status"]},
        )
    job_id = enqueue_job(
        db,
        SyncStatusJob.job_type,
        SyncStatusJob(emission_id=int(emission["id"]), tenant_id=tenant_id),
        tenant_id=tenant_id,
    )
    db.commit()
    return {"success": True, "emissionId": emission["id"], "jobId": job_id}


def _request_repository(kind: str, tenant_id: str):
    normalized = _REQUEST_KINDS.get(str(kind or "").strip().lower())
    if normalized == KIND_CANCELLATION:
        return normalized, CancellationRepository(tenant_id=tenant_id)
    if normalized == KIND_CORRECTION_LETTER:
        return normalized, CorrectionLetterRepository(tenant_id=tenant_id)
    raise ValidationError(code="request_kind_invalid", message_key="request_kind_invalid")


def retrigger_request(db, tenant_id: str, kind: str, request_id: int) -> dict:
    """Operator re-trigger: a ``failed`` request goes back to ``pending`` with a fresh job."""
    kind, repo = _request_repository(kind, tenant_id)
    row = repo.get_by_id(db, int(request_id))
    if row is None:
        raise NotFoundError(code="request_not_found", message_key="request_not_found")
    if row["status"] != REQUEST_FAILED:
        raise PreconditionError(
            code="request_not_retriggerable",
            message_key="request_not_retriggerable",
            payload={"requestStatus": row["status"]},
        )
    if not repo.mark_status(db, int(row["id"]), status=REQUEST_PENDING, expected=(REQUEST_FAILED,)):
        db.rollback()
        raise ConflictError(code="request_not_retriggerable", message_key="request_not_retriggerable")
    if kind == KIND_CANCELLATION:
        payload = CancelNfeJob(cancellation_id=int(row["id"]), tenant_id=tenant_id)
    else:
        payload = CorrectionLetterJob(correction_letter_id=int(row["id"]), tenant_id=tenant_id)
    job_id = enqueue_job(db, payload.job_type, payload, tenant_id=tenant_id)
    db.commit()
    _LOGGER.info(
        "request_retriggered",
        extra={"tenant_id": tenant_id, "kind": kind, "request_row_id": row["id"], "job_id": job_id},
    )
    return {"success": True, "kind": kind, "requestId": int(row["id"]), "jobId": job_id}


def describe_emission(db, tenant_id: str, emission: dict) -> dict:
    emission_id = int(emission["id"])
    payload = {key: value for key, value in emission.items() if key != "document_payload"}
    payload["cancellations"] = CancellationRepository(tenant_id=tenant_id).list_for_emission(db, emission_id)
    payload["correction_letters"] = CorrectionLetterRepository(tenant_id=tenant_id).list_for_emission(db, emission_id)
    payload["events"] = FiscalStatusEventRepository(tenant_id=tenant_id).list_for_emission(db, emission_id)
    payload["anomalies"] = AnomalyRepository(tenant_id=tenant_id).list_for_emission(db, emission_id)
    return payload


# ---------------------------------------------------------------------------
# Worker side: job handlers. They run inside ``run_job``, which owns commits.
# ---------------------------------------------------------------------------


def _load_emission(db, tenant_id: str, emission_id: int) -> dict:
    emission = EmissionRepository(tenant_id=tenant_id).get_by_id(db, emission_id)
    if emission is None:
        raise TerminalJobError(f"emissao {emission_id} nao encontrada", code="emission_not_found")
    return emission


def _worker_context(emission: dict) -> SefazContext:
    try:
        return sefaz_context(emission)
    except CertificateUnavailableError as exc:
        raise RetryableJobError(str(exc), code="certificate_unavailable") from exc


def _remote(context: SefazContext, call):
    try:
        return call_sefaz(context, call)
    except SefazCircuitOpenError as exc:
        raise DeferredJobError(str(exc), delay_seconds=circuit_open_seconds()) from exc


def _persist_emission_error(db, emission: dict, exc: SefazGatewayError) -> None:
    message = f"{exc.code}: {exc}" if exc.code else str(exc)
    EmissionRepository(tenant_id=emission["tenant_id"]).update_fields(
        db, int(emission["id"]), {"last_error": message[:2000]}
    )


def _apply_verdict(db, emission: dict, response: SefazResponse, *, reason: str | None = None) -> dict:
    try:
        return apply_remote_verdict(db, emission, response, reason=reason)
    except LifecycleAnomaly as exc:
        # Already recorded in fiscal_anomalies; nothing a retry would change.
        _LOGGER.warning("emission_verdict_anomaly", extra={"emission_id": emission["id"], "error": str(exc)})
        return emission


def _raise_for_query_error(db, emission: dict, exc: SefazGatewayError):
    _persist_emission_error(db, emission, exc)
    if exc.definitive:
        raise TerminalJobError(str(exc), code=exc.code) from exc
    raise RetryableJobError(str(exc), code=exc.code or "sefaz_unavailable") from exc


def handle_emit(db, payload: EmitNfeJob, job: Job) -> None:
    emission = _load_emission(db, payload.tenant_id, payload.emission_id)
    if emission["status"] != STATUS_QUEUED:
        _LOGGER.info("emit_skipped", extra={"emission_id": emission["id"], "status": emission["status"]})
        return
    try:
        signed_xml = get_artifact_store().load(emission["signed_xml_ref"])
    except ArtifactStoreError as exc:
        raise TerminalJobError(str(exc), code="signed_artifact_missing") from exc

    context = _worker_context(emission)
    gateway = get_sefaz_gateway()
    try:
        response = _remote(context, lambda: gateway.submit_for_processing(signed_xml, context))
    except SefazGatewayError as exc:
        if exc.definitive:
            transition(
                db,
                emission,
                STATUS_REJECTED,
                expected=(STATUS_QUEUED,),
                reason="sefaz_submit_rejected",
                status_code=exc.code,
                last_status_code=exc.code,
                last_error=str(exc)[:2000],
            )
            return
        _persist_emission_error(db, emission, exc)
        raise RetryableJobError(str(exc), code=exc.code or "sefaz_unavailable") from exc

    verdict = response.verdict
    if verdict == VERDICT_PROCESSING:
        if not response.receipt_number:
            raise RetryableJobError("lote recebido sem numero de recibo", code=response.status_code)
        transition(
            db,
            emission,
            STATUS_PROCESSING,
            expected=(STATUS_QUEUED,),
            reason="sefaz_receipt_issued",
            status_code=response.status_code,
            receipt_number=response.receipt_number,
            last_status_code=response.status_code,
            last_status_message=response.status_message,
            last_error=None,
        )
        enqueue_job(
            db,
            PollReceiptJob.job_type,
            PollReceiptJob(emission_id=int(emission["id"]), tenant_id=payload.tenant_id),
            tenant_id=payload.tenant_id,
            request_id=job.request_id,
        )
        return
    if verdict in {VERDICT_UNAVAILABLE, VERDICT_NOT_FOUND}:
        apply_remote_verdict(db, emission, response)
        raise RetryableJobError(f"SEFAZ indisponivel: {response.status_message}", code=response.status_code)
    _apply_verdict(db, emission, response, reason="sefaz_sync_verdict")


def handle_poll_receipt(db, payload: PollReceiptJob, job: Job) -> None:
    emission = _load_emission(db, payload.tenant_id, payload.emission_id)
    if emission["status"] in FINAL_STATUSES:
        return
    if emission["status"] != STATUS_PROCESSING:
        raise TerminalJobError(f"emissao em {emission['status']}", code="emission_not_processing")

    context = _worker_context(emission)
    gateway = get_sefaz_gateway()
    access_key = emission["access_key"]
    receipt = emission.get("receipt_number")
    try:
        if receipt:
            response = _remote(context, lambda: gateway.query_by_receipt(receipt, context))
            if response.verdict == VERDICT_NOT_FOUND:
                response = _remote(context, lambda: gateway.query_by_access_key(access_key, context))
        else:
            response = _remote(context, lambda: gateway.query_by_access_key(access_key, context))
    except SefazGatewayError as exc:
        _raise_for_query_error(db, emission, exc)

    if response.verdict in {VERDICT_PROCESSING, VERDICT_NOT_FOUND, VERDICT_UNAVAILABLE}:
        apply_remote_verdict(db, emission, response)
        raise RetryableJobError(
            f"lote ainda em processamento: {response.status_code}",
            code=response.status_code,
        )
    _apply_verdict(db, emission, response, reason="sefaz_receipt_verdict")


def handle_sync_status(db, payload: SyncStatusJob, job: Job) -> None:
    emission = _load_emission(db, payload.tenant_id, payload.emission_id)
    if emission["status"] in {STATUS_DRAFT, STATUS_SIGNED_OFFLINE}:
        raise TerminalJobError(f"emissao em {emission['status']}", code="emission_not_transmitted")

    context = _worker_context(emission)
    gateway = get_sefaz_gateway()
    access_key = emission["access_key"]
    try:
        response = _remote(context, lambda: gateway.query_by_access_key(access_key, context))
    except SefazGatewayError as exc:
        _raise_for_query_error(db, emission, exc)

    if response.verdict == VERDICT_UNAVAILABLE:
        apply_remote_verdict(db, emission, response)
        raise RetryableJobError(f"SEFAZ indisponivel: {response.status_message}", code=response.status_code)
    try:
        current = reconcile_remote_status(db, emission, response)
    except LifecycleAnomaly as exc:
        _LOGGER.warning("status_sync_anomaly", extra={"emission_id": emission["id"], "error": str(exc)})
        return
    _LOGGER.info(
        "status_sync_applied",
        extra={
            "emission_id": emission["id"],
            "status_code": response.status_code,
            "status": current.get("status"),
        },
    )


def _event_code(response: SefazResponse) -> str | None:
    return response.event_status_code or response.batch_status_code or response.status_code


def _event_message(response: SefazResponse) -> str | None:
    return response.event_status_message or response.status_message


def _store_event_artifact(emission: dict, kind: str, raw_xml: str | None) -> None:
    if not raw_xml:
        return
    ref = get_artifact_store().save(emission["tenant_id"], emission["access_key"], kind, raw_xml)
    _LOGGER.info("event_artifact_saved", extra={"emission_id": emission["id"], "kind": kind, "ref": ref})


def _fail_request(db, repo, request_row_id: int, *, code: str | None, message: str) -> None:
    repo.mark_status(
        db,
        request_row_id,
        status=REQUEST_FAILED,
        expected=(REQUEST_PENDING, REQUEST_PROCESSING),
        status_code=code,
        status_message=message[:500],
    )


def _submit_event(db, repo, request_row_id: int, context: SefazContext, call) -> SefazResponse:
    """Send an event; remote failures are persisted on the request row before the job decides."""
    try:
        return _remote(context, call)
    except SefazGatewayError as exc:
        if exc.definitive:
            _fail_request(db, repo, request_row_id, code=exc.code, message=str(exc))
            raise TerminalJobError(str(exc), code=exc.code) from exc
        repo.mark_status(
            db,
            request_row_id,
            status=REQUEST_PENDING,
            expected=(REQUEST_PROCESSING,),
            status_code=exc.code,
            status_message=str(exc)[:500],
        )
        raise RetryableJobError(str(exc), code=exc.code or "sefaz_unavailable") from exc


def _retry_if_paused(db, repo, request_row_id: int, response: SefazResponse) -> None:
    code = _event_code(response)
    if response.batch_status_code in UNAVAILABLE_CODES or code in UNAVAILABLE_CODES:
        repo.mark_status(
            db,
            request_row_id,
            status=REQUEST_PENDING,
            expected=(REQUEST_PROCESSING,),
            status_code=code,
            status_message=_event_message(response),
        )
        raise RetryableJobError(f"SEFAZ indisponivel: {_event_message(response)}", code=code)


def handle_cancel(db, payload: CancelNfeJob, job: Job) -> None:
    repo = CancellationRepository(tenant_id=payload.tenant_id)
    cancellation = repo.get_by_id(db, payload.cancellation_id)
    if cancellation is None:
        raise TerminalJobError(f"cancelamento {payload.cancellation_id} nao encontrado", code="request_not_found")
    if cancellation["status"] in {REQUEST_PROCESSED, REQUEST_FAILED}:
        return
    cancellation_id = int(cancellation["id"])
    emission = _load_emission(db, payload.tenant_id, int(cancellation["emission_id"]))

    if emission["status"] == STATUS_CANCELLED:
        repo.mark_status(
            db,
            cancellation_id,
            status=REQUEST_PROCESSED,
            expected=(REQUEST_PENDING, REQUEST_PROCESSING),
            status_message="NF-e ja cancelada",
            processed=True,
        )
        return
    if emission["status"] != STATUS_AUTHORIZED:
        _fail_request(db, repo, cancellation_id, code="emission_not_authorized", message=f"NF-e em {emission['status']}")
        raise TerminalJobError(f"emissao em {emission['status']}", code="emission_not_authorized")

    context = _worker_context(emission)
    gateway = get_sefaz_gateway()
    try:
        emission = ensure_protocol(db, emission, gateway=gateway, context=context)
    except ProtocolUnavailableError as exc:
        _fail_request(db, repo, cancellation_id, code="protocol_unavailable", message="NF-e sem nProt")
        raise TerminalJobError("NF-e sem protocolo de autorizacao", code="protocol_unavailable") from exc
    except SefazCircuitOpenError as exc:
        raise DeferredJobError(str(exc), delay_seconds=circuit_open_seconds()) from exc
    except SefazGatewayError as exc:
        if exc.definitive:
            _fail_request(db, repo, cancellation_id, code=exc.code, message=str(exc))
            raise TerminalJobError(str(exc), code=exc.code) from exc
        raise RetryableJobError(str(exc), code=exc.code or "sefaz_unavailable") from exc
    except LifecycleAnomaly as exc:
        _fail_request(db, repo, cancellation_id, code="emission_state_conflict", message=str(exc))
        raise TerminalJobError(str(exc), code="emission_state_conflict") from exc
    if emission["status"] == STATUS_CANCELLED:
        repo.mark_status(
            db,
            cancellation_id,
            status=REQUEST_PROCESSED,
            expected=(REQUEST_PENDING, REQUEST_PROCESSING),
            status_message="NF-e cancelada na SEFAZ",
            processed=True,
        )
        return

    if not repo.mark_status(
        db,
        cancellation_id,
        status=REQUEST_PROCESSING,
        expected=(REQUEST_PENDING, REQUEST_PROCESSING),
    ):
        return

    access_key = emission["access_key"]
    protocol = emission["protocol_number"]
    response = _submit_event(
        db,
        repo,
        cancellation_id,
        context,
        lambda: gateway.submit_cancellation(access_key, protocol, cancellation["reason"], context),
    )

    if response.event_succeeded:
        _store_event_artifact(emission, "cancellation", response.raw_xml)
        repo.mark_status(
            db,
            cancellation_id,
            status=REQUEST_PROCESSED,
            expected=(REQUEST_PROCESSING,),
            status_code=_event_code(response),
            status_message=_event_message(response),
            event_protocol=response.event_protocol,
            processed=True,
        )
        try:
            transition(
                db,
                emission,
                STATUS_CANCELLED,
                expected=(STATUS_AUTHORIZED,),
                reason="cancellation_processed",
                status_code=_event_code(response),
                last_status_code=_event_code(response),
                last_status_message=_event_message(response),
            )
        except LifecycleAnomaly as exc:
            _LOGGER.warning("cancellation_anomaly", extra={"emission_id": emission["id"], "error": str(exc)})
        return

    if _event_code(response) == DUPLICATE_EVENT_CODE:
        # Registered by an earlier attempt whose answer was lost: confirm with a status query.
        try:
            remote = _remote(context, lambda: gateway.query_by_access_key(access_key, context))
        except SefazGatewayError as exc:
            repo.mark_status(db, cancellation_id, status=REQUEST_PENDING, expected=(REQUEST_PROCESSING,))
            raise RetryableJobError(str(exc), code=exc.code or "sefaz_unavailable") from exc
        current = reconcile_remote_status(db, emission, remote)
        if current.get("status") == STATUS_CANCELLED:
            repo.mark_status(
                db,
                cancellation_id,
                status=REQUEST_PROCESSED,
                expected=(REQUEST_PROCESSING,),
                status_code=_event_code(response),
                status_message=_event_message(response),
                processed=True,
            )
            return

    _retry_if_paused(db, repo, cancellation_id, response)
    _fail_request(db, repo, cancellation_id, code=_event_code(response), message=str(_event_message(response) or ""))
    raise TerminalJobError(
        f"cancelamento rejeitado: {_event_code(response)} {_event_message(response)}",
        code=_event_code(response),
    )


def handle_correction_letter(db, payload: CorrectionLetterJob, job: Job) -> None:
    repo = CorrectionLetterRepository(tenant_id=payload.tenant_id)
    letter = repo.get_by_id(db, payload.correction_letter_id)
    if letter is None:
        raise TerminalJobError(
            f"carta de correcao {payload.correction_letter_id} nao encontrada",
            code="request_not_found",
        )
    if letter["status"] in {REQUEST_PROCESSED, REQUEST_FAILED}:
        return
    letter_id = int(letter["id"])
    sequence = int(letter["sequence"])
    emission = _load_emission(db, payload.tenant_id, int(letter["emission_id"]))
    if emission["status"] != STATUS_AUTHORIZED:
        _fail_request(db, repo, letter_id, code="emission_not_authorized", message=f"NF-e em {emission['status']}")
        raise TerminalJobError(f"emissao em {emission['status']}", code="emission_not_authorized")

    context = _worker_context(emission)
    gateway = get_sefaz_gateway()
    if not repo.mark_status(db, letter_id, status=REQUEST_PROCESSING, expected=(REQUEST_PENDING, REQUEST_PROCESSING)):
        return

    access_key = emission["access_key"]
    response = _submit_event(
        db,
        repo,
        letter_id,
        context,
        lambda: gateway.submit_correction_letter(access_key, sequence, letter["correction_text"], context),
    )

    duplicate = _event_code(response) == DUPLICATE_EVENT_CODE
    if response.event_succeeded or duplicate:
        if response.event_succeeded:
            _store_event_artifact(emission, "correction", response.raw_xml)
        repo.mark_status(
            db,
            letter_id,
            status=REQUEST_PROCESSED,
            expected=(REQUEST_PROCESSING,),
            status_code=_event_code(response),
            status_message=_event_message(response),
            event_protocol=response.event_protocol,
            processed=True,
        )
        EmissionRepository(tenant_id=payload.tenant_id).advance_correction_sequence(db, int(emission["id"]), sequence)
        _LOGGER.info(
            "correction_letter_processed",
            extra={"emission_id": emission["id"], "sequence": sequence, "duplicate": duplicate},
        )
        return

    _retry_if_paused(db, repo, letter_id, response)
    _fail_request(db, repo, letter_id, code=_event_code(response), message=str(_event_message(response) or ""))
    raise TerminalJobError(
        f"carta de correcao rejeitada: {_event_code(response)} {_event_message(response)}",
        code=_event_code(response),
    )


def emission_dead_letter(db, payload, job: Job, error: str) -> None:
    EmissionRepository(tenant_id=payload.tenant_id).update_fields(
        db,
        int(payload.emission_id),
        {"last_error": f"job_dead_letter[{job.job_type}]: {error}"[:2000]},
    )


def cancellation_dead_letter(db, payload: CancelNfeJob, job: Job, error: str) -> None:
    repo = CancellationRepository(tenant_id=payload.tenant_id)
    _fail_request(db, repo, payload.cancellation_id, code="job_dead_letter", message=error)


def correction_letter_dead_letter(db, payload: CorrectionLetterJob, job: Job, error: str) -> None:
    repo = CorrectionLetterRepository(tenant_id=payload.tenant_id)
    _fail_request(db, repo, payload.correction_letter_id, code="job_dead_letter", message=error)
