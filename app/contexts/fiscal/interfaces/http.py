from __future__ import annotations

from flask import Blueprint, jsonify, request, session

from app.contexts.fiscal.application import job_queue, lifecycle
from app.contexts.fiscal.application.resolver import EmissionLookup, resolve_emission_any_tenant
from app.contexts.fiscal.infrastructure.repositories.emission_repository import EmissionRepository
from app.db import get_db
from app.errors import NotFoundError, PermissionError as AppPermissionError, ValidationError
from app.observability import current_request_id
from app.policies import require_roles
from app.tenant import scoped_tenant_id
from app.ui_strings import status_payload, success_message


fiscal_bp = Blueprint("fiscal_nfe", __name__, url_prefix="/api/fiscal/nfe")

_WRITE_ROLES = ("fiscal", "admin")
_READ_ROLES = ("viewer", "fiscal", "admin")


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError(code="payload_invalid", message_key="validation_error")
    return body


def _parse_int(value: str | None, default: int, min_value: int, max_value: int) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return max(min_value, min(parsed, max_value))


def _requested_by() -> str | None:
    return str(session.get("user_email") or "").strip() or None


@fiscal_bp.route("/emissions", methods=["POST"])
def create_emission():
    require_roles(*_WRITE_ROLES)
    tenant_id = scoped_tenant_id()
    body = _json_body()
    db = get_db()

    emission = lifecycle.create_emission(
        db,
        tenant_id,
        body.get("document"),
        sales_document_id=body.get("salesDocumentId"),
        environment=body.get("environment"),
    )
    job_id = None
    if emission["status"] == "signed_offline" and body.get("queue", True):
        job_id = lifecycle.queue_emission(db, emission, request_id=current_request_id())
        emission = EmissionRepository(tenant_id=tenant_id).get_by_id(db, int(emission["id"])) or emission

    return (
        jsonify(
            {
                "success": True,
                "message": success_message("emission_queued") if job_id else None,
                "emissionId": emission["id"],
                "accessKey": emission["access_key"],
                "status": emission["status"],
                "jobId": job_id,
            }
        ),
        201,
    )


@fiscal_bp.route("/emissions/<int:emission_id>", methods=["GET"])
def get_emission(emission_id: int):
    require_roles(*_READ_ROLES)
    tenant_id = scoped_tenant_id()
    db = get_db()

    emission = EmissionRepository(tenant_id=tenant_id).get_by_id(db, emission_id)
    if emission is None:
        foreign = resolve_emission_any_tenant(db, emission_id)
        if foreign is not None:
            raise AppPermissionError(code="tenant_mismatch", message_key="permission_denied", http_status=403)
        raise NotFoundError(code="emission_not_found", message_key="emission_not_found")

    payload = lifecycle.describe_emission(db, tenant_id, emission)
    payload["status_meta"] = status_payload("emissao", emission["status"])
    return jsonify(payload)


@fiscal_bp.route("/cancel", methods=["POST"])
def cancel_emission():
    require_roles(*_WRITE_ROLES)
    tenant_id = scoped_tenant_id()
    body = _json_body()
    lookup = EmissionLookup.from_payload(body)

    result = lifecycle.request_cancellation(
        get_db(),
        tenant_id,
        lookup,
        body.get("reason"),
        requested_by=_requested_by(),
    )
    result["message"] = success_message("cancellation_queued")
    return jsonify(result), 202


@fiscal_bp.route("/correction-letter", methods=["POST"])
def correction_letter():
    require_roles(*_WRITE_ROLES)
    tenant_id = scoped_tenant_id()
    body = _json_body()
    lookup = EmissionLookup.from_payload(body)

    result = lifecycle.request_correction_letter(
        get_db(),
        tenant_id,
        lookup,
        body.get("correctionText"),
        requested_by=_requested_by(),
    )
    result["message"] = success_message("correction_letter_queued")
    return jsonify(result), 202


@fiscal_bp.route("/consulta-situacao", methods=["POST"])
def sync_status():
    require_roles(*_WRITE_ROLES)
    tenant_id = scoped_tenant_id()
    lookup = EmissionLookup.from_payload(_json_body())

    result = lifecycle.request_status_sync(get_db(), tenant_id, lookup)
    result["message"] = success_message("status_sync_queued")
    return jsonify(result), 202


@fiscal_bp.route("/requests/<string:kind>/<int:request_id>/retrigger", methods=["POST"])
def retrigger_request(kind: str, request_id: int):
    require_roles("admin")
    tenant_id = scoped_tenant_id()

    result = lifecycle.retrigger_request(get_db(), tenant_id, kind, request_id)
    result["message"] = success_message("request_retriggered")
    return jsonify(result), 202


@fiscal_bp.route("/jobs", methods=["GET"])
def list_jobs():
    require_roles("admin")
    tenant_id = scoped_tenant_id()
    limit = _parse_int(request.args.get("limit"), default=50, min_value=1, max_value=500)

    items = job_queue.list_jobs(
        get_db(),
        tenant_id=tenant_id,
        status=request.args.get("status"),
        job_type=request.args.get("job_type"),
        limit=limit,
    )
    return jsonify({"items": items, "paging": {"limit": limit, "has_more": len(items) == limit}})


@fiscal_bp.route("/jobs/<int:job_id>/requeue", methods=["POST"])
def requeue_job(job_id: int):
    require_roles("admin")
    tenant_id = scoped_tenant_id()

    new_job_id = job_queue.requeue_failed_job(get_db(), job_id, tenant_id=tenant_id)
    return jsonify({"success": True, "jobId": job_id, "newJobId": new_job_id}), 202
