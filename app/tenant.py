from flask import session, g

from app.errors import PermissionError as AppPermissionError


DEFAULT_TENANT_ID = "tenant-demo"


def current_tenant_id() -> str | None:
    return normalize_tenant_id(session.get("tenant_id")) or normalize_tenant_id(getattr(g, "tenant_id", None))


def normalize_tenant_id(value: str | None) -> str | None:
    tenant_id = str(value or "").strip()
    return tenant_id or None


def scoped_tenant_id(value: str | None = None) -> str:
    return normalize_tenant_id(value) or current_tenant_id() or DEFAULT_TENANT_ID


def require_tenant_access(resource_tenant_id: str | None, tenant_id: str | None = None) -> str:
    scoped = scoped_tenant_id(tenant_id)
    if normalize_tenant_id(resource_tenant_id) != scoped:
        raise AppPermissionError(
            code="tenant_mismatch",
            message_key="permission_denied",
            http_status=403,
            critical=False,
        )
    return scoped
