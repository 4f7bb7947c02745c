import os

from flask import Flask, Response, g, jsonify, request, session
from werkzeug.exceptions import HTTPException

from app.config import Config
from app.db import close_db, init_db
from app.db_migrations import register_db_cli
from app.observability import (
    configure_json_logging,
    ensure_request_id,
    job_queue_health,
    mark_request_start,
    metrics_snapshot,
    observe_response,
    prometheus_metrics_text,
)


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_error_handlers(app)
    _register_auth(app)
    _register_tenant(app)
    _register_blueprints(app)
    _register_health(app)
    register_db_cli(app)
    _maybe_init_schema(app)

    app.teardown_appcontext(close_db)
    return app


def _ensure_database_dir(app: Flask) -> None:
    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)


def _maybe_init_schema(app: Flask) -> None:
    auto_init = bool(app.config.get("DB_AUTO_INIT", False))
    if app.testing:
        # Testes usam banco temporario criado pelo init_db, sem Alembic.
        auto_init = True
    if not auto_init:
        return

    flask_env = (os.environ.get("FLASK_ENV", "development") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("DB_AUTO_INIT ignorado fora de development.")
        return

    with app.app_context():
        init_db()


def _register_blueprints(app: Flask) -> None:
    from app.contexts.fiscal.interfaces.http import fiscal_bp

    app.register_blueprint(fiscal_bp)


def _register_auth(app: Flask) -> None:
    from app.auth import register_auth

    register_auth(app)


def _register_error_handlers(app: Flask) -> None:
    from app.contexts.fiscal.domain.gateway import SefazGatewayError
    from app.errors import AppError, IntegrationError, SystemError, classify_sefaz_failure

    @app.before_request
    def _ensure_request_id() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _append_request_id(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        return observe_response(response)

    def _log_error(error: AppError, request_id: str) -> None:
        log_method = app.logger.error if error.critical else app.logger.warning
        log_method(
            "application_error",
            extra={
                "request_id": request_id,
                "error_code": error.code,
                "http_status": error.http_status,
                "message_key": error.message_key,
                "details": error.details,
                "request_path": request.path,
                "http_method": request.method,
            },
            exc_info=error.critical,
        )

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        request_id = ensure_request_id()
        _log_error(exc, request_id)
        return jsonify(exc.to_response_payload(request_id)), exc.http_status

    @app.errorhandler(SefazGatewayError)
    def _handle_sefaz_error(exc: SefazGatewayError):
        request_id = ensure_request_id()
        code, message_key, http_status = classify_sefaz_failure(str(exc), definitive=exc.definitive)
        mapped = IntegrationError(
            code=code,
            message_key=message_key,
            http_status=http_status,
            critical=False,
            details=str(exc),
        )
        _log_error(mapped, request_id)
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc

        request_id = ensure_request_id()
        mapped = SystemError(
            code="unexpected_error",
            message_key="unexpected_error",
            http_status=500,
            critical=True,
            details=str(exc),
        )
        app.logger.exception(
            "unexpected_exception",
            extra={
                "request_id": request_id,
                "error_code": mapped.code,
                "request_path": request.path,
                "http_method": request.method,
            },
        )
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status


def _register_tenant(app: Flask) -> None:
    @app.before_request
    def load_tenant() -> None:
        session_tenant = (session.get("tenant_id") or "").strip()
        if session_tenant:
            g.tenant_id = session_tenant
            return

        # Integracoes sem sessao informam o tenant por header.
        header_tenant = (request.headers.get("X-Tenant-Id") or "").strip()
        if header_tenant:
            g.tenant_id = header_tenant
            return

        from app.tenant import DEFAULT_TENANT_ID

        g.tenant_id = DEFAULT_TENANT_ID


def _register_health(app: Flask) -> None:
    from app.contexts.fiscal.infrastructure.circuit_breaker import sefaz_circuit_snapshot

    @app.route("/health")
    def health():
        from app.db import get_db

        db_path = app.config.get("DB_PATH") or "unknown"
        backend = "postgres" if str(db_path).startswith("postgres") else "sqlite"
        payload = {
            "status": "ok",
            "db": backend,
            "env": app.config.get("ENV", "unknown"),
            "sefaz_mode": app.config.get("FISCAL_SEFAZ_MODE"),
            "sefaz_circuit": sefaz_circuit_snapshot(),
            "metrics": {
                "http": metrics_snapshot(),
            },
        }
        try:
            worker = job_queue_health(get_db())
        except Exception:
            app.logger.exception("health_queue_unavailable")
            payload["status"] = "degraded"
            worker = {
                "worker_status": "unknown",
                "queue": {
                    "pending_jobs": 0,
                    "processing_jobs": 0,
                    "failed_jobs": 0,
                    "completed_jobs": 0,
                    "oldest_pending_age_seconds": 0,
                    "last_finished_at": None,
                },
            }
        else:
            if worker.get("backlog_critical"):
                payload["status"] = "degraded"
        payload["worker"] = worker
        return payload, 200

    @app.route("/metrics")
    def metrics():
        from app.db import get_db

        try:
            queue_state = job_queue_health(get_db())
        except Exception:
            app.logger.exception("metrics_queue_unavailable")
            queue_state = None
        return Response(
            prometheus_metrics_text(queue_state=queue_state),
            mimetype="text/plain; version=0.0.4",
        )
