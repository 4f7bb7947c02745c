from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict

from flask import current_app, g, has_request_context, request


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_JOB_PROCESSING_BUCKETS_MS = (10.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0, 30000.0, 60000.0)
_JOB_BACKOFF_BUCKETS_SECONDS = (60.0, 120.0, 240.0, 480.0, 960.0, 1920.0, 3600.0)
_SEFAZ_CALL_BUCKETS_MS = (50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0, 30000.0, 60000.0)

_LOG_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")


def _normalize_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))


@contextlib.contextmanager
def bind_request_id(request_id: str | None):
    token = _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))
    try:
        yield _LOG_REQUEST_ID_CTX.get()
    finally:
        _LOG_REQUEST_ID_CTX.reset(token)


def _background_request_id(default: str | None = None) -> str:
    request_id = str(_LOG_REQUEST_ID_CTX.get() or "").strip()
    if request_id and request_id != "n/a":
        return request_id
    return default or "n/a"


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id(default="n/a")
            payload["path"] = request.path
            payload["method"] = request.method
        else:
            record_request_id = str(getattr(record, "request_id", "") or "").strip()
            payload["request_id"] = record_request_id or _background_request_id(default="n/a")

        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_") or key in payload:
                continue
            if callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if request_id:
        set_log_request_id(request_id)
        return request_id
    incoming = str(request.headers.get("X-Request-Id") or "").strip()
    request_id = incoming[:128] or str(uuid.uuid4())
    g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _background_request_id(default=default)


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    @staticmethod
    def _bucket_label(limit: float) -> str:
        return f"{limit:g}"

    @classmethod
    def _new_histogram_state(cls, limits: tuple[float, ...]) -> dict:
        return {
            "count": 0,
            "sum": 0.0,
            "buckets": {cls._bucket_label(limit): 0 for limit in limits} | {"+Inf": 0},
        }

    @classmethod
    def _observe_histogram(cls, state: dict, value: float, limits: tuple[float, ...]) -> None:
        amount = max(0.0, float(value))
        state["count"] += 1
        state["sum"] += amount
        for limit in limits:
            if amount <= limit:
                key = cls._bucket_label(limit)
                state["buckets"][key] = int(state["buckets"].get(key, 0)) + 1
        state["buckets"]["+Inf"] = int(state["count"])

    @staticmethod
    def _bump(counter: dict, key, increment: int = 1) -> None:
        counter[key] = int(counter.get(key, 0)) + increment

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = str(route or "unknown").strip() or "unknown"
        status_key = str(int(status_code))

        with self._lock:
            self._requests_total += 1
            if int(status_code) >= 400:
                self._errors_total += 1
            self._bump(self._http_request_total, (method_key, route_key, status_key))
            histogram = self._http_request_duration_ms.setdefault(
                (method_key, route_key),
                self._new_histogram_state(_HTTP_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _HTTP_DURATION_BUCKETS_MS)

    def observe_job(self, job_type: str, result: str, duration_ms: float) -> None:
        key = (str(job_type or "unknown"), str(result or "unknown"))
        with self._lock:
            self._bump(self._job_processed_total, key)
            self._observe_histogram(self._job_processing_time_ms, duration_ms, _JOB_PROCESSING_BUCKETS_MS)

    def observe_job_backoff(self, backoff_seconds: float) -> None:
        with self._lock:
            self._observe_histogram(self._job_retry_backoff_seconds, backoff_seconds, _JOB_BACKOFF_BUCKETS_SECONDS)

    def observe_job_dead_letter(self, job_type: str) -> None:
        with self._lock:
            self._bump(self._job_dead_letter_total, str(job_type or "unknown"))

    def observe_sefaz_call(self, operation: str, outcome: str, duration_ms: float) -> None:
        key = (str(operation or "unknown"), str(outcome or "unknown"))
        with self._lock:
            self._bump(self._sefaz_request_total, key)
            self._observe_histogram(self._sefaz_request_duration_ms, duration_ms, _SEFAZ_CALL_BUCKETS_MS)

    def observe_emission_transition(self, to_status: str) -> None:
        with self._lock:
            self._bump(self._emission_transition_total, str(to_status or "unknown"))

    def observe_anomaly(self, kind: str) -> None:
        with self._lock:
            self._bump(self._anomaly_total, str(kind or "unknown"))

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "requests_total": int(self._requests_total),
                "errors_total": int(self._errors_total),
                "http_request_total": dict(self._http_request_total),
                "http_request_duration_ms": {
                    key: self._copy_histogram(value) for key, value in self._http_request_duration_ms.items()
                },
                "job_processed_total": dict(self._job_processed_total),
                "job_processing_time_ms": self._copy_histogram(self._job_processing_time_ms),
                "job_retry_backoff_seconds": self._copy_histogram(self._job_retry_backoff_seconds),
                "job_dead_letter_total": dict(self._job_dead_letter_total),
                "sefaz_request_total": dict(self._sefaz_request_total),
                "sefaz_request_duration_ms": self._copy_histogram(self._sefaz_request_duration_ms),
                "emission_transition_total": dict(self._emission_transition_total),
                "anomaly_total": dict(self._anomaly_total),
            }

    @staticmethod
    def _copy_histogram(state: dict) -> dict:
        return {
            "count": int(state["count"]),
            "sum": float(state["sum"]),
            "buckets": {label: int(count) for label, count in state["buckets"].items()},
        }

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._errors_total = 0
            self._http_request_total: Dict[tuple[str, str, str], int] = {}
            self._http_request_duration_ms: Dict[tuple[str, str], dict] = {}
            self._job_processed_total: Dict[tuple[str, str], int] = {}
            self._job_processing_time_ms = self._new_histogram_state(_JOB_PROCESSING_BUCKETS_MS)
            self._job_retry_backoff_seconds = self._new_histogram_state(_JOB_BACKOFF_BUCKETS_SECONDS)
            self._job_dead_letter_total: Dict[str, int] = {}
            self._sefaz_request_total: Dict[tuple[str, str], int] = {}
            self._sefaz_request_duration_ms = self._new_histogram_state(_SEFAZ_CALL_BUCKETS_MS)
            self._emission_transition_total: Dict[str, int] = {}
            self._anomaly_total: Dict[str, int] = {}


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = 0.0
    if started > 0.0:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_job(job_type: str, result: str, duration_ms: float) -> None:
    _METRICS.observe_job(job_type, result, duration_ms)


def observe_job_backoff(backoff_seconds: float) -> None:
    _METRICS.observe_job_backoff(backoff_seconds)


def observe_job_dead_letter(job_type: str) -> None:
    _METRICS.observe_job_dead_letter(job_type)


def observe_sefaz_call(operation: str, outcome: str, duration_ms: float) -> None:
    _METRICS.observe_sefaz_call(operation, outcome, duration_ms)


def observe_emission_transition(to_status: str) -> None:
    _METRICS.observe_emission_transition(to_status)


def observe_anomaly(kind: str) -> None:
    _METRICS.observe_anomaly(kind)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


def _prom_histogram(lines: list[str], name: str, hist: dict, labels: dict[str, object] | None = None) -> None:
    base_labels = dict(labels or {})
    for le_label, bucket_value in hist["buckets"].items():
        lines.append(_prom_line(f"{name}_bucket", int(bucket_value), labels=base_labels | {"le": le_label}))
    lines.append(_prom_line(f"{name}_sum", float(hist["sum"]), labels=base_labels or None))
    lines.append(_prom_line(f"{name}_count", int(hist["count"]), labels=base_labels or None))


def prometheus_metrics_text(*, queue_state: dict | None = None) -> str:
    snapshot = _METRICS.snapshot()
    lines: list[str] = []

    lines.append("# HELP http_request_total Total HTTP requests by method, route and status.")
    lines.append("# TYPE http_request_total counter")
    for (method, route, status), value in sorted(snapshot["http_request_total"].items()):
        lines.append(
            _prom_line("http_request_total", int(value), labels={"method": method, "route": route, "status": status})
        )

    lines.append("# HELP http_request_duration_ms HTTP request duration in milliseconds.")
    lines.append("# TYPE http_request_duration_ms histogram")
    for (method, route), hist in sorted(snapshot["http_request_duration_ms"].items()):
        _prom_histogram(lines, "http_request_duration_ms", hist, labels={"method": method, "route": route})

    queue = ((queue_state or {}).get("queue") or {}) if isinstance(queue_state, dict) else {}
    lines.append("# HELP fiscal_job_queue_size Fiscal job queue size by state.")
    lines.append("# TYPE fiscal_job_queue_size gauge")
    for state in ("pending", "processing", "failed", "completed"):
        lines.append(_prom_line("fiscal_job_queue_size", int(queue.get(f"{state}_jobs") or 0), labels={"state": state}))

    lines.append("# HELP fiscal_job_processed_total Fiscal jobs processed by type and result.")
    lines.append("# TYPE fiscal_job_processed_total counter")
    for (job_type, result), value in sorted(snapshot["job_processed_total"].items()):
        lines.append(
            _prom_line("fiscal_job_processed_total", int(value), labels={"job_type": job_type, "result": result})
        )

    lines.append("# HELP fiscal_job_dead_letter_total Fiscal jobs that exhausted their attempts.")
    lines.append("# TYPE fiscal_job_dead_letter_total counter")
    for job_type, value in sorted(snapshot["job_dead_letter_total"].items()):
        lines.append(_prom_line("fiscal_job_dead_letter_total", int(value), labels={"job_type": job_type}))

    lines.append("# HELP fiscal_job_processing_time_ms Fiscal job handler duration in milliseconds.")
    lines.append("# TYPE fiscal_job_processing_time_ms histogram")
    _prom_histogram(lines, "fiscal_job_processing_time_ms", snapshot["job_processing_time_ms"])

    lines.append("# HELP fiscal_job_retry_backoff_seconds Delay scheduled for fiscal job retries.")
    lines.append("# TYPE fiscal_job_retry_backoff_seconds histogram")
    _prom_histogram(lines, "fiscal_job_retry_backoff_seconds", snapshot["job_retry_backoff_seconds"])

    lines.append("# HELP sefaz_request_total SEFAZ calls by operation and outcome.")
    lines.append("# TYPE sefaz_request_total counter")
    for (operation, outcome), value in sorted(snapshot["sefaz_request_total"].items()):
        lines.append(
            _prom_line("sefaz_request_total", int(value), labels={"operation": operation, "outcome": outcome})
        )

    lines.append("# HELP sefaz_request_duration_ms SEFAZ call duration in milliseconds.")
    lines.append("# TYPE sefaz_request_duration_ms histogram")
    _prom_histogram(lines, "sefaz_request_duration_ms", snapshot["sefaz_request_duration_ms"])

    lines.append("# HELP fiscal_emission_transition_total Emission status transitions applied.")
    lines.append("# TYPE fiscal_emission_transition_total counter")
    for status, value in sorted(snapshot["emission_transition_total"].items()):
        lines.append(_prom_line("fiscal_emission_transition_total", int(value), labels={"to_status": status}))

    lines.append("# HELP fiscal_anomaly_total Conflicting remote verdicts detected and not applied.")
    lines.append("# TYPE fiscal_anomaly_total counter")
    for kind, value in sorted(snapshot["anomaly_total"].items()):
        lines.append(_prom_line("fiscal_anomaly_total", int(value), labels={"kind": kind}))

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)


def _parse_timestamp(value) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value or "").strip()
        if not raw:
            return None
        normalized = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _queue_critical_thresholds() -> tuple[int, int]:
    age_seconds = 900
    pending_jobs = 50
    try:
        age_seconds = int(current_app.config.get("JOB_QUEUE_CRITICAL_AGE_SECONDS", age_seconds) or age_seconds)
        pending_jobs = int(current_app.config.get("JOB_QUEUE_CRITICAL_PENDING_JOBS", pending_jobs) or pending_jobs)
    except RuntimeError:
        # Outside an application context the defaults apply.
        pass
    return max(1, age_seconds), max(1, pending_jobs)


def job_queue_health(db, *, now: datetime | None = None) -> dict:
    now = now or datetime.now(timezone.utc)
    counters = {"pending": 0, "processing": 0, "completed": 0, "failed": 0}
    rows = db.execute("SELECT status, COUNT(*) AS total FROM jobs_queue GROUP BY status").fetchall()
    for row in rows:
        status = str(row["status"] or "").strip().lower()
        if status in counters:
            counters[status] = int(row["total"] or 0)

    oldest_row = db.execute(
        """
        SELECT MIN(next_run_at) AS oldest_due
        FROM jobs_queue
        WHERE status = 'pending'
          AND next_run_at <= ?
        """,
        (now.strftime("%Y-%m-%dT%H:%M:%SZ"),),
    ).fetchone()
    last_row = db.execute(
        "SELECT MAX(finished_at) AS last_finished_at FROM jobs_queue WHERE finished_at IS NOT NULL"
    ).fetchone()

    oldest_due = _parse_timestamp(oldest_row["oldest_due"] if oldest_row else None)
    last_finished_at = _parse_timestamp(last_row["last_finished_at"] if last_row else None)
    oldest_age = max(0, int((now - oldest_due).total_seconds())) if oldest_due else 0

    worker_state = "idle"
    if counters["processing"] > 0:
        worker_state = "running"
    elif oldest_due is not None:
        if last_finished_at is None:
            worker_state = "stalled"
        else:
            age_since_last_finish = int((now - last_finished_at).total_seconds())
            worker_state = "stalled" if age_since_last_finish > 120 else "draining"

    critical_age_seconds, critical_pending_jobs = _queue_critical_thresholds()
    backlog_critical = counters["pending"] >= critical_pending_jobs or oldest_age >= critical_age_seconds

    return {
        "worker_status": worker_state,
        "worker_active": worker_state in {"running", "draining"},
        "backlog_critical": backlog_critical,
        "queue": {
            "pending_jobs": counters["pending"],
            "processing_jobs": counters["processing"],
            "failed_jobs": counters["failed"],
            "completed_jobs": counters["completed"],
            "oldest_pending_age_seconds": oldest_age,
            "last_finished_at": last_finished_at.isoformat().replace("+00:00", "Z") if last_finished_at else None,
        },
    }
