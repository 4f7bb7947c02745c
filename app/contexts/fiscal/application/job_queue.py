from __future__ import annotations

import json
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List

from flask import current_app

from app.contexts.fiscal.domain.jobs import NFE_POLL_RECEIPT, JobPayload, JobPayloadError, parse_job_payload
from app.contexts.fiscal.domain.status import JOB_FAILED, JOB_STATUSES
from app.errors import NotFoundError, PreconditionError, ValidationError
from app.observability import (
    bind_request_id,
    current_request_id,
    observe_job,
    observe_job_backoff,
    observe_job_dead_letter,
)


_LOGGER = logging.getLogger("app")


class RetryableJobError(RuntimeError):
    """The attempt failed but a later one may succeed."""

    def __init__(self, message: str, *, code: str | None = None, delay_seconds: float | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.delay_seconds = delay_seconds


class TerminalJobError(RuntimeError):
    """The job can never succeed; it fails without further attempts."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class DeferredJobError(RuntimeError):
    """The job was not attempted (remote circuit open); it goes back without consuming an attempt."""

    def __init__(self, message: str, *, delay_seconds: float) -> None:
        super().__init__(message)
        self.delay_seconds = float(delay_seconds)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _json_dumps(value: Dict[str, Any]) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


def _json_loads(value: str | None) -> Dict[str, Any]:
    raw = str(value or "").strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _row_to_dict(row) -> Dict[str, Any]:
    if row is None:
        return {}
    if isinstance(row, dict):
        return dict(row)
    return {key: row[key] for key in row.keys()}


def _greatest(db) -> str:
    return "GREATEST" if getattr(db, "backend", "sqlite") == "postgres" else "MAX"


@dataclass
class Job:
    id: int
    tenant_id: str | None
    job_type: str
    payload: Dict[str, Any]
    raw_payload: str
    status: str
    attempts: int
    max_attempts: int
    last_error: str | None = None
    next_run_at: str | None = None
    locked_at: str | None = None
    locked_by: str | None = None
    request_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    finished_at: str | None = None

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    @staticmethod
    def from_row(row) -> "Job":
        data = _row_to_dict(row)
        raw_payload = str(data.get("payload") or "")
        return Job(
            id=int(data["id"]),
            tenant_id=data.get("tenant_id"),
            job_type=str(data.get("job_type") or ""),
            payload=_json_loads(raw_payload),
            raw_payload=raw_payload,
            status=str(data.get("status") or ""),
            attempts=int(data.get("attempts") or 0),
            max_attempts=int(data.get("max_attempts") or 1),
            last_error=data.get("last_error"),
            next_run_at=data.get("next_run_at"),
            locked_at=data.get("locked_at"),
            locked_by=data.get("locked_by"),
            request_id=data.get("request_id"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            finished_at=data.get("finished_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "job_type": self.job_type,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "next_run_at": self.next_run_at,
            "locked_at": self.locked_at,
            "locked_by": self.locked_by,
            "request_id": self.request_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "finished_at": self.finished_at,
        }


Handler = Callable[[Any, JobPayload, Job], None]
DeadLetterHook = Callable[[Any, JobPayload, Job, str], None]


@dataclass
class _Registration:
    handle: Handler
    on_dead_letter: DeadLetterHook | None = None


@dataclass
class JobHandlerRegistry:
    _handlers: Dict[str, _Registration] = field(default_factory=dict)

    def register(self, job_type: str, handle: Handler, *, on_dead_letter: DeadLetterHook | None = None) -> None:
        self._handlers[str(job_type)] = _Registration(handle=handle, on_dead_letter=on_dead_letter)

    def get(self, job_type: str) -> _Registration | None:
        return self._handlers.get(str(job_type or ""))

    def job_types(self) -> List[str]:
        return sorted(self._handlers)


def _config_int(name: str, default: int) -> int:
    try:
        return int(current_app.config.get(name, default) or default)
    except (TypeError, ValueError):
        return default


def _default_max_attempts(job_type: str) -> int:
    if job_type == NFE_POLL_RECEIPT:
        return max(1, _config_int("JOB_POLL_MAX_ATTEMPTS", 10))
    return max(1, _config_int("JOB_MAX_ATTEMPTS", 5))


def next_backoff_seconds(
    attempt: int,
    *,
    base_minutes: float | None = None,
    max_seconds: float | None = None,
    jitter_ratio: float | None = None,
) -> float:
    """Delay before the next try after attempt ``attempt`` failed: ``min(cap, 2^attempt * base)``.

    Jitter only ever lengthens the delay, and never past the cap.
    """
    if base_minutes is None:
        base_minutes = float(current_app.config.get("JOB_BACKOFF_BASE_MINUTES", 1) or 1)
    if max_seconds is None:
        max_seconds = float(current_app.config.get("JOB_MAX_BACKOFF_SECONDS", 3600) or 3600)
    if jitter_ratio is None:
        jitter_ratio = float(current_app.config.get("JOB_BACKOFF_JITTER_RATIO", 0.0) or 0.0)
    base_seconds = max(1.0, float(base_minutes) * 60.0)
    cap = max(base_seconds, float(max_seconds))
    exponent = min(max(0, int(attempt)), 32)
    raw_backoff = min(cap, base_seconds * (2**exponent))
    jitter_ratio = max(0.0, min(1.0, float(jitter_ratio)))
    jitter = random.uniform(0.0, raw_backoff * jitter_ratio) if jitter_ratio > 0 else 0.0
    return min(cap, raw_backoff + jitter)


def enqueue_job(
    db,
    job_type: str,
    payload: JobPayload | Dict[str, Any],
    *,
    tenant_id: str | None,
    max_attempts: int | None = None,
    request_id: str | None = None,
    run_at: datetime | None = None,
) -> int:
    """Insert a pending job. The caller owns the transaction."""
    data = payload.to_payload() if hasattr(payload, "to_payload") else dict(payload)
    # Reject payloads the worker could never parse.
    parse_job_payload(job_type, data)
    if request_id is None:
        bound = current_request_id(default="")
        request_id = bound if bound and bound != "n/a" else None
    now = _utcnow()
    cursor = db.execute(
        """
        INSERT INTO jobs_queue (
            tenant_id, job_type, payload, status, attempts, max_attempts,
            next_run_at, request_id, created_at, updated_at
        ) VALUES (?, ?, ?, 'pending', 0, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            tenant_id,
            job_type,
            _json_dumps(data),
            int(max_attempts or _default_max_attempts(job_type)),
            _iso_utc(run_at or now),
            request_id,
            _iso_utc(now),
            _iso_utc(now),
        ),
    )
    rows = cursor.fetchall()
    row = rows[0]
    return int(row["id"] if isinstance(row, dict) else row[0])


def claim_next_job(
    db,
    job_types: Iterable[str] | None = None,
    *,
    worker_id: str,
    now: datetime | None = None,
) -> Job | None:
    """Atomically move the oldest due job to ``processing`` and count the attempt.

    Only one claimer can win a given row: the outer ``status = 'pending'``
    guard fails for everybody who lost the race.
    """
    now = now or _utcnow()
    now_text = _iso_utc(now)
    types = tuple(str(item) for item in (job_types or ()) if str(item or "").strip())
    type_filter = ""
    if types:
        type_filter = f"AND job_type IN ({', '.join('?' for _ in types)})"
    lock_clause = "FOR UPDATE SKIP LOCKED" if db.backend == "postgres" else ""

    db.begin_immediate()
    try:
        rows = db.execute(
            f"""
            UPDATE jobs_queue
            SET status = 'processing',
                attempts = attempts + 1,
                locked_at = ?,
                locked_by = ?,
                updated_at = ?
            WHERE id = (
                SELECT id
                FROM jobs_queue
                WHERE status = 'pending'
                  AND next_run_at <= ?
                  {type_filter}
                ORDER BY next_run_at ASC, id ASC
                LIMIT 1
                {lock_clause}
            )
              AND status = 'pending'
            RETURNING *
            """,
            (now_text, worker_id, now_text, now_text, *types),
        ).fetchall()
        db.commit()
    except Exception:
        db.rollback()
        raise
    if not rows:
        return None
    return Job.from_row(rows[0])


def complete_job(db, job: Job, *, now: datetime | None = None) -> bool:
    now_text = _iso_utc(now or _utcnow())
    cursor = db.execute(
        """
        UPDATE jobs_queue
        SET status = 'completed',
            last_error = NULL,
            locked_at = NULL,
            locked_by = NULL,
            finished_at = ?,
            updated_at = ?
        WHERE id = ? AND status = 'processing'
        """,
        (now_text, now_text, job.id),
    )
    return bool(cursor.rowcount)


def retry_job(db, job: Job, *, error: str, delay_seconds: float, now: datetime | None = None) -> bool:
    now = now or _utcnow()
    cursor = db.execute(
        """
        UPDATE jobs_queue
        SET status = 'pending',
            last_error = ?,
            next_run_at = ?,
            locked_at = NULL,
            locked_by = NULL,
            updated_at = ?
        WHERE id = ? AND status = 'processing'
        """,
        (error[:2000], _iso_utc(now + timedelta(seconds=max(0.0, delay_seconds))), _iso_utc(now), job.id),
    )
    return bool(cursor.rowcount)


def defer_job(db, job: Job, *, reason: str, delay_seconds: float, now: datetime | None = None) -> bool:
    now = now or _utcnow()
    cursor = db.execute(
        f"""
        UPDATE jobs_queue
        SET status = 'pending',
            attempts = {_greatest(db)}(attempts - 1, 0),
            last_error = ?,
            next_run_at = ?,
            locked_at = NULL,
            locked_by = NULL,
            updated_at = ?
        WHERE id = ? AND status = 'processing'
        """,
        (reason[:2000], _iso_utc(now + timedelta(seconds=max(0.0, delay_seconds))), _iso_utc(now), job.id),
    )
    return bool(cursor.rowcount)


def fail_job(db, job: Job, *, error: str, now: datetime | None = None) -> bool:
    now_text = _iso_utc(now or _utcnow())
    cursor = db.execute(
        """
        UPDATE jobs_queue
        SET status = 'failed',
            last_error = ?,
            locked_at = NULL,
            locked_by = NULL,
            finished_at = ?,
            updated_at = ?
        WHERE id = ? AND status = 'processing'
        """,
        (error[:2000], now_text, now_text, job.id),
    )
    return bool(cursor.rowcount)


def release_stale_jobs(
    db,
    older_than_seconds: int,
    *,
    registry: JobHandlerRegistry | None = None,
    now: datetime | None = None,
) -> int:
    """Return crashed ``processing`` jobs to ``pending``.

    The attempt consumed by the lost claim is kept, so a job that keeps
    killing its worker still reaches ``max_attempts``. Exhausted jobs are
    dead-lettered instead of released. Returns how many went back to ``pending``.
    """
    now = now or _utcnow()
    cutoff = _iso_utc(now - timedelta(seconds=max(1, int(older_than_seconds))))
    rows = db.execute(
        """
        SELECT *
        FROM jobs_queue
        WHERE status = 'processing'
          AND locked_at IS NOT NULL
          AND locked_at < ?
        ORDER BY id ASC
        """,
        (cutoff,),
    ).fetchall()

    released = 0
    for job in (Job.from_row(row) for row in rows):
        if job.exhausted:
            error = f"stale_lock_max_attempts: {job.last_error or 'worker interrompido'}"
            failed = _fail_stale(db, job, error=error, cutoff=cutoff, now=now)
            db.commit()
            if not failed:
                continue
            registration = registry.get(job.job_type) if registry is not None else None
            try:
                payload = parse_job_payload(job.job_type, job.payload)
            except JobPayloadError:
                payload = None
            _dead_letter(db, registration, payload, job, error)
            db.commit()
            continue
        cursor = db.execute(
            """
            UPDATE jobs_queue
            SET status = 'pending',
                locked_at = NULL,
                locked_by = NULL,
                last_error = 'stale_lock_released',
                next_run_at = ?,
                updated_at = ?
            WHERE id = ?
              AND status = 'processing'
              AND locked_at < ?
            """,
            (_iso_utc(now), _iso_utc(now), job.id, cutoff),
        )
        released += int(cursor.rowcount or 0)
        db.commit()
    if released:
        _LOGGER.warning("job_stale_locks_released", extra={"released": released, "cutoff": cutoff})
    return released


def _fail_stale(db, job: Job, *, error: str, cutoff: str, now: datetime) -> bool:
    now_text = _iso_utc(now)
    cursor = db.execute(
        """
        UPDATE jobs_queue
        SET status = 'failed',
            last_error = ?,
            locked_at = NULL,
            locked_by = NULL,
            finished_at = ?,
            updated_at = ?
        WHERE id = ?
          AND status = 'processing'
          AND locked_at < ?
        """,
        (error[:2000], now_text, now_text, job.id, cutoff),
    )
    return bool(cursor.rowcount)


def _error_text(exc: BaseException) -> str:
    code = getattr(exc, "code", None)
    message = str(exc) or exc.__class__.__name__
    return f"{code}: {message}" if code else message


def _dead_letter(db, registration: _Registration | None, payload: JobPayload | None, job: Job, error: str) -> None:
    observe_job_dead_letter(job.job_type)
    _LOGGER.error(
        "job_dead_letter",
        extra={"job_id": job.id, "job_type": job.job_type, "attempts": job.attempts, "error": error},
    )
    if registration is None or registration.on_dead_letter is None or payload is None:
        return
    try:
        registration.on_dead_letter(db, payload, job, error)
    except Exception:
        db.rollback()
        _LOGGER.exception("job_dead_letter_hook_failed", extra={"job_id": job.id, "job_type": job.job_type})


def _fail_terminal(db, registration, payload, job: Job, error: str, now: datetime) -> None:
    fail_job(db, job, error=error, now=now)
    db.commit()
    _dead_letter(db, registration, payload, job, error)
    db.commit()


def _retry_or_fail(db, registration, payload, job: Job, error: str, delay: float | None, now: datetime) -> str:
    if job.exhausted:
        _fail_terminal(db, registration, payload, job, error, now)
        return "failed"
    backoff = next_backoff_seconds(job.attempts) if delay is None else max(0.0, float(delay))
    retry_job(db, job, error=error, delay_seconds=backoff, now=now)
    db.commit()
    observe_job_backoff(backoff)
    _LOGGER.info(
        "job_retry_scheduled",
        extra={
            "job_id": job.id,
            "job_type": job.job_type,
            "attempts": job.attempts,
            "max_attempts": job.max_attempts,
            "next_backoff_seconds": round(backoff, 3),
            "error": error,
        },
    )
    return "retried"


def run_job(db, registry: JobHandlerRegistry, job: Job, *, now: datetime | None = None) -> str:
    """Run one claimed job and persist the outcome. Never raises on handler failure."""
    registration = registry.get(job.job_type)
    started = time.perf_counter()
    payload: JobPayload | None = None
    with bind_request_id(job.request_id):
        try:
            payload = parse_job_payload(job.job_type, job.payload)
            if registration is None:
                raise TerminalJobError(f"sem handler para {job.job_type}", code="handler_missing")
            registration.handle(db, payload, job)
            complete_job(db, job, now=now)
            db.commit()
            result = "completed"
        except DeferredJobError as exc:
            db.rollback()
            defer_job(db, job, reason=str(exc), delay_seconds=exc.delay_seconds, now=now)
            db.commit()
            result = "deferred"
        except RetryableJobError as exc:
            # The handler already persisted what the remote told it.
            db.commit()
            result = _retry_or_fail(db, registration, payload, job, _error_text(exc), exc.delay_seconds, now or _utcnow())
        except (TerminalJobError, PreconditionError, ValidationError, NotFoundError, JobPayloadError) as exc:
            db.commit()
            _fail_terminal(db, registration, payload, job, _error_text(exc), now or _utcnow())
            result = "failed"
        except Exception as exc:
            db.rollback()
            _LOGGER.exception("job_handler_error", extra={"job_id": job.id, "job_type": job.job_type})
            result = _retry_or_fail(db, registration, payload, job, _error_text(exc), None, now or _utcnow())

        duration_ms = (time.perf_counter() - started) * 1000.0
        observe_job(job.job_type, result, duration_ms)
        _LOGGER.info(
            "job_processed",
            extra={
                "job_id": job.id,
                "job_type": job.job_type,
                "tenant_id": job.tenant_id,
                "attempts": job.attempts,
                "result": result,
                "duration_ms": round(duration_ms, 2),
            },
        )
    return result


def process_jobs(
    db,
    registry: JobHandlerRegistry,
    *,
    job_types: Iterable[str] | None = None,
    limit: int = 10,
    worker_id: str = "worker",
    now: datetime | None = None,
) -> Dict[str, int]:
    summary = {"processed": 0, "completed": 0, "retried": 0, "failed": 0, "deferred": 0}
    types = list(job_types or ())
    for _ in range(max(1, int(limit))):
        job = claim_next_job(db, types, worker_id=worker_id, now=now)
        if job is None:
            break
        result = run_job(db, registry, job, now=now)
        summary["processed"] += 1
        summary[result] += 1
    return summary


def get_job(db, job_id: int, *, tenant_id: str | None = None) -> Job | None:
    row = db.execute("SELECT * FROM jobs_queue WHERE id = ? LIMIT 1", (int(job_id),)).fetchone()
    if not row:
        return None
    job = Job.from_row(row)
    if tenant_id is not None and job.tenant_id != tenant_id:
        return None
    return job


def list_jobs(
    db,
    *,
    tenant_id: str | None = None,
    status: str | None = None,
    job_type: str | None = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if tenant_id is not None:
        clauses.append("tenant_id = ?")
        params.append(tenant_id)
    if status:
        normalized = str(status).strip().lower()
        if normalized not in JOB_STATUSES:
            raise ValidationError(code="job_status_invalid", message_key="validation_error", http_status=400)
        clauses.append("status = ?")
        params.append(normalized)
    if job_type:
        clauses.append("job_type = ?")
        params.append(str(job_type).strip())
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = db.execute(
        f"SELECT * FROM jobs_queue {where} ORDER BY id DESC LIMIT ?",
        (*params, max(1, min(500, int(limit)))),
    ).fetchall()
    return [Job.from_row(row).to_dict() for row in rows]


def requeue_failed_job(db, job_id: int, *, tenant_id: str | None = None) -> int:
    """Enqueue a fresh copy of a dead-lettered job. The failed row is kept as history."""
    job = get_job(db, job_id, tenant_id=tenant_id)
    if job is None:
        raise NotFoundError(code="job_not_found", message_key="job_not_found", http_status=404)
    if job.status != JOB_FAILED:
        raise PreconditionError(
            code="job_not_requeueable",
            message_key="job_not_requeueable",
            http_status=422,
            payload={"status": job.status},
        )
    new_id = enqueue_job(
        db,
        job.job_type,
        job.payload,
        tenant_id=job.tenant_id,
        max_attempts=job.max_attempts,
        request_id=job.request_id,
    )
    db.commit()
    _LOGGER.info("job_requeued", extra={"job_id": job.id, "new_job_id": new_id, "job_type": job.job_type})
    return new_id
