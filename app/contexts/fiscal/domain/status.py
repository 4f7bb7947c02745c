from __future__ import annotations

from typing import Dict, FrozenSet


STATUS_DRAFT = "draft"
STATUS_SIGNED_OFFLINE = "signed_offline"
STATUS_QUEUED = "queued"
STATUS_PROCESSING = "processing"
STATUS_AUTHORIZED = "authorized"
STATUS_DENIED = "denied"
STATUS_REJECTED = "rejected"
STATUS_CANCELLED = "cancelled"

EMISSION_STATUSES = (
    STATUS_DRAFT,
    STATUS_SIGNED_OFFLINE,
    STATUS_QUEUED,
    STATUS_PROCESSING,
    STATUS_AUTHORIZED,
    STATUS_DENIED,
    STATUS_REJECTED,
    STATUS_CANCELLED,
)

# Verdicts handed down by SEFAZ for the authorization request itself.
TERMINAL_VERDICTS: FrozenSet[str] = frozenset({STATUS_AUTHORIZED, STATUS_DENIED, STATUS_REJECTED})
FINAL_STATUSES: FrozenSet[str] = TERMINAL_VERDICTS | {STATUS_CANCELLED}

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    STATUS_DRAFT: frozenset({STATUS_SIGNED_OFFLINE}),
    STATUS_SIGNED_OFFLINE: frozenset({STATUS_QUEUED}),
    STATUS_QUEUED: frozenset({STATUS_PROCESSING}) | TERMINAL_VERDICTS,
    STATUS_PROCESSING: TERMINAL_VERDICTS,
    STATUS_AUTHORIZED: frozenset({STATUS_CANCELLED}),
    STATUS_DENIED: frozenset(),
    STATUS_REJECTED: frozenset(),
    STATUS_CANCELLED: frozenset(),
}

REQUEST_PENDING = "pending"
REQUEST_PROCESSING = "processing"
REQUEST_PROCESSED = "processed"
REQUEST_FAILED = "failed"
REQUEST_STATUSES = (REQUEST_PENDING, REQUEST_PROCESSING, REQUEST_PROCESSED, REQUEST_FAILED)

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_STATUSES = (JOB_PENDING, JOB_PROCESSING, JOB_COMPLETED, JOB_FAILED)

PROCESSING_CODES = frozenset({"103", "105"})
AUTHORIZED_CODES = frozenset({"100", "104", "150"})
CANCELLED_CODES = frozenset({"101", "151", "155"})
NOT_FOUND_CODES = frozenset({"106", "217"})
# Service paused; the request was not judged and can be sent again later.
UNAVAILABLE_CODES = frozenset({"108", "109"})

EVENT_BATCH_OK = "128"
EVENT_SUCCESS_CODES = frozenset({"135", "136", "155"})

VERDICT_PROCESSING = "processing"
VERDICT_AUTHORIZED = STATUS_AUTHORIZED
VERDICT_CANCELLED = STATUS_CANCELLED
VERDICT_DENIED = STATUS_DENIED
VERDICT_REJECTED = STATUS_REJECTED
VERDICT_NOT_FOUND = "not_found"
VERDICT_UNAVAILABLE = "unavailable"


def normalize_status_code(value: object) -> str:
    return str(value or "").strip()


def can_transition(from_status: str | None, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(str(from_status or ""), frozenset())


def classify_status(cstat: object) -> str:
    code = normalize_status_code(cstat)
    if code in PROCESSING_CODES:
        return VERDICT_PROCESSING
    if code in AUTHORIZED_CODES:
        return VERDICT_AUTHORIZED
    if code in CANCELLED_CODES:
        return VERDICT_CANCELLED
    if code in NOT_FOUND_CODES:
        return VERDICT_NOT_FOUND
    if code in UNAVAILABLE_CODES:
        return VERDICT_UNAVAILABLE
    # Only the 1xx family carries a denial (110, 124, ...); anything else is a rejection.
    if len(code) == 3 and code.startswith("1"):
        return VERDICT_DENIED
    return VERDICT_REJECTED


def is_event_success(batch_code: object, event_code: object) -> bool:
    batch = normalize_status_code(batch_code)
    event = normalize_status_code(event_code) or batch
    if batch and batch != EVENT_BATCH_OK:
        return False
    return event in EVENT_SUCCESS_CODES
