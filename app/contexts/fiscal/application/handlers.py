from __future__ import annotations

from app.contexts.fiscal.application import lifecycle
from app.contexts.fiscal.application.job_queue import JobHandlerRegistry
from app.contexts.fiscal.domain.jobs import NFE_CANCEL, NFE_CCE, NFE_EMIT, NFE_POLL_RECEIPT, NFE_SYNC_STATUS


def build_job_registry() -> JobHandlerRegistry:
    """Registry used by the fiscal worker; one handler per job type."""
    registry = JobHandlerRegistry()
    registry.register(NFE_EMIT, lifecycle.handle_emit, on_dead_letter=lifecycle.emission_dead_letter)
    registry.register(NFE_POLL_RECEIPT, lifecycle.handle_poll_receipt, on_dead_letter=lifecycle.emission_dead_letter)
    registry.register(NFE_SYNC_STATUS, lifecycle.handle_sync_status, on_dead_letter=lifecycle.emission_dead_letter)
    registry.register(NFE_CANCEL, lifecycle.handle_cancel, on_dead_letter=lifecycle.cancellation_dead_letter)
    registry.register(NFE_CCE, lifecycle.handle_correction_letter, on_dead_letter=lifecycle.correction_letter_dead_letter)
    return registry
