from __future__ import annotations

import logging

from nudge_queue.domain.contracts import NudgeStore
from nudge_queue.domain.error_taxonomy import RetryClassification, resolve_error_code, resolve_retry_classification
from nudge_queue.domain.errors import DomainValidationError
from nudge_queue.domain.models import OutcomeKind, QueueItem

COMPONENT_ID_CLAIM = "domain.nudges.claim"
COMPONENT_ID_OUTCOME = "domain.nudges.outcome"

logger = logging.getLogger("nudges")


async def claim_nudges(
    store: NudgeStore,
    *,
    batch_size: int,
    worker_id: str,
    lease_seconds: int,
) -> list[QueueItem]:
    """Claim up to ``batch_size`` eligible items, oldest ``available_at`` first."""
    if batch_size <= 0:
        return []
    if not worker_id:
        raise DomainValidationError("worker_id must be non-empty")
    items = await store.claim_batch(worker_id=worker_id, batch_size=batch_size, lease_seconds=lease_seconds)
    return sorted(items, key=lambda item: (item.available_at, item.id))


async def report_success(store: NudgeStore, *, queue_id: str, worker_id: str) -> OutcomeKind:
    await store.complete_success(queue_id=queue_id, worker_id=worker_id)
    logger.info("nudge sent", extra={"queue_id": queue_id, "worker_id": worker_id, "outcome": "sent"})
    return OutcomeKind.SENT


async def report_failure(
    store: NudgeStore,
    *,
    queue_id: str,
    worker_id: str,
    error: str,
    max_retries: int,
    error_code: str | None = "transport_failed",
    retry_classification: RetryClassification | None = None,
) -> OutcomeKind:
    if max_retries < 1:
        raise DomainValidationError("max_retries must be at least 1")
    resolved_error_code = resolve_error_code(error_code)
    classification = resolve_retry_classification(resolved_error_code, retry_classification)
    outcome = await store.complete_failure(
        queue_id=queue_id,
        worker_id=worker_id,
        error=error,
        error_code=resolved_error_code,
        max_retries=max_retries,
        retry_classification=classification,
    )
    logger.warning(
        "nudge delivery failed",
        extra={
            "queue_id": queue_id,
            "worker_id": worker_id,
            "error_code": resolved_error_code,
            "retry_classification": classification,
            "outcome": outcome.value,
        },
    )
    return outcome
