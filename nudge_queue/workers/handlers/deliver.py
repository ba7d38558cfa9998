from __future__ import annotations

import asyncio

from nudge_queue.domain.dto import SendRequest
from nudge_queue.domain.error_taxonomy import classify_error, resolve_error_code
from nudge_queue.domain.models import ProcessResult, QueueItem
from nudge_queue.workers.handlers.deps import WorkerDeps

COMPONENT_ID = "worker.dispatch.process_claim"


async def process_claim(deps: WorkerDeps, *, item: QueueItem) -> ProcessResult:
    """Hand one claimed nudge to the sender and translate the outcome."""
    request = SendRequest(
        queue_id=item.id,
        hub_id=item.hub_id,
        member_id=item.member_id,
        channel=item.payload.channel,
        message=item.payload.message,
        variables=dict(item.payload.variables),
    )
    try:
        result = await asyncio.wait_for(deps.sender.send(request), timeout=deps.send_timeout_seconds)
    except TimeoutError:
        return ProcessResult(
            success=False,
            detail=f"send timed out after {deps.send_timeout_seconds}s",
            error_code="send_timeout",
            retry_classification=classify_error("send_timeout"),
        )
    except Exception as exc:
        return ProcessResult(
            success=False,
            detail=str(exc) or type(exc).__name__,
            error_code="transport_failed",
            retry_classification=classify_error("transport_failed"),
        )

    if result.ok:
        return ProcessResult(success=True, detail="nudge delivered")

    error_code = resolve_error_code(result.error_code)
    return ProcessResult(
        success=False,
        detail=result.error or "send failed",
        error_code=error_code,
        retry_classification=result.retry_classification or classify_error(error_code),
    )
