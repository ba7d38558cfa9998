from __future__ import annotations

from nudge_queue.api.handlers.deps import ApiDeps
from nudge_queue.api.schemas import (
    DispatchNudgesRequest,
    DispatchNudgesResponse,
    EnqueueResultItem,
    ListLogsResponse,
    LogEntryResponse,
    WorkerRunResponse,
)
from nudge_queue.domain.dto import EnqueueNudgeCommand
from nudge_queue.domain.models import LogEntry, LogQuery, NudgeStatus
from nudge_queue.domain.template import render_template
from nudge_queue.domain.use_cases.enqueue import enqueue_nudge

COMPONENT_ID = "api.nudges"


async def dispatch_nudges_handler(*, request: DispatchNudgesRequest, api_deps: ApiDeps) -> DispatchNudgesResponse:
    """Render each nudge with its variables and admit it into the queue."""
    results: list[EnqueueResultItem] = []
    for nudge in request.nudges:
        message = render_template(nudge.message, nudge.variables)
        result = await enqueue_nudge(
            api_deps.store,
            EnqueueNudgeCommand(
                hub_id=request.hub_id,
                member_id=nudge.member_id,
                recipe_name=nudge.recipe_name,
                message=message,
                variables=nudge.variables,
                channel=nudge.channel.value,
            ),
            cooldown_window_hours=api_deps.settings.cooldown_window_hours,
        )
        results.append(
            EnqueueResultItem(
                member_id=nudge.member_id,
                recipe_name=nudge.recipe_name,
                enqueued=result.enqueued,
                reason=result.reason.value if result.reason else None,
                queue_id=result.queue_id,
                log_id=result.log_id,
            )
        )

    enqueued = sum(1 for item in results if item.enqueued)
    return DispatchNudgesResponse(
        ok=True,
        enqueued=enqueued,
        skipped=len(results) - enqueued,
        results=results,
    )


async def run_worker_handler(*, api_deps: ApiDeps) -> WorkerRunResponse:
    loop = api_deps.dispatch_loop
    reclaimed = await api_deps.store.reclaim_expired_claims(max_retries=loop.max_retries)
    summary = await loop.dispatch_batch()
    return WorkerRunResponse(
        ok=True,
        taken=summary.taken,
        sent=summary.sent,
        failed=summary.failed,
        requeued=summary.requeued,
        stale=summary.stale,
        reclaimed=reclaimed,
    )


async def list_logs_handler(
    *,
    api_deps: ApiDeps,
    page: int,
    limit: int,
    hub_id: str | None = None,
    member_id: str | None = None,
    recipe_name: str | None = None,
    channel: str | None = None,
    status: NudgeStatus | None = None,
) -> ListLogsResponse:
    logs = await api_deps.store.list_logs(
        query=LogQuery(
            hub_id=hub_id,
            member_id=member_id,
            recipe_name=recipe_name,
            channel=channel,
            statuses=(status,) if status is not None else None,
            limit=limit,
            offset=page * limit,
        )
    )
    return ListLogsResponse(
        logs=[_log_entry_response(log) for log in logs],
        has_more=len(logs) == limit,
    )


def _log_entry_response(log: LogEntry) -> LogEntryResponse:
    return LogEntryResponse(
        id=log.id,
        hub_id=log.hub_id,
        member_id=log.member_id,
        recipe_name=log.recipe_name,
        channel=log.channel,
        message=log.message,
        message_hash=log.message_hash,
        status=log.status,
        attempt=log.attempt,
        error=log.error,
        error_code=log.error_code,
        scheduled_at=log.scheduled_at,
        sent_at=log.sent_at,
    )
