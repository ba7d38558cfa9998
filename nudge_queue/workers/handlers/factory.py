from __future__ import annotations

from nudge_queue.domain.ids import new_worker_id
from nudge_queue.domain.models import ProcessResult, QueueItem
from nudge_queue.settings import NudgeQueueSettings
from nudge_queue.workers.handlers import deliver
from nudge_queue.workers.handlers.deps import WorkerDeps
from nudge_queue.workers.loop import DispatchLoop, ProcessHandler


def build_process_handler(role: str, deps: WorkerDeps) -> ProcessHandler:
    async def _dispatch(item: QueueItem) -> ProcessResult:
        return await deliver.process_claim(deps, item=item)

    handlers: dict[str, ProcessHandler] = {
        "worker-dispatch": _dispatch,
        # The api role runs single batches on demand through POST /nudges/worker/run.
        "api": _dispatch,
    }
    handler = handlers.get(role)
    if handler is None:
        raise ValueError(f"No worker handler for role '{role}'")
    return handler


def build_dispatch_loop(role: str, deps: WorkerDeps, settings: NudgeQueueSettings) -> DispatchLoop:
    return DispatchLoop(
        role=role,
        worker_id=new_worker_id(role),
        store=deps.store,
        process=build_process_handler(role, deps),
        batch_size=settings.batch_size,
        max_retries=settings.max_retries,
        enabled=settings.enabled,
    )
