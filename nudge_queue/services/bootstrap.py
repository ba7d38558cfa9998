from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import os

from nudge_queue.api.handlers.deps import ApiDeps
from nudge_queue.clients.stub import StubNudgeSender
from nudge_queue.domain.contracts import NudgeSender, NudgeStore
from nudge_queue.repositories.postgres import AsyncpgPoolManager, PostgresNudgeStore
from nudge_queue.repositories.stub import InMemoryNudgeStore
from nudge_queue.roles import RuntimeRole
from nudge_queue.settings import NudgeQueueSettings, nudge_queue_settings_from_env
from nudge_queue.workers.handlers.deps import WorkerDeps
from nudge_queue.workers.handlers.factory import build_dispatch_loop
from nudge_queue.workers.loop import DispatchLoop


@dataclass
class RuntimeContainer:
    store: NudgeStore
    sender: NudgeSender
    settings: NudgeQueueSettings
    api_deps: ApiDeps
    worker_loop: DispatchLoop | None
    on_startup: Callable[[], Awaitable[None]] | None
    on_shutdown: Callable[[], Awaitable[None]] | None


def build_runtime_container(
    role: RuntimeRole,
    settings: NudgeQueueSettings | None = None,
) -> RuntimeContainer:
    settings = settings or nudge_queue_settings_from_env()
    database_url = os.getenv("DATABASE_URL")
    on_startup: Callable[[], Awaitable[None]] | None = None
    on_shutdown: Callable[[], Awaitable[None]] | None = None
    store: NudgeStore
    if database_url:
        pool_manager = AsyncpgPoolManager(dsn=database_url)
        store = PostgresNudgeStore(pool_manager=pool_manager)
        on_startup = pool_manager.startup
        on_shutdown = pool_manager.shutdown
    else:
        store = InMemoryNudgeStore()
    sender = StubNudgeSender()

    worker_deps = WorkerDeps(
        store=store,
        sender=sender,
        send_timeout_seconds=settings.send_timeout_seconds,
    )
    dispatch_loop = build_dispatch_loop(role.name, worker_deps, settings)
    api_deps = ApiDeps(
        store=store,
        sender=sender,
        settings=settings,
        dispatch_loop=dispatch_loop,
    )

    return RuntimeContainer(
        store=store,
        sender=sender,
        settings=settings,
        api_deps=api_deps,
        worker_loop=dispatch_loop if role.runs_worker_loop else None,
        on_startup=on_startup,
        on_shutdown=on_shutdown,
    )
