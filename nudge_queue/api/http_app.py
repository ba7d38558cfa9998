from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from collections.abc import Awaitable, Callable
import hmac
import logging

from fastapi import FastAPI, Header, HTTPException, Query

from nudge_queue.api.handlers.deps import ApiDeps
from nudge_queue.api.handlers.nudges import dispatch_nudges_handler, list_logs_handler, run_worker_handler
from nudge_queue.api.schemas import (
    DispatchNudgesRequest,
    DispatchNudgesResponse,
    ErrorResponse,
    HealthResponse,
    ListLogsResponse,
    ReadyResponse,
    WorkerMetrics,
    WorkerRunResponse,
)
from nudge_queue.domain.errors import DomainValidationError, StoreUnavailableError
from nudge_queue.domain.models import NudgeStatus
from nudge_queue.workers.loop import DispatchLoop
from nudge_queue.workers.runner import (
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_until_stopped,
    worker_runtime_settings_from_env,
)


def build_app(
    role: str,
    run_id: str,
    worker_loop: DispatchLoop | None = None,
    worker_runtime_settings: WorkerRuntimeSettings | None = None,
    api_deps: ApiDeps | None = None,
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
) -> FastAPI:
    logger = logging.getLogger("runtime")
    worker_state: WorkerRuntimeState | None = None
    worker_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal worker_task, worker_state
        del app
        stop_event: asyncio.Event | None = None

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if worker_loop is not None:
            settings = worker_runtime_settings or worker_runtime_settings_from_env()
            worker_state = WorkerRuntimeState()
            stop_event = asyncio.Event()
            worker_task = asyncio.create_task(
                run_worker_until_stopped(
                    worker_loop=worker_loop,
                    role=role,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=worker_state,
                )
            )

        yield

        if stop_event is not None and worker_task is not None:
            stop_event.set()
            await worker_task

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="nudge-queue", version="0.1.0", lifespan=lifespan)

    def _require_enabled() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        if not api_deps.settings.enabled:
            raise HTTPException(status_code=503, detail="nudges_disabled")
        return api_deps

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode="nudge-queue")

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        worker_loop_enabled = worker_loop is not None
        worker_loop_ready = True
        metrics = WorkerMetrics(
            started=False,
            stopped=False,
            ticks_total=0,
            claims_total=0,
            idle_ticks_total=0,
            errors_total=0,
            reclaimed_total=0,
        )
        if worker_loop_enabled:
            worker_loop_ready = (
                worker_state is not None
                and worker_state.started
                and worker_task is not None
                and not worker_task.done()
            )
            if worker_state is not None:
                metrics = WorkerMetrics(
                    started=worker_state.started,
                    stopped=worker_state.stopped,
                    ticks_total=worker_state.ticks_total,
                    claims_total=worker_state.claims_total,
                    idle_ticks_total=worker_state.idle_ticks_total,
                    errors_total=worker_state.errors_total,
                    reclaimed_total=worker_state.reclaimed_total,
                )

        return ReadyResponse(
            status="ready",
            role=role,
            mode="nudge-queue",
            nudges_enabled=api_deps.settings.enabled if api_deps is not None else False,
            worker_loop_enabled=worker_loop_enabled,
            worker_loop_ready=worker_loop_ready,
            worker_metrics=metrics,
        )

    @app.post(
        "/nudges/dispatch",
        response_model=DispatchNudgesResponse,
        responses={422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
        tags=["Nudges"],
    )
    async def dispatch_nudges(request: DispatchNudgesRequest) -> DispatchNudgesResponse:
        deps = _require_enabled()
        try:
            return await dispatch_nudges_handler(request=request, api_deps=deps)
        except DomainValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.post(
        "/nudges/worker/run",
        response_model=WorkerRunResponse,
        responses={401: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
        tags=["Nudges"],
    )
    async def run_worker(authorization: str | None = Header(default=None)) -> WorkerRunResponse:
        deps = _require_enabled()
        expected = deps.settings.worker_secret
        scheme, _, token = (authorization or "").partition(" ")
        if (
            not expected
            or scheme.lower() != "bearer"
            or not hmac.compare_digest(token.strip().encode(), expected.encode())
        ):
            raise HTTPException(status_code=401, detail="unauthorized")
        try:
            return await run_worker_handler(api_deps=deps)
        except StoreUnavailableError as exc:
            logger.error("worker run failed: store unavailable", extra={"role": role, "detail": str(exc)})
            raise HTTPException(status_code=503, detail="store_unavailable") from exc

    @app.get(
        "/nudges/logs",
        response_model=ListLogsResponse,
        responses={503: {"model": ErrorResponse}},
        tags=["Nudges"],
    )
    async def list_logs(
        page: int = Query(default=0, ge=0),
        limit: int = Query(default=20, ge=1, le=200),
        hub_id: str | None = Query(default=None),
        member_id: str | None = Query(default=None),
        recipe_name: str | None = Query(default=None),
        channel: str | None = Query(default=None),
        status: NudgeStatus | None = Query(default=None),
    ) -> ListLogsResponse:
        deps = _require_enabled()
        try:
            return await list_logs_handler(
                api_deps=deps,
                page=page,
                limit=limit,
                hub_id=hub_id,
                member_id=member_id,
                recipe_name=recipe_name,
                channel=channel,
                status=status,
            )
        except StoreUnavailableError as exc:
            raise HTTPException(status_code=503, detail="store_unavailable") from exc

    return app
