from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from nudge_queue.settings import env_int
from nudge_queue.workers.loop import DispatchLoop


@dataclass(frozen=True)
class WorkerRuntimeSettings:
    poll_interval_ms: int = 200
    idle_backoff_ms: int = 1000
    error_backoff_ms: int = 2000
    claim_lease_seconds: int = 60
    heartbeat_interval_ms: int = 10000


@dataclass
class WorkerRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    claims_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0
    reclaimed_total: int = 0


def worker_runtime_settings_from_env() -> WorkerRuntimeSettings:
    return WorkerRuntimeSettings(
        poll_interval_ms=env_int("WORKER_POLL_INTERVAL_MS", 200),
        idle_backoff_ms=env_int("WORKER_IDLE_BACKOFF_MS", 1000),
        error_backoff_ms=env_int("WORKER_ERROR_BACKOFF_MS", 2000),
        claim_lease_seconds=env_int("WORKER_CLAIM_LEASE_SECONDS", 60),
        heartbeat_interval_ms=env_int("WORKER_HEARTBEAT_INTERVAL_MS", 10000),
    )


async def run_worker_until_stopped(
    *,
    worker_loop: DispatchLoop,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    state: WorkerRuntimeState | None = None,
) -> None:
    worker_loop.claim_lease_seconds = settings.claim_lease_seconds
    worker_loop.heartbeat_interval_ms = settings.heartbeat_interval_ms

    if state is not None:
        state.started = True

    log_extra = {"role": role, "service": role, "run_id": run_id, "worker_id": worker_loop.worker_id}
    logger.info("worker loop started", extra=log_extra)

    while not stop_event.is_set():
        delay_ms = settings.idle_backoff_ms
        try:
            if worker_loop.enabled:
                await worker_loop.release_abandoned()
                reclaimed = await worker_loop.store.reclaim_expired_claims(max_retries=worker_loop.max_retries)
                if state is not None:
                    state.reclaimed_total += reclaimed
                if reclaimed:
                    logger.warning("expired claims reclaimed", extra={**log_extra, "reclaimed": reclaimed})
            did_work = await worker_loop.run_once()
            if state is not None:
                state.ticks_total += 1
                if did_work:
                    state.claims_total += 1
                else:
                    state.idle_ticks_total += 1
            delay_ms = settings.poll_interval_ms if did_work else settings.idle_backoff_ms
            logger.info("worker tick", extra={**log_extra, "did_work": str(did_work).lower()})
        except Exception:
            if state is not None:
                state.ticks_total += 1
                state.errors_total += 1
            delay_ms = settings.error_backoff_ms
            logger.exception("worker tick error", extra=log_extra)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            continue

    logger.info("worker loop stopped", extra=log_extra)
    if state is not None:
        state.stopped = True
