from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
import logging

from nudge_queue.domain.contracts import NudgeStore
from nudge_queue.domain.errors import StaleClaimError
from nudge_queue.domain.models import DispatchSummary, OutcomeKind, ProcessResult, QueueItem
from nudge_queue.domain.use_cases.dispatch import claim_nudges, report_failure, report_success

ProcessHandler = Callable[[QueueItem], Awaitable[ProcessResult]]
logger = logging.getLogger("runtime")


@dataclass
class DispatchLoop:
    role: str
    worker_id: str
    store: NudgeStore
    process: ProcessHandler
    batch_size: int = 20
    max_retries: int = 3
    claim_lease_seconds: int = 60
    heartbeat_interval_ms: int = 10000
    enabled: bool = True
    last_summary: DispatchSummary = field(default_factory=DispatchSummary)
    # Claims abandoned by an aborted batch whose release has not succeeded yet.
    unreleased: set[str] = field(default_factory=set)

    async def run_once(self) -> bool:
        if not self.enabled:
            return False
        summary = await self.dispatch_batch()
        return summary.taken > 0

    async def dispatch_batch(self) -> DispatchSummary:
        await self.release_abandoned()
        summary = DispatchSummary()
        items = await claim_nudges(
            self.store,
            batch_size=self.batch_size,
            worker_id=self.worker_id,
            lease_seconds=self.claim_lease_seconds,
        )
        summary.taken = len(items)
        if not items:
            self.last_summary = summary
            return summary

        pending = {item.id for item in items}
        lost: set[str] = set()
        stop_heartbeat = asyncio.Event()

        async def _heartbeat_loop() -> None:
            interval_seconds = max(self.heartbeat_interval_ms, 1) / 1000
            while not stop_heartbeat.is_set():
                try:
                    await asyncio.wait_for(stop_heartbeat.wait(), timeout=interval_seconds)
                    break
                except TimeoutError:
                    pass

                watched = sorted(pending - lost)
                if not watched:
                    break
                try:
                    renewed = await self.store.heartbeat_claims(
                        queue_ids=watched,
                        worker_id=self.worker_id,
                        lease_seconds=self.claim_lease_seconds,
                    )
                except Exception:
                    logger.exception("claim heartbeat failed", extra={"role": self.role, "worker_id": self.worker_id})
                    continue
                lost.update(set(watched) - renewed)

        heartbeat_task = asyncio.create_task(_heartbeat_loop())
        in_flight: str | None = None
        try:
            for item in items:
                if item.id in lost:
                    pending.discard(item.id)
                    summary.stale += 1
                    logger.warning(
                        "claim lost before delivery",
                        extra={"role": self.role, "worker_id": self.worker_id, "queue_id": item.id},
                    )
                    continue
                in_flight = item.id
                try:
                    outcome = await self._deliver(item)
                except StaleClaimError:
                    summary.stale += 1
                    logger.warning(
                        "claim ownership is stale",
                        extra={"role": self.role, "worker_id": self.worker_id, "queue_id": item.id},
                    )
                else:
                    summary.record(outcome)
                pending.discard(item.id)
        except asyncio.CancelledError:
            await self._release_cancelled(sorted(pending - lost))
            raise
        except Exception:
            # The item in flight may already have been sent, so it stays
            # with its lease; only untouched items are handed back.
            self.unreleased.update(pending - lost - {in_flight})
            await self.release_abandoned()
            raise
        finally:
            stop_heartbeat.set()
            await heartbeat_task

        self.last_summary = summary
        logger.info(
            "dispatch batch finished",
            extra={
                "role": self.role,
                "worker_id": self.worker_id,
                "taken": summary.taken,
                "sent": summary.sent,
                "failed": summary.failed,
                "requeued": summary.requeued,
                "stale": summary.stale,
            },
        )
        return summary

    async def release_abandoned(self) -> int:
        """Hand back claims left by an aborted batch without charging an attempt."""
        if not self.unreleased:
            return 0
        queue_ids = sorted(self.unreleased)
        try:
            released = await self.store.release_claims(queue_ids=queue_ids, worker_id=self.worker_id)
        except Exception:
            logger.exception(
                "releasing abandoned claims failed",
                extra={"role": self.role, "worker_id": self.worker_id, "detail": ",".join(queue_ids)},
            )
            return 0
        # Ids not released were already reclaimed or claimed by someone else.
        self.unreleased.difference_update(queue_ids)
        logger.warning(
            "abandoned claims released",
            extra={"role": self.role, "worker_id": self.worker_id, "released": len(released)},
        )
        return len(released)

    async def _deliver(self, item: QueueItem) -> OutcomeKind:
        result = await self.process(item)
        if result.success:
            return await report_success(self.store, queue_id=item.id, worker_id=self.worker_id)
        return await report_failure(
            self.store,
            queue_id=item.id,
            worker_id=self.worker_id,
            error=result.detail,
            error_code=result.error_code,
            max_retries=self.max_retries,
            retry_classification=result.retry_classification,
        )

    async def _release_cancelled(self, queue_ids: list[str]) -> None:
        for queue_id in queue_ids:
            try:
                await report_failure(
                    self.store,
                    queue_id=queue_id,
                    worker_id=self.worker_id,
                    error="dispatch cancelled",
                    error_code="cancelled",
                    max_retries=self.max_retries,
                )
            except StaleClaimError:
                continue
