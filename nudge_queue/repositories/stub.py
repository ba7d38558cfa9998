from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

from nudge_queue.domain.dto import AdmitNudgeCommand
from nudge_queue.domain.error_taxonomy import RetryClassification, resolve_error_code, resolve_retry_classification
from nudge_queue.domain.errors import StaleClaimError, StoreUnavailableError
from nudge_queue.domain.ids import new_log_entry_id, new_queue_item_id
from nudge_queue.domain.lifecycle import COOLDOWN_STATUSES, ensure_transition, plan_failure
from nudge_queue.domain.models import (
    EnqueueRejection,
    EnqueueResult,
    LogEntry,
    LogQuery,
    NudgeStatus,
    OutcomeKind,
    QueueItem,
)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _start_of_day(moment: datetime) -> datetime:
    return moment.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass
class InMemoryNudgeStore:
    """Non-network store with deterministic behavior for skeleton mode.

    Every method runs without yielding to the event loop between its reads and
    writes, so each call is atomic with respect to other coroutines.
    """

    clock: Callable[[], datetime] = _utcnow
    available: bool = True
    queue: dict[str, QueueItem] = field(default_factory=dict)
    logs: dict[str, LogEntry] = field(default_factory=dict)
    transitions: list[tuple[str, str, str]] = field(default_factory=list)

    def _ensure_available(self) -> None:
        if not self.available:
            raise StoreUnavailableError("in-memory nudge store is marked unavailable")

    async def admit(self, command: AdmitNudgeCommand) -> EnqueueResult:
        self._ensure_available()
        now = self.clock()
        day_start = _start_of_day(now)
        cooldown_since = now - timedelta(hours=command.cooldown_window_hours)

        for log in self.logs.values():
            if (
                log.hub_id == command.hub_id
                and log.member_id == command.member_id
                and log.recipe_name == command.recipe_name
                and log.message_hash == command.message_hash
                and log.scheduled_at >= day_start
            ):
                return EnqueueResult(enqueued=False, reason=EnqueueRejection.DUPLICATE)

        for log in self.logs.values():
            if (
                log.hub_id == command.hub_id
                and log.member_id == command.member_id
                and log.status in COOLDOWN_STATUSES
                and log.scheduled_at >= cooldown_since
            ):
                return EnqueueResult(enqueued=False, reason=EnqueueRejection.RATE_LIMITED)

        log_id = new_log_entry_id()
        queue_id = new_queue_item_id()
        self.logs[log_id] = LogEntry(
            id=log_id,
            hub_id=command.hub_id,
            member_id=command.member_id,
            recipe_name=command.recipe_name,
            channel=command.payload.channel,
            message=command.payload.message,
            message_hash=command.message_hash,
            status=NudgeStatus.QUEUED,
            scheduled_at=now,
            created_at=now,
            updated_at=now,
        )
        self.queue[queue_id] = QueueItem(
            id=queue_id,
            log_id=log_id,
            hub_id=command.hub_id,
            member_id=command.member_id,
            recipe_name=command.recipe_name,
            payload=command.payload,
            available_at=now,
            created_at=now,
            updated_at=now,
        )
        return EnqueueResult(enqueued=True, queue_id=queue_id, log_id=log_id)

    async def claim_batch(self, *, worker_id: str, batch_size: int, lease_seconds: int) -> list[QueueItem]:
        self._ensure_available()
        now = self.clock()
        eligible = [
            item
            for item in self.queue.values()
            if item.available_at <= now and (item.locked_at is None or _lease_expired(item, now))
        ]
        eligible.sort(key=lambda item: (item.available_at, item.id))

        claimed: list[QueueItem] = []
        for item in eligible[:batch_size]:
            locked = replace(
                item,
                locked_at=now,
                locked_by=worker_id,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                updated_at=now,
            )
            self.queue[item.id] = locked
            claimed.append(locked)
        return claimed

    async def heartbeat_claims(
        self,
        *,
        queue_ids: list[str],
        worker_id: str,
        lease_seconds: int,
    ) -> set[str]:
        self._ensure_available()
        now = self.clock()
        renewed: set[str] = set()
        for queue_id in queue_ids:
            item = self.queue.get(queue_id)
            if item is None or item.locked_by != worker_id or _lease_expired(item, now):
                continue
            self.queue[queue_id] = replace(item, lease_expires_at=now + timedelta(seconds=lease_seconds))
            renewed.add(queue_id)
        return renewed

    async def reclaim_expired_claims(self, *, max_retries: int) -> int:
        self._ensure_available()
        now = self.clock()
        expired = [item for item in self.queue.values() if item.locked_at is not None and _lease_expired(item, now)]
        for item in expired:
            self._apply_failure(
                item,
                now=now,
                error="claim lease expired and was reclaimed",
                error_code="lease_expired",
                max_retries=max_retries,
            )
        return len(expired)

    async def release_claims(self, *, queue_ids: list[str], worker_id: str) -> set[str]:
        self._ensure_available()
        now = self.clock()
        released: set[str] = set()
        for queue_id in queue_ids:
            item = self.queue.get(queue_id)
            if item is None or item.locked_by != worker_id:
                continue
            self.queue[queue_id] = replace(
                item,
                locked_at=None,
                locked_by=None,
                lease_expires_at=None,
                updated_at=now,
            )
            released.add(queue_id)
        return released

    async def complete_success(self, *, queue_id: str, worker_id: str) -> None:
        self._ensure_available()
        item = self._owned_item(queue_id=queue_id, worker_id=worker_id)
        now = self.clock()
        del self.queue[queue_id]
        log = self._log_for(item)
        if log is None or log.status != NudgeStatus.QUEUED:
            return
        self._transition(log, NudgeStatus.SENT)
        self.logs[log.id] = replace(
            log,
            status=NudgeStatus.SENT,
            sent_at=now,
            attempt=log.attempt + 1,
            updated_at=now,
        )

    async def complete_failure(
        self,
        *,
        queue_id: str,
        worker_id: str,
        error: str,
        error_code: str,
        max_retries: int,
        retry_classification: RetryClassification | None = None,
    ) -> OutcomeKind:
        self._ensure_available()
        item = self._owned_item(queue_id=queue_id, worker_id=worker_id)
        return self._apply_failure(
            item,
            now=self.clock(),
            error=error,
            error_code=error_code,
            max_retries=max_retries,
            retry_classification=retry_classification,
        )

    async def get_queue_item(self, *, queue_id: str) -> QueueItem | None:
        self._ensure_available()
        return self.queue.get(queue_id)

    async def get_log(self, *, log_id: str) -> LogEntry | None:
        self._ensure_available()
        return self.logs.get(log_id)

    async def find_log_for_queue_item(self, *, queue_id: str) -> LogEntry | None:
        self._ensure_available()
        item = self.queue.get(queue_id)
        if item is None:
            return None
        return self._log_for(item)

    async def list_logs(self, *, query: LogQuery) -> list[LogEntry]:
        self._ensure_available()
        statuses = set(query.statuses) if query.statuses is not None else None
        items = [
            log
            for log in self.logs.values()
            if (query.hub_id is None or log.hub_id == query.hub_id)
            and (query.member_id is None or log.member_id == query.member_id)
            and (query.recipe_name is None or log.recipe_name == query.recipe_name)
            and (query.channel is None or log.channel == query.channel)
            and (statuses is None or log.status in statuses)
            and (query.scheduled_from is None or log.scheduled_at >= query.scheduled_from)
        ]
        items.sort(key=lambda log: (log.scheduled_at, log.id), reverse=True)
        return items[query.offset : query.offset + query.limit]

    def _owned_item(self, *, queue_id: str, worker_id: str) -> QueueItem:
        item = self.queue.get(queue_id)
        if item is None or item.locked_by != worker_id:
            raise StaleClaimError("claim ownership is stale")
        return item

    def _log_for(self, item: QueueItem) -> LogEntry | None:
        if item.log_id is not None:
            return self.logs.get(item.log_id)
        # Items without a log reference fall back to the newest queued log
        # for the same hub/member/recipe.
        candidates = [
            log
            for log in self.logs.values()
            if log.hub_id == item.hub_id
            and log.member_id == item.member_id
            and log.recipe_name == item.recipe_name
            and log.status == NudgeStatus.QUEUED
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda log: (log.created_at or log.scheduled_at, log.id))

    def _transition(self, log: LogEntry, to_status: NudgeStatus) -> None:
        ensure_transition(from_status=log.status, to_status=to_status)
        self.transitions.append((log.id, log.status.value, to_status.value))

    def _apply_failure(
        self,
        item: QueueItem,
        *,
        now: datetime,
        error: str,
        error_code: str,
        max_retries: int,
        retry_classification: RetryClassification | None = None,
    ) -> OutcomeKind:
        resolved_error_code = resolve_error_code(error_code)
        plan = plan_failure(
            attempt=item.attempt,
            max_retries=max_retries,
            classification=resolve_retry_classification(resolved_error_code, retry_classification),
        )
        log = self._log_for(item)

        if plan.terminal:
            del self.queue[item.id]
            if log is not None and log.status == NudgeStatus.QUEUED:
                self._transition(log, NudgeStatus.FAILED)
                self.logs[log.id] = replace(
                    log,
                    status=NudgeStatus.FAILED,
                    attempt=plan.next_attempt,
                    error=error,
                    error_code=resolved_error_code,
                    updated_at=now,
                )
            return OutcomeKind.FAILED

        self.queue[item.id] = replace(
            item,
            available_at=now + plan.backoff,
            attempt=plan.next_attempt,
            locked_at=None,
            locked_by=None,
            lease_expires_at=None,
            updated_at=now,
        )
        if log is not None and log.status == NudgeStatus.QUEUED:
            self.logs[log.id] = replace(
                log,
                attempt=plan.next_attempt,
                error=error,
                error_code=resolved_error_code,
                updated_at=now,
            )
        return OutcomeKind.REQUEUED


def _lease_expired(item: QueueItem, now: datetime) -> bool:
    return item.lease_expires_at is not None and item.lease_expires_at <= now
