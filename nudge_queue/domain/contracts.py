from __future__ import annotations

from typing import Protocol, runtime_checkable

from nudge_queue.domain.dto import AdmitNudgeCommand, SendRequest, SendResult
from nudge_queue.domain.error_taxonomy import RetryClassification
from nudge_queue.domain.models import EnqueueResult, LogEntry, LogQuery, OutcomeKind, QueueItem


CLAIM_SQL_CONTRACT = "UPDATE ... FROM (SELECT ... FOR UPDATE SKIP LOCKED) ... RETURNING"


@runtime_checkable
class NudgeStore(Protocol):
    """Durable queue + log store used by admission and dispatch.

    Claim semantics must remain compatible with a single atomic conditional
    update (Postgres: FOR UPDATE SKIP LOCKED) so that concurrent claimers never
    receive the same item. Admission must be atomic per (hub_id, member_id).
    """

    async def admit(self, command: AdmitNudgeCommand) -> EnqueueResult: ...

    async def claim_batch(self, *, worker_id: str, batch_size: int, lease_seconds: int) -> list[QueueItem]: ...

    async def heartbeat_claims(
        self,
        *,
        queue_ids: list[str],
        worker_id: str,
        lease_seconds: int,
    ) -> set[str]: ...

    async def reclaim_expired_claims(self, *, max_retries: int) -> int: ...

    # Unlocks owned items without consuming an attempt; returns the released ids.
    async def release_claims(self, *, queue_ids: list[str], worker_id: str) -> set[str]: ...

    async def complete_success(self, *, queue_id: str, worker_id: str) -> None: ...

    # Applies the retry/terminal policy using the attempt count stored on the item.
    async def complete_failure(
        self,
        *,
        queue_id: str,
        worker_id: str,
        error: str,
        error_code: str,
        max_retries: int,
        retry_classification: RetryClassification | None = None,
    ) -> OutcomeKind: ...

    async def get_queue_item(self, *, queue_id: str) -> QueueItem | None: ...

    async def get_log(self, *, log_id: str) -> LogEntry | None: ...

    async def find_log_for_queue_item(self, *, queue_id: str) -> LogEntry | None: ...

    async def list_logs(self, *, query: LogQuery) -> list[LogEntry]: ...


@runtime_checkable
class NudgeSender(Protocol):
    """Channel transport boundary (DM/email/webhook senders live outside)."""

    async def send(self, request: SendRequest) -> SendResult: ...
