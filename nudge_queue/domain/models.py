from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from nudge_queue.domain.error_taxonomy import ErrorCode, RetryClassification


# Canonical nudge log states.
#
# IMPORTANT:
# - Keep this enum synchronized with nudge_queue/domain/lifecycle.py
#   (ALLOWED_TRANSITIONS).
# - Keep this enum synchronized with the DB status CHECK constraint in
#   db/migrations/000001_bootstrap.up.sql.
class NudgeStatus(StrEnum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class NudgeChannel(StrEnum):
    EMAIL = "email"
    DM = "dm"
    ANNOUNCEMENT = "announcement"
    PUSH = "push"
    WEBHOOK = "webhook"
    STUB = "stub"


DEFAULT_CHANNEL = NudgeChannel.STUB.value


class EnqueueRejection(StrEnum):
    RATE_LIMITED = "rate_limited"
    DUPLICATE = "duplicate"
    STORE_UNAVAILABLE = "store_unavailable"


class OutcomeKind(StrEnum):
    SENT = "sent"
    REQUEUED = "requeued"
    FAILED = "failed"


@dataclass(frozen=True)
class NudgePayload:
    message: str
    variables: dict[str, object] = field(default_factory=dict)
    channel: str = DEFAULT_CHANNEL
    metadata: dict[str, object] = field(default_factory=dict)

    def as_json(self) -> dict[str, object]:
        return {
            "message": self.message,
            "variables": dict(self.variables),
            "channel": self.channel,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_json(cls, value: dict[str, object]) -> NudgePayload:
        variables = value.get("variables")
        metadata = value.get("metadata")
        channel = value.get("channel")
        return cls(
            message=str(value.get("message") or ""),
            variables=dict(variables) if isinstance(variables, dict) else {},
            channel=str(channel) if channel else DEFAULT_CHANNEL,
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )


@dataclass(frozen=True)
class QueueItem:
    id: str
    log_id: str | None
    hub_id: str
    member_id: str
    recipe_name: str
    payload: NudgePayload
    available_at: datetime
    attempt: int = 0
    locked_at: datetime | None = None
    locked_by: str | None = None
    lease_expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class LogEntry:
    id: str
    hub_id: str
    member_id: str
    recipe_name: str
    channel: str
    message: str
    message_hash: str
    status: NudgeStatus
    scheduled_at: datetime
    attempt: int = 0
    error: str | None = None
    error_code: str | None = None
    sent_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class EnqueueResult:
    enqueued: bool
    reason: EnqueueRejection | None = None
    queue_id: str | None = None
    log_id: str | None = None


@dataclass(frozen=True)
class ProcessResult:
    success: bool
    detail: str = ""
    error_code: ErrorCode | None = None
    retry_classification: RetryClassification | None = None


@dataclass
class DispatchSummary:
    taken: int = 0
    sent: int = 0
    failed: int = 0
    requeued: int = 0
    stale: int = 0

    def record(self, outcome: OutcomeKind) -> None:
        if outcome == OutcomeKind.SENT:
            self.sent += 1
        elif outcome == OutcomeKind.FAILED:
            self.failed += 1
        else:
            self.requeued += 1


@dataclass(frozen=True)
class LogQuery:
    hub_id: str | None = None
    member_id: str | None = None
    recipe_name: str | None = None
    channel: str | None = None
    statuses: tuple[NudgeStatus, ...] | None = None
    scheduled_from: datetime | None = None
    limit: int = 100
    offset: int = 0
