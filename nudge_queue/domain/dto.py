from __future__ import annotations

from dataclasses import dataclass, field

from nudge_queue.domain.error_taxonomy import ErrorCode, RetryClassification
from nudge_queue.domain.models import DEFAULT_CHANNEL, NudgePayload


@dataclass(frozen=True)
class EnqueueNudgeCommand:
    hub_id: str
    member_id: str
    recipe_name: str
    message: str
    variables: dict[str, object] = field(default_factory=dict)
    channel: str = DEFAULT_CHANNEL


@dataclass(frozen=True)
class AdmitNudgeCommand:
    """Store-level admission request: checks and inserts happen as one unit."""

    hub_id: str
    member_id: str
    recipe_name: str
    payload: NudgePayload
    message_hash: str
    cooldown_window_hours: int


@dataclass(frozen=True)
class SendRequest:
    queue_id: str
    hub_id: str
    member_id: str
    channel: str
    message: str
    variables: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class SendResult:
    ok: bool
    error: str | None = None
    error_code: ErrorCode | None = None
    retry_classification: RetryClassification | None = None
