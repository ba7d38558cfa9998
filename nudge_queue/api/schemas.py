from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from nudge_queue.domain.models import NudgeChannel, NudgeStatus


class ErrorResponse(BaseModel):
    detail: str


class WorkerMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    claims_total: int
    idle_ticks_total: int
    errors_total: int
    reclaimed_total: int


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    nudges_enabled: bool
    worker_loop_enabled: bool
    worker_loop_ready: bool
    worker_metrics: WorkerMetrics


class NudgeRequestItem(BaseModel):
    member_id: str = Field(min_length=1, max_length=256)
    recipe_name: str = Field(min_length=1, max_length=256)
    message: str = Field(min_length=1)
    variables: dict[str, object] = Field(default_factory=dict)
    channel: NudgeChannel = NudgeChannel.STUB


class DispatchNudgesRequest(BaseModel):
    hub_id: str = Field(min_length=1, max_length=256)
    nudges: list[NudgeRequestItem] = Field(min_length=1, max_length=500)


class EnqueueResultItem(BaseModel):
    member_id: str
    recipe_name: str
    enqueued: bool
    reason: str | None = None
    queue_id: str | None = None
    log_id: str | None = None


class DispatchNudgesResponse(BaseModel):
    ok: bool
    enqueued: int
    skipped: int
    results: list[EnqueueResultItem]


class WorkerRunResponse(BaseModel):
    ok: bool
    taken: int
    sent: int
    failed: int
    requeued: int
    stale: int
    reclaimed: int


class LogEntryResponse(BaseModel):
    id: str
    hub_id: str
    member_id: str
    recipe_name: str
    channel: str
    message: str
    message_hash: str
    status: NudgeStatus
    attempt: int
    error: str | None = None
    error_code: str | None = None
    scheduled_at: datetime
    sent_at: datetime | None = None


class ListLogsResponse(BaseModel):
    logs: list[LogEntryResponse]
    has_more: bool
