from __future__ import annotations

from dataclasses import dataclass

from nudge_queue.domain.contracts import NudgeSender, NudgeStore


@dataclass(frozen=True)
class WorkerDeps:
    store: NudgeStore
    sender: NudgeSender
    send_timeout_seconds: float = 30
