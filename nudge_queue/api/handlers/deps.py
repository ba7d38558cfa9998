from __future__ import annotations

from dataclasses import dataclass

from nudge_queue.domain.contracts import NudgeSender, NudgeStore
from nudge_queue.settings import NudgeQueueSettings
from nudge_queue.workers.loop import DispatchLoop


@dataclass(frozen=True)
class ApiDeps:
    store: NudgeStore
    sender: NudgeSender
    settings: NudgeQueueSettings
    dispatch_loop: DispatchLoop
