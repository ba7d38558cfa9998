from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from nudge_queue.domain.error_taxonomy import RetryClassification
from nudge_queue.domain.errors import DomainInvariantError

# Upper bound for a single retry delay; 2**13 minutes is the last uncapped step.
MAX_BACKOFF = timedelta(days=7)

# Statuses a log entry may be written in while still admitting new nudges
# to the same member inside the cooldown window.
COOLDOWN_STATUSES: tuple[str, ...] = ("queued", "sent")

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "queued": {"sent", "failed"},
    "sent": set(),
    "failed": set(),
}


@dataclass(frozen=True)
class FailurePlan:
    terminal: bool
    next_attempt: int
    backoff: timedelta = timedelta(0)


def ensure_transition(*, from_status: str, to_status: str) -> None:
    allowed = ALLOWED_TRANSITIONS.get(from_status, set())
    if to_status not in allowed:
        raise DomainInvariantError(f"invalid transition: {from_status} -> {to_status}")


def backoff_delay(attempt: int) -> timedelta:
    """Exponential retry delay: 1, 2, 4, ... minutes for attempt 0, 1, 2, ..."""
    if attempt < 0:
        raise ValueError("attempt must be non-negative")
    if attempt >= 14:
        return MAX_BACKOFF
    return min(timedelta(minutes=2**attempt), MAX_BACKOFF)


def plan_failure(*, attempt: int, max_retries: int, classification: RetryClassification) -> FailurePlan:
    next_attempt = attempt + 1
    if classification == "permanent" or next_attempt >= max_retries:
        return FailurePlan(terminal=True, next_attempt=next_attempt)
    return FailurePlan(terminal=False, next_attempt=next_attempt, backoff=backoff_delay(attempt))
