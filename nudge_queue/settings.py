from __future__ import annotations

from dataclasses import dataclass
import os

TRUTHY_VALUES = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True)
class NudgeQueueSettings:
    enabled: bool = False
    cooldown_window_hours: int = 6
    max_retries: int = 3
    batch_size: int = 20
    send_timeout_seconds: int = 30
    worker_secret: str | None = None


def nudge_queue_settings_from_env() -> NudgeQueueSettings:
    return NudgeQueueSettings(
        enabled=env_bool("NUDGES_ENABLED", False),
        cooldown_window_hours=env_int("NUDGE_RATE_LIMIT_WINDOW_HOURS", 6),
        max_retries=env_int("NUDGE_MAX_RETRIES", 3),
        batch_size=env_int("NUDGE_BATCH_SIZE", 20),
        send_timeout_seconds=env_int("NUDGE_SEND_TIMEOUT_SECONDS", 30),
        worker_secret=os.getenv("WORKER_SECRET") or None,
    )


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in TRUTHY_VALUES
