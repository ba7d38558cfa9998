from __future__ import annotations

from typing import Literal

# Canonical error vocabulary for delivery failures.
ErrorCode = Literal[
    "transport_failed",
    "send_timeout",
    "cancelled",
    "lease_expired",
    "recipient_invalid",
    "channel_unsupported",
    "payload_invalid",
    "internal_error",
]

RetryClassification = Literal["transient", "permanent"]

# Allowed persisted values for nudge_logs.error_code.
CANONICAL_ERROR_CODES: tuple[ErrorCode, ...] = (
    "transport_failed",
    "send_timeout",
    "cancelled",
    "lease_expired",
    "recipient_invalid",
    "channel_unsupported",
    "payload_invalid",
    "internal_error",
)

# Errors that consume one attempt of the retry budget and are rescheduled.
TRANSIENT_ERROR_CODES: frozenset[ErrorCode] = frozenset(
    {
        "transport_failed",
        "send_timeout",
        "cancelled",
        "lease_expired",
        "internal_error",
    }
)


def is_canonical_error_code(code: str) -> bool:
    return code in CANONICAL_ERROR_CODES


def resolve_error_code(code: str | None) -> ErrorCode:
    if code is not None and is_canonical_error_code(code):
        return code  # type: ignore[return-value]
    # Keep persistence stable even if a sender emitted an unknown code.
    return "internal_error"


def classify_error(code: ErrorCode) -> RetryClassification:
    if code in TRANSIENT_ERROR_CODES:
        return "transient"
    return "permanent"


def resolve_retry_classification(
    code: ErrorCode,
    explicit: str | None = None,
) -> RetryClassification:
    """Prefer a sender's explicit tag; fall back to the code's classification."""
    if explicit == "permanent" or explicit == "transient":
        return explicit  # type: ignore[return-value]
    return classify_error(code)
