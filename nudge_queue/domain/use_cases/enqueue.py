from __future__ import annotations

import logging

from nudge_queue.domain.contracts import NudgeStore
from nudge_queue.domain.dto import AdmitNudgeCommand, EnqueueNudgeCommand
from nudge_queue.domain.errors import DomainValidationError, StoreUnavailableError
from nudge_queue.domain.models import DEFAULT_CHANNEL, EnqueueRejection, EnqueueResult, NudgePayload
from nudge_queue.domain.template import compute_message_hash

COMPONENT_ID = "domain.nudges.enqueue"
DEFAULT_COOLDOWN_WINDOW_HOURS = 6

logger = logging.getLogger("nudges")


async def enqueue_nudge(
    store: NudgeStore,
    cmd: EnqueueNudgeCommand,
    *,
    cooldown_window_hours: int = DEFAULT_COOLDOWN_WINDOW_HOURS,
) -> EnqueueResult:
    """Admit one rendered nudge into the delivery queue.

    A nudge is rejected as ``duplicate`` when the same hub/member/recipe/content
    was already admitted today (UTC), and as ``rate_limited`` when the member has
    any queued or sent nudge inside the cooldown window. The cooldown is a global
    per-recipient cooldown across all recipes; campaign-specific frequency caps are
    the producer's job before it calls enqueue.

    Rejections are normal results. A store outage is logged and reported as the
    distinct ``store_unavailable`` rejection.
    """
    for name, value in (("hub_id", cmd.hub_id), ("member_id", cmd.member_id), ("recipe_name", cmd.recipe_name)):
        if not value or not value.strip():
            raise DomainValidationError(f"{name} must be a non-empty identifier")
    if cooldown_window_hours < 0:
        raise DomainValidationError("cooldown_window_hours must be non-negative")

    variables = dict(cmd.variables)
    message_hash = compute_message_hash(cmd.message, variables, cmd.recipe_name)
    payload = NudgePayload(
        message=cmd.message,
        variables=variables,
        channel=cmd.channel or DEFAULT_CHANNEL,
    )
    log_extra = {"hub_id": cmd.hub_id, "member_id": cmd.member_id, "recipe_name": cmd.recipe_name}

    try:
        result = await store.admit(
            AdmitNudgeCommand(
                hub_id=cmd.hub_id,
                member_id=cmd.member_id,
                recipe_name=cmd.recipe_name,
                payload=payload,
                message_hash=message_hash,
                cooldown_window_hours=cooldown_window_hours,
            )
        )
    except StoreUnavailableError as exc:
        logger.error(
            "nudge admission failed: store unavailable",
            extra={**log_extra, "reason": EnqueueRejection.STORE_UNAVAILABLE.value, "detail": str(exc)},
        )
        return EnqueueResult(enqueued=False, reason=EnqueueRejection.STORE_UNAVAILABLE)

    if result.enqueued:
        logger.info(
            "nudge enqueued",
            extra={**log_extra, "queue_id": result.queue_id, "log_id": result.log_id},
        )
    else:
        logger.info(
            "nudge skipped",
            extra={**log_extra, "reason": result.reason.value if result.reason else None},
        )
    return result
