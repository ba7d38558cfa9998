from __future__ import annotations

from dataclasses import dataclass, field
import logging

from nudge_queue.domain.dto import SendRequest, SendResult
from nudge_queue.domain.error_taxonomy import ErrorCode, classify_error

logger = logging.getLogger("nudges")


@dataclass
class StubNudgeSender:
    """Records every request and reports success unless a failure is scripted.

    ``failures`` maps a member id to the error code its next sends fail with;
    ``raise_for`` maps a member id to an exception raised from ``send``.
    """

    requests: list[SendRequest] = field(default_factory=list)
    failures: dict[str, ErrorCode] = field(default_factory=dict)
    raise_for: dict[str, Exception] = field(default_factory=dict)

    async def send(self, request: SendRequest) -> SendResult:
        self.requests.append(request)
        exc = self.raise_for.get(request.member_id)
        if exc is not None:
            raise exc

        error_code = self.failures.get(request.member_id)
        if error_code is not None:
            return SendResult(
                ok=False,
                error=f"stub sender scripted failure: {error_code}",
                error_code=error_code,
                retry_classification=classify_error(error_code),
            )

        logger.info(
            "stub nudge delivered",
            extra={
                "queue_id": request.queue_id,
                "hub_id": request.hub_id,
                "member_id": request.member_id,
                "detail": request.channel,
            },
        )
        return SendResult(ok=True)
