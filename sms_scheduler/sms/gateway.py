"""SmsGateway protocol: the capability the Dispatcher sends through."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from sms_scheduler.errors import PermanentDispatchError, TransientDispatchError

# Maximum SMS body length (~10 segments). Longer messages risk delivery issues.
MAX_SMS_LENGTH = 1600


@dataclass(frozen=True)
class SendReceipt:
    """Successful send. ``provider_ref`` is the provider's message id."""

    provider_ref: str


@runtime_checkable
class SmsGateway(Protocol):
    """Protocol that all SMS providers must satisfy.

    ``send`` raises TransientDispatchError for retryable failures and
    PermanentDispatchError for rejections that will never succeed.
    """

    @property
    def name(self) -> str:
        """Provider identifier (e.g. 'telnyx', 'twilio')."""
        ...

    async def send(
        self,
        recipient: str,
        body: str,
        dedupe_key: str,
        *,
        timeout: float,
    ) -> SendReceipt:
        """Send one message to one recipient."""
        ...

    async def close(self) -> None:
        """Release any network resources."""
        ...


def classify_status(status: int) -> type[TransientDispatchError] | type[PermanentDispatchError]:
    """Map a non-2xx provider status to a retryable or terminal error class."""
    if status in (408, 429) or status >= 500:
        return TransientDispatchError
    return PermanentDispatchError


def truncate_body(body: str) -> str:
    """Clip *body* to MAX_SMS_LENGTH, marking the cut with an ellipsis."""
    if len(body) > MAX_SMS_LENGTH:
        return body[: MAX_SMS_LENGTH - 3] + "..."
    return body
