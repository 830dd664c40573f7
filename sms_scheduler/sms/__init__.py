"""SMS gateway clients."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sms_scheduler.sms.gateway import MAX_SMS_LENGTH, SendReceipt, SmsGateway
from sms_scheduler.sms.telnyx import TelnyxGateway
from sms_scheduler.sms.twilio import TwilioGateway

if TYPE_CHECKING:
    from sms_scheduler.config import Settings

__all__ = [
    "MAX_SMS_LENGTH",
    "SendReceipt",
    "SmsGateway",
    "TelnyxGateway",
    "TwilioGateway",
    "create_gateway",
]


def create_gateway(settings: Settings) -> SmsGateway:
    """Build the gateway selected by ``settings.sms_provider``.

    Raises ValueError for an unknown provider or missing credentials.
    """
    provider = settings.sms_provider.lower()
    if provider == "telnyx":
        if not settings.telnyx_api_key or not settings.telnyx_phone_number:
            msg = "SMS not configured: missing TELNYX_API_KEY or TELNYX_PHONE_NUMBER"
            raise ValueError(msg)
        return TelnyxGateway(settings.telnyx_api_key, settings.telnyx_phone_number)
    if provider == "twilio":
        if not (
            settings.twilio_account_sid
            and settings.twilio_auth_token
            and settings.twilio_phone_number
        ):
            msg = (
                "SMS not configured: missing TWILIO_ACCOUNT_SID, "
                "TWILIO_AUTH_TOKEN or TWILIO_PHONE_NUMBER"
            )
            raise ValueError(msg)
        return TwilioGateway(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            settings.twilio_phone_number,
        )
    msg = f"Unknown SMS provider: {settings.sms_provider}"
    raise ValueError(msg)
