"""Twilio SMS gateway using aiohttp against the Programmable Messaging REST API."""

from __future__ import annotations

import asyncio
import json
import logging

import aiohttp

from sms_scheduler.errors import PermanentDispatchError, TransientDispatchError
from sms_scheduler.sms.gateway import SendReceipt, classify_status, truncate_body

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"

# Twilio error codes that mean the destination can never receive the message.
_PERMANENT_ERROR_CODES = frozenset({21211, 21408, 21610, 21614})


class TwilioGateway:
    """Sends SMS through Twilio.

    Args:
        account_sid: Twilio account SID (also the basic-auth user).
        auth_token: Twilio auth token.
        from_number: Sending phone number in E.164 format.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        api_base: str = TWILIO_API_BASE,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._url = f"{api_base}/Accounts/{account_sid}/Messages.json"
        self._session: aiohttp.ClientSession | None = None

    @property
    def name(self) -> str:
        return "twilio"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                auth=aiohttp.BasicAuth(self._account_sid, self._auth_token),
            )
        return self._session

    async def send(
        self,
        recipient: str,
        body: str,
        dedupe_key: str,
        *,
        timeout: float,
    ) -> SendReceipt:
        """Send an SMS. Raises TransientDispatchError or PermanentDispatchError."""
        body = truncate_body(body)
        form = {"To": recipient, "From": self._from_number, "Body": body}

        session = self._get_session()
        try:
            async with session.post(
                self._url,
                data=form,
                headers={"I-Twilio-Idempotency-Token": dedupe_key},
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                status = resp.status
                text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            msg = f"Twilio request failed: {exc!r}"
            raise TransientDispatchError(msg) from exc

        try:
            data = json.loads(text)
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if 200 <= status < 300:
            sid = str(data.get("sid", ""))
            logger.info("SMS sent to %s via Twilio (%d chars, sid=%s)", recipient, len(body), sid)
            return SendReceipt(provider_ref=sid)

        code = data.get("code")
        detail = data.get("message") or text[:200]
        logger.error("Twilio send failed: status=%d code=%s message=%s", status, code, detail)
        msg = f"Twilio rejected message (status={status}, code={code}): {detail}"
        if code in _PERMANENT_ERROR_CODES:
            raise PermanentDispatchError(msg, status=status)
        raise classify_status(status)(msg, status=status)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
