"""Telnyx SMS gateway using aiohttp."""

from __future__ import annotations

import asyncio
import logging

import aiohttp

from sms_scheduler.errors import TransientDispatchError
from sms_scheduler.sms.gateway import SendReceipt, classify_status, truncate_body

logger = logging.getLogger(__name__)

TELNYX_API_URL = "https://api.telnyx.com/v2/messages"


class TelnyxGateway:
    """Sends SMS through the Telnyx Messaging API.

    Args:
        api_key: Telnyx API v2 key.
        from_number: Sending phone number in E.164 format.
        api_url: Override for the messages endpoint (tests, proxies).
    """

    def __init__(self, api_key: str, from_number: str, *, api_url: str = TELNYX_API_URL) -> None:
        self._api_key = api_key
        self._from_number = from_number
        self._api_url = api_url
        self._session: aiohttp.ClientSession | None = None

    @property
    def name(self) -> str:
        return "telnyx"

    def _get_session(self) -> aiohttp.ClientSession:
        """Return (and lazily create) the aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Authorization": f"Bearer {self._api_key}"},
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
        payload = {
            "from": self._from_number,
            "to": recipient,
            "text": body,
            "type": "SMS",
        }

        session = self._get_session()
        try:
            async with session.post(
                self._api_url,
                json=payload,
                headers={"Idempotency-Key": dedupe_key},
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                if 200 <= resp.status < 300:
                    data = await resp.json()
                    message_id = str(data.get("data", {}).get("id", ""))
                    logger.info(
                        "SMS sent to %s via Telnyx (%d chars, id=%s)",
                        recipient,
                        len(body),
                        message_id,
                    )
                    return SendReceipt(provider_ref=message_id)
                text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            msg = f"Telnyx request failed: {exc!r}"
            raise TransientDispatchError(msg) from exc

        logger.error("Telnyx send failed: status=%d body=%s", resp.status, text[:200])
        error_cls = classify_status(resp.status)
        msg = f"Telnyx rejected message (status={resp.status}): {text[:200]}"
        raise error_cls(msg, status=resp.status)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
