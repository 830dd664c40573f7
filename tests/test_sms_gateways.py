"""Tests for the Telnyx and Twilio SMS gateways."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from sms_scheduler.config import Settings
from sms_scheduler.errors import PermanentDispatchError, TransientDispatchError
from sms_scheduler.sms import (
    MAX_SMS_LENGTH,
    SmsGateway,
    TelnyxGateway,
    TwilioGateway,
    create_gateway,
)
from sms_scheduler.sms.gateway import classify_status, truncate_body


def _mock_session(status: int, *, json_data=None, text: str = "") -> MagicMock:
    mock_resp = AsyncMock()
    mock_resp.status = status
    mock_resp.json = AsyncMock(return_value=json_data or {})
    mock_resp.text = AsyncMock(return_value=text or json.dumps(json_data or {}))
    mock_resp.__aenter__ = AsyncMock(return_value=mock_resp)
    mock_resp.__aexit__ = AsyncMock(return_value=False)

    mock_session = MagicMock()
    mock_session.post = MagicMock(return_value=mock_resp)
    mock_session.closed = False
    return mock_session


# -- Helpers -------------------------------------------------------------------


@pytest.mark.parametrize("status", [408, 429, 500, 502, 503])
def test_retryable_statuses(status: int) -> None:
    assert classify_status(status) is TransientDispatchError


@pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
def test_terminal_statuses(status: int) -> None:
    assert classify_status(status) is PermanentDispatchError


def test_truncate_body() -> None:
    assert truncate_body("short") == "short"
    clipped = truncate_body("x" * 2000)
    assert len(clipped) == MAX_SMS_LENGTH
    assert clipped.endswith("...")


def test_gateways_satisfy_protocol() -> None:
    assert isinstance(TelnyxGateway("key", "+15551234567"), SmsGateway)
    assert isinstance(TwilioGateway("AC1", "tok", "+15551234567"), SmsGateway)


# -- Telnyx --------------------------------------------------------------------


async def test_telnyx_send_success() -> None:
    gateway = TelnyxGateway("test-api-key", "+15551234567")
    session = _mock_session(200, json_data={"data": {"id": "msg-abc"}})

    with patch.object(gateway, "_get_session", return_value=session):
        receipt = await gateway.send("+15559876543", "Hello!", "notif-1", timeout=5)

    assert receipt.provider_ref == "msg-abc"
    session.post.assert_called_once()
    kwargs = session.post.call_args.kwargs
    assert kwargs["json"] == {
        "from": "+15551234567",
        "to": "+15559876543",
        "text": "Hello!",
        "type": "SMS",
    }
    assert kwargs["headers"] == {"Idempotency-Key": "notif-1"}
    assert kwargs["timeout"].total == 5


async def test_telnyx_truncates_long_body() -> None:
    gateway = TelnyxGateway("test-api-key", "+15551234567")
    session = _mock_session(200, json_data={"data": {"id": "msg-abc"}})

    with patch.object(gateway, "_get_session", return_value=session):
        await gateway.send("+15559876543", "x" * 2000, "notif-1", timeout=5)

    payload = session.post.call_args.kwargs["json"]
    assert len(payload["text"]) == MAX_SMS_LENGTH


async def test_telnyx_rejection_is_permanent() -> None:
    gateway = TelnyxGateway("test-api-key", "+15551234567")
    session = _mock_session(422, text="invalid destination")

    with (
        patch.object(gateway, "_get_session", return_value=session),
        pytest.raises(PermanentDispatchError) as excinfo,
    ):
        await gateway.send("+15559876543", "Hello!", "notif-1", timeout=5)

    assert excinfo.value.status == 422
    assert "invalid destination" in str(excinfo.value)


async def test_telnyx_server_error_is_transient() -> None:
    gateway = TelnyxGateway("test-api-key", "+15551234567")
    session = _mock_session(503, text="unavailable")

    with (
        patch.object(gateway, "_get_session", return_value=session),
        pytest.raises(TransientDispatchError),
    ):
        await gateway.send("+15559876543", "Hello!", "notif-1", timeout=5)


async def test_telnyx_network_error_is_transient() -> None:
    gateway = TelnyxGateway("test-api-key", "+15551234567")
    session = MagicMock()
    session.post = MagicMock(side_effect=aiohttp.ClientConnectionError("Connection refused"))

    with (
        patch.object(gateway, "_get_session", return_value=session),
        pytest.raises(TransientDispatchError, match="Connection refused"),
    ):
        await gateway.send("+15559876543", "Hello!", "notif-1", timeout=5)


async def test_telnyx_session_auth_header() -> None:
    gateway = TelnyxGateway("test-api-key", "+15551234567")

    with patch("sms_scheduler.sms.telnyx.aiohttp.ClientSession") as mock_cls:
        mock_cls.return_value.closed = False
        first = gateway._get_session()
        second = gateway._get_session()

    assert first is second
    mock_cls.assert_called_once()
    assert mock_cls.call_args.kwargs["headers"]["Authorization"] == "Bearer test-api-key"


async def test_close_releases_session() -> None:
    gateway = TelnyxGateway("test-api-key", "+15551234567")
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    gateway._session = session

    await gateway.close()

    session.close.assert_awaited_once()
    assert gateway._session is None


# -- Twilio --------------------------------------------------------------------


async def test_twilio_send_success() -> None:
    gateway = TwilioGateway("AC123", "secret", "+15551234567")
    session = _mock_session(201, json_data={"sid": "SM999", "status": "queued"})

    with patch.object(gateway, "_get_session", return_value=session):
        receipt = await gateway.send("+15559876543", "Hello!", "notif-2", timeout=5)

    assert receipt.provider_ref == "SM999"
    args, kwargs = session.post.call_args
    assert args[0] == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
    assert kwargs["data"] == {"To": "+15559876543", "From": "+15551234567", "Body": "Hello!"}
    assert kwargs["headers"] == {"I-Twilio-Idempotency-Token": "notif-2"}


async def test_twilio_invalid_number_is_permanent() -> None:
    gateway = TwilioGateway("AC123", "secret", "+15551234567")
    session = _mock_session(400, json_data={"code": 21211, "message": "Invalid 'To' number"})

    with (
        patch.object(gateway, "_get_session", return_value=session),
        pytest.raises(PermanentDispatchError, match="21211"),
    ):
        await gateway.send("+1555", "Hello!", "notif-2", timeout=5)


async def test_twilio_rate_limit_is_transient() -> None:
    gateway = TwilioGateway("AC123", "secret", "+15551234567")
    session = _mock_session(429, json_data={"code": 20429, "message": "Too Many Requests"})

    with (
        patch.object(gateway, "_get_session", return_value=session),
        pytest.raises(TransientDispatchError) as excinfo,
    ):
        await gateway.send("+15559876543", "Hello!", "notif-2", timeout=5)

    assert excinfo.value.status == 429


async def test_twilio_html_error_body_classified_by_status() -> None:
    gateway = TwilioGateway("AC123", "secret", "+15551234567")
    session = _mock_session(400, text="<html><body>Bad Request</body></html>")

    with (
        patch.object(gateway, "_get_session", return_value=session),
        pytest.raises(PermanentDispatchError) as excinfo,
    ):
        await gateway.send("+15559876543", "Hello!", "notif-2", timeout=5)

    assert excinfo.value.status == 400
    assert "Bad Request" in str(excinfo.value)


async def test_twilio_html_server_error_is_transient() -> None:
    gateway = TwilioGateway("AC123", "secret", "+15551234567")
    session = _mock_session(502, text="<html>Bad Gateway</html>")

    with (
        patch.object(gateway, "_get_session", return_value=session),
        pytest.raises(TransientDispatchError) as excinfo,
    ):
        await gateway.send("+15559876543", "Hello!", "notif-2", timeout=5)

    assert excinfo.value.status == 502


async def test_twilio_session_uses_basic_auth() -> None:
    gateway = TwilioGateway("AC123", "secret", "+15551234567")

    with patch("sms_scheduler.sms.twilio.aiohttp.ClientSession") as mock_cls:
        mock_cls.return_value.closed = False
        gateway._get_session()

    assert mock_cls.call_args.kwargs["auth"] == aiohttp.BasicAuth("AC123", "secret")


# -- create_gateway ------------------------------------------------------------


def test_create_telnyx_gateway() -> None:
    s = Settings(telnyx_api_key="key", telnyx_phone_number="+15551234567")
    gateway = create_gateway(s)
    assert isinstance(gateway, TelnyxGateway)
    assert gateway.name == "telnyx"


def test_create_twilio_gateway() -> None:
    s = Settings(
        sms_provider="twilio",
        twilio_account_sid="AC123",
        twilio_auth_token="secret",
        twilio_phone_number="+15551234567",
    )
    assert isinstance(create_gateway(s), TwilioGateway)


def test_create_gateway_missing_credentials() -> None:
    with pytest.raises(ValueError, match="TELNYX_API_KEY"):
        create_gateway(Settings())


def test_create_gateway_unknown_provider() -> None:
    with pytest.raises(ValueError, match="carrier-pigeon"):
        create_gateway(Settings(sms_provider="carrier-pigeon"))
