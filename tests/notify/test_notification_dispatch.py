"""Tests for calsync.notify: channels and the fan-out dispatcher."""

from __future__ import annotations

import base64
import json
from datetime import date, time
from urllib.parse import parse_qs

import httpx
import pytest

from calsync.config import EmailJSConfig, TwilioConfig
from calsync.errors import ChannelFailureError, ChannelUnconfiguredError
from calsync.models import Reminder
from calsync.notify import (
    ChannelStatus,
    EmailChannel,
    LocalAlertChannel,
    NotificationDispatcher,
    SmsChannel,
)
from calsync.notify.channels import EMAILJS_SEND_URL, NO_DESCRIPTION, sms_body

pytestmark = pytest.mark.unit

EMAIL_CONFIG = EmailJSConfig(
    service_id="service_abc", template_id="template_xyz", public_key="pk_123"
)
SMS_CONFIG = TwilioConfig(account_sid="AC123", auth_token="tok", from_number="+15550100")


def _reminder(**overrides) -> Reminder:
    data = {
        "id": "r1",
        "title": "Pay rent",
        "date": date(2024, 1, 10),
        "time": time(9, 30),
        "email_notification": True,
        "sms_notification": True,
        "phone_number": "+15550123",
    }
    data.update(overrides)
    return Reminder(**data)


def _http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# LocalAlertChannel
# ---------------------------------------------------------------------------


class TestLocalAlertChannel:
    async def test_invokes_sync_and_async_callbacks(self):
        seen: list[str] = []

        async def async_cb(reminder: Reminder) -> None:
            seen.append(f"async:{reminder.id}")

        await LocalAlertChannel(lambda r: seen.append(f"sync:{r.id}")).send(_reminder())
        await LocalAlertChannel(async_cb).send(_reminder())
        assert seen == ["sync:r1", "async:r1"]

    async def test_callback_failure_is_swallowed(self):
        def boom(reminder: Reminder) -> None:
            raise RuntimeError("display gone")

        assert await LocalAlertChannel(boom).send(_reminder()) is None

    def test_always_wanted(self):
        assert LocalAlertChannel().wants(_reminder(email_notification=False))


# ---------------------------------------------------------------------------
# EmailChannel
# ---------------------------------------------------------------------------


class TestEmailChannel:
    def test_payload(self):
        channel = EmailChannel(
            EmailJSConfig(
                service_id="s", template_id="t", public_key="pk", private_key="sk"
            ),
            _http(lambda r: httpx.Response(200)),
            to_email="alice@example.com",
            to_name="Alice",
        )
        payload = channel.build_payload(_reminder())
        assert payload["service_id"] == "s"
        assert payload["user_id"] == "pk"
        assert payload["accessToken"] == "sk"
        assert payload["template_params"] == {
            "to_email": "alice@example.com",
            "from_name": "Sync My Calendar",
            "to_name": "Alice",
            "reminder_title": "Pay rent",
            "reminder_description": NO_DESCRIPTION,
            "reminder_date": "2024-01-10",
            "reminder_time": "09:30",
        }

    async def test_send_posts_json(self):
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, text="OK")

        channel = EmailChannel(EMAIL_CONFIG, _http(handler), to_email="alice@example.com")
        await channel.send(_reminder(description="Landlord"))

        assert str(captured[0].url) == EMAILJS_SEND_URL
        body = json.loads(captured[0].content)
        assert body["template_params"]["reminder_description"] == "Landlord"
        assert body["template_params"]["to_name"] == "there"
        assert "accessToken" not in body

    async def test_rejection_is_channel_failure(self):
        channel = EmailChannel(
            EMAIL_CONFIG,
            _http(lambda r: httpx.Response(400, text="The Public Key is invalid")),
            to_email="alice@example.com",
        )
        with pytest.raises(ChannelFailureError, match="Public Key is invalid"):
            await channel.send(_reminder())

    async def test_unconfigured(self):
        channel = EmailChannel(None, _http(lambda r: httpx.Response(200)), to_email="a@b.c")
        assert not channel.configured
        with pytest.raises(ChannelUnconfiguredError):
            await channel.send(_reminder())

    async def test_missing_recipient(self):
        channel = EmailChannel(EMAIL_CONFIG, _http(lambda r: httpx.Response(200)), to_email=None)
        with pytest.raises(ChannelUnconfiguredError, match="recipient"):
            await channel.send(_reminder())

    def test_wants_follows_flag(self):
        channel = EmailChannel(EMAIL_CONFIG, _http(lambda r: httpx.Response(200)), to_email="x")
        assert channel.wants(_reminder())
        assert not channel.wants(_reminder(email_notification=False))


# ---------------------------------------------------------------------------
# SmsChannel
# ---------------------------------------------------------------------------


class TestSmsChannel:
    async def test_send_posts_form_with_basic_auth(self):
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(201, json={"sid": "SM1", "status": "queued"})

        sid = await SmsChannel(SMS_CONFIG, _http(handler)).send(_reminder())

        assert sid == "SM1"
        request = captured[0]
        assert request.url.path == "/2010-04-01/Accounts/AC123/Messages.json"
        expected_auth = base64.b64encode(b"AC123:tok").decode()
        assert request.headers["Authorization"] == f"Basic {expected_auth}"
        form = parse_qs(request.content.decode())
        assert form["To"] == ["+15550123"]
        assert form["From"] == ["+15550100"]
        assert form["Body"] == [sms_body(_reminder())]

    async def test_provider_error_message_is_surfaced(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400, json={"code": 21211, "message": "The 'To' number is not valid."}
            )

        with pytest.raises(ChannelFailureError, match="'To' number is not valid"):
            await SmsChannel(SMS_CONFIG, _http(handler)).send(_reminder())

    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(ChannelFailureError, match="Twilio request failed"):
            await SmsChannel(SMS_CONFIG, _http(handler)).send(_reminder())

    def test_wants_requires_phone_number(self):
        channel = SmsChannel(SMS_CONFIG, _http(lambda r: httpx.Response(201)))
        assert channel.wants(_reminder())
        assert not channel.wants(_reminder(phone_number=None))
        assert not channel.wants(_reminder(sms_notification=False))

    def test_body_format(self):
        assert sms_body(_reminder(description="Landlord")) == (
            "Reminder: Pay rent\nLandlord\nDate: 2024-01-10\nTime: 09:30"
        )


# ---------------------------------------------------------------------------
# NotificationDispatcher
# ---------------------------------------------------------------------------


class _ExplodingChannel:
    name = "exploding"

    def wants(self, reminder: Reminder) -> bool:
        return True

    async def send(self, reminder: Reminder) -> str | None:
        raise KeyError("unexpected")


class TestNotificationDispatcher:
    async def test_failure_on_one_channel_does_not_stop_others(self):
        alerts: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "api.emailjs.com":
                return httpx.Response(500, text="upstream down")
            return httpx.Response(201, json={"sid": "SM9"})

        http = _http(handler)
        dispatcher = NotificationDispatcher(
            [
                LocalAlertChannel(lambda r: alerts.append(r.id)),
                EmailChannel(EMAIL_CONFIG, http, to_email="alice@example.com"),
                SmsChannel(SMS_CONFIG, http),
            ]
        )

        outcomes = await dispatcher.dispatch(_reminder())

        assert outcomes["local"].status is ChannelStatus.SENT
        assert outcomes["email"].status is ChannelStatus.FAILED
        assert "upstream down" in outcomes["email"].detail
        assert outcomes["sms"].status is ChannelStatus.SENT
        assert outcomes["sms"].message_id == "SM9"
        assert outcomes["sms"].delivered
        assert alerts == ["r1"]

    async def test_unwanted_and_unconfigured_channels(self):
        http = _http(lambda r: httpx.Response(500))
        dispatcher = NotificationDispatcher(
            [
                LocalAlertChannel(),
                EmailChannel(None, http, to_email="alice@example.com"),
                SmsChannel(None, http),
            ]
        )

        outcomes = await dispatcher.dispatch(_reminder(phone_number=None))

        assert outcomes["local"].status is ChannelStatus.SENT
        assert outcomes["email"].status is ChannelStatus.UNCONFIGURED
        assert outcomes["sms"].status is ChannelStatus.SKIPPED

    async def test_unexpected_exception_is_reported_as_failure(self):
        dispatcher = NotificationDispatcher([_ExplodingChannel(), LocalAlertChannel()])

        outcomes = await dispatcher.dispatch(_reminder())

        assert outcomes["exploding"].status is ChannelStatus.FAILED
        assert outcomes["local"].status is ChannelStatus.SENT

    def test_channels_copy(self):
        channel = LocalAlertChannel()
        dispatcher = NotificationDispatcher([channel])
        dispatcher.channels.clear()
        assert dispatcher.channels == [channel]
