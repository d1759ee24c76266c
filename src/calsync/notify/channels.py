"""Notification channels for due reminders.

A channel decides whether a reminder asks for it (:meth:`wants`) and, if so,
delivers it (:meth:`send`). Delivery problems are raised as
:class:`~calsync.errors.DispatchError` subclasses; the dispatcher turns them
into per-channel outcomes.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

import httpx

from calsync.config import DEFAULT_SENDER_NAME, EmailJSConfig, TwilioConfig
from calsync.errors import ChannelFailureError, ChannelUnconfiguredError
from calsync.models import Reminder

logger = logging.getLogger(__name__)

EMAILJS_SEND_URL = "https://api.emailjs.com/api/v1.0/email/send"
TWILIO_API_BASE_URL = "https://api.twilio.com/2010-04-01/Accounts"
NO_DESCRIPTION = "No description provided"


class ChannelStatus(StrEnum):
    SENT = "sent"
    SKIPPED = "skipped"
    UNCONFIGURED = "unconfigured"
    FAILED = "failed"


@dataclass(frozen=True)
class ChannelOutcome:
    """Result of one channel's delivery attempt."""

    channel: str
    status: ChannelStatus
    detail: str | None = None
    message_id: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status is ChannelStatus.SENT


class NotificationChannel(Protocol):
    name: str

    def wants(self, reminder: Reminder) -> bool: ...

    async def send(self, reminder: Reminder) -> str | None: ...


def _short(text: str, limit: int = 200) -> str:
    return " ".join(text.split())[:limit]


# ---------------------------------------------------------------------------
# Local
# ---------------------------------------------------------------------------

AlertCallback = Callable[[Reminder], Awaitable[None] | None]


class LocalAlertChannel:
    """In-process alert: logs the reminder and calls an optional callback.

    Never raises; callback failures are logged and swallowed.
    """

    name = "local"

    def __init__(self, callback: AlertCallback | None = None) -> None:
        self._callback = callback

    def wants(self, reminder: Reminder) -> bool:
        return True

    async def send(self, reminder: Reminder) -> str | None:
        logger.info(
            "Reminder due: %s (%s %s)",
            reminder.title,
            reminder.date.isoformat(),
            reminder.time.strftime("%H:%M"),
        )
        if self._callback is None:
            return None
        try:
            result = self._callback(reminder)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # noqa: BLE001
            logger.warning("Local reminder alert failed for %s: %s", reminder.id, exc)
        return None


# ---------------------------------------------------------------------------
# Email (EmailJS)
# ---------------------------------------------------------------------------


class EmailChannel:
    """Templated email through the EmailJS REST API."""

    name = "email"

    def __init__(
        self,
        config: EmailJSConfig | None,
        http_client: httpx.AsyncClient,
        *,
        to_email: str | None,
        to_name: str | None = None,
    ) -> None:
        self._config = config
        self._http_client = http_client
        self._to_email = to_email
        self._to_name = to_name

    @property
    def configured(self) -> bool:
        return self._config is not None and bool(self._to_email)

    def wants(self, reminder: Reminder) -> bool:
        return reminder.email_notification

    def build_payload(self, reminder: Reminder) -> dict[str, Any]:
        assert self._config is not None
        payload: dict[str, Any] = {
            "service_id": self._config.service_id,
            "template_id": self._config.template_id,
            "user_id": self._config.public_key,
            "template_params": {
                "to_email": self._to_email,
                "from_name": self._config.sender_name or DEFAULT_SENDER_NAME,
                "to_name": self._to_name or "there",
                "reminder_title": reminder.title,
                "reminder_description": reminder.description or NO_DESCRIPTION,
                "reminder_date": reminder.date.isoformat(),
                "reminder_time": reminder.time.strftime("%H:%M"),
            },
        }
        if self._config.private_key:
            payload["accessToken"] = self._config.private_key
        return payload

    async def send(self, reminder: Reminder) -> str | None:
        if self._config is None:
            raise ChannelUnconfiguredError(self.name, "EmailJS is not configured")
        if not self._to_email:
            raise ChannelUnconfiguredError(self.name, "No recipient email address configured")

        try:
            response = await self._http_client.post(
                EMAILJS_SEND_URL, json=self.build_payload(reminder)
            )
        except httpx.HTTPError as exc:
            raise ChannelFailureError(self.name, f"EmailJS request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise ChannelFailureError(
                self.name,
                f"EmailJS rejected the message ({response.status_code}): "
                f"{_short(response.text) or 'no details'}",
            )
        logger.info(
            "Email notification sent",
            extra={
                "reminder_id": reminder.id,
                "service_id": self._config.service_id,
                "template_id": self._config.template_id,
            },
        )
        return None


# ---------------------------------------------------------------------------
# SMS (Twilio)
# ---------------------------------------------------------------------------


def sms_body(reminder: Reminder) -> str:
    return (
        f"Reminder: {reminder.title}\n"
        f"{reminder.description or ''}\n"
        f"Date: {reminder.date.isoformat()}\n"
        f"Time: {reminder.time.strftime('%H:%M')}"
    )


class SmsChannel:
    """SMS through Twilio's Messages API."""

    name = "sms"

    def __init__(self, config: TwilioConfig | None, http_client: httpx.AsyncClient) -> None:
        self._config = config
        self._http_client = http_client

    @property
    def configured(self) -> bool:
        return self._config is not None

    def wants(self, reminder: Reminder) -> bool:
        return reminder.wants_sms

    async def send(self, reminder: Reminder) -> str | None:
        if self._config is None:
            raise ChannelUnconfiguredError(self.name, "Twilio is not configured")
        assert reminder.phone_number is not None

        url = f"{TWILIO_API_BASE_URL}/{self._config.account_sid}/Messages.json"
        try:
            response = await self._http_client.post(
                url,
                data={
                    "To": reminder.phone_number,
                    "From": self._config.from_number,
                    "Body": sms_body(reminder),
                },
                auth=(self._config.account_sid, self._config.auth_token),
            )
        except httpx.HTTPError as exc:
            raise ChannelFailureError(self.name, f"Twilio request failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            payload = {}

        if response.status_code < 200 or response.status_code >= 300:
            message = payload.get("message")
            if not isinstance(message, str) or not message.strip():
                message = _short(response.text) or "Failed to send SMS"
            raise ChannelFailureError(self.name, _short(message))

        sid = payload.get("sid")
        logger.info(
            "SMS notification sent",
            extra={
                "reminder_id": reminder.id,
                "message_sid": sid,
                "status": payload.get("status"),
            },
        )
        return sid if isinstance(sid, str) else None
