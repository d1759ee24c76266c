"""Typed entities shared across calsync.

Persisted collections use camelCase JSON keys (``startTime``, ``externalId``,
``notificationSent``) and ``HH:MM`` wall-clock times; the models accept both
camelCase and snake_case on input.
"""

from __future__ import annotations

import calendar
import datetime as dt
import uuid
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


def new_local_id() -> str:
    """Return a fresh local identifier; never collides with provider ids."""
    return uuid.uuid4().hex


def _parse_wall_time(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return dt.time.fromisoformat(value.strip())
        except ValueError:
            return value
    return value


class _CollectionModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Calendar events
# ---------------------------------------------------------------------------


class CalendarEvent(_CollectionModel):
    """A locally held calendar event.

    ``external_id`` is assigned once the event is known to the remote
    calendar; local-only events leave it unset.
    """

    id: str = Field(min_length=1)
    title: str
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    description: str = ""
    external_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("externalId", "external_id", "googleEventId"),
        serialization_alias="externalId",
    )

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _parse_times(cls, value: Any) -> Any:
        return _parse_wall_time(value)

    @field_validator("description", mode="before")
    @classmethod
    def _coerce_description(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("external_id")
    @classmethod
    def _normalize_external_id(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @field_serializer("start_time", "end_time")
    def _serialize_time(self, value: dt.time) -> str:
        return value.strftime("%H:%M")

    @property
    def dedup_key(self) -> str:
        """Identity within a merged collection: external id, else local id."""
        return self.external_id or self.id

    @property
    def is_synced(self) -> bool:
        return self.external_id is not None


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------


class Reminder(_CollectionModel):
    """A time-based reminder with per-channel notification preferences."""

    id: str = Field(min_length=1)
    title: str
    date: dt.date
    time: dt.time
    description: str | None = None
    is_complete: bool = False
    notification_sent: bool = False
    email_notification: bool = False
    sms_notification: bool = False
    phone_number: str | None = None

    @field_validator("time", mode="before")
    @classmethod
    def _parse_time(cls, value: Any) -> Any:
        return _parse_wall_time(value)

    @field_validator("description", "phone_number")
    @classmethod
    def _normalize_optional_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @field_serializer("time")
    def _serialize_time(self, value: dt.time) -> str:
        return value.strftime("%H:%M")

    def due_at(self, tz: tzinfo) -> datetime:
        """Combine the reminder's date and time in *tz*."""
        return datetime.combine(self.date, self.time, tzinfo=tz)

    def is_due(self, now: datetime, tz: tzinfo) -> bool:
        return now >= self.due_at(tz)

    @property
    def awaiting_dispatch(self) -> bool:
        return not self.is_complete and not self.notification_sent

    @property
    def wants_sms(self) -> bool:
        return self.sms_notification and self.phone_number is not None


# ---------------------------------------------------------------------------
# OAuth credentials
# ---------------------------------------------------------------------------


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_TOKEN_LIFETIME_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_TOKEN_LIFETIME_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_TOKEN_LIFETIME_SECONDS
    return DEFAULT_TOKEN_LIFETIME_SECONDS


class TokenGrant(BaseModel):
    """Validated token endpoint response."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    expires_in: int = DEFAULT_TOKEN_LIFETIME_SECONDS
    refresh_token: str | None = None
    scope: str | None = None

    @field_validator("access_token")
    @classmethod
    def _normalize_token(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @field_validator("expires_in", mode="before")
    @classmethod
    def _coerce_expires_in(cls, value: Any) -> int:
        return _coerce_expires_in_seconds(value)

    @field_validator("refresh_token", "scope")
    @classmethod
    def _normalize_optional(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    def __repr__(self) -> str:
        return (
            f"TokenGrant(access_token=<REDACTED>, expires_in={self.expires_in!r}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"scope={self.scope!r})"
        )

    __str__ = __repr__


class Credential(BaseModel):
    """An OAuth2 access credential. Valid iff ``now < expires_at``."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    scopes: frozenset[str] = frozenset()
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def _require_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @classmethod
    def from_grant(
        cls,
        grant: TokenGrant,
        *,
        now: datetime,
        requested_scopes: frozenset[str],
        previous: Credential | None = None,
    ) -> Credential:
        """Build a credential from *grant*, keeping expiry non-decreasing."""
        expires_at = now + timedelta(seconds=grant.expires_in)
        if previous is not None and previous.expires_at > expires_at:
            expires_at = previous.expires_at
        scopes = frozenset(grant.scope.split()) if grant.scope else requested_scopes
        refresh_token = grant.refresh_token
        if refresh_token is None and previous is not None:
            refresh_token = previous.refresh_token
        return cls(
            access_token=grant.access_token,
            refresh_token=refresh_token,
            scopes=scopes,
            expires_at=expires_at,
        )

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at

    def remaining(self, now: datetime) -> timedelta:
        return self.expires_at - now

    def __repr__(self) -> str:
        return (
            f"Credential(access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"scopes={sorted(self.scopes)!r}, expires_at={self.expires_at.isoformat()!r})"
        )

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Sync window
# ---------------------------------------------------------------------------


def add_months(value: datetime, months: int) -> datetime:
    """Shift *value* by whole calendar months, clamping the day of month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class SyncWindow(BaseModel):
    """Half-open ``[start, end)`` range bounding one remote fetch."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _validate_bounds(self) -> SyncWindow:
        if self.end <= self.start:
            raise ValueError("SyncWindow end must be after start")
        return self

    @classmethod
    def around(
        cls,
        now: datetime,
        *,
        months_back: int = 1,
        months_ahead: int = 2,
    ) -> SyncWindow:
        return cls(start=add_months(now, -months_back), end=add_months(now, months_ahead))

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end
