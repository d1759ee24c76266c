"""Google Calendar v3 client.

Every request borrows a credential from :class:`CredentialManager`.
Responses are validated against the schemas below at the boundary and
converted to :class:`~calsync.models.CalendarEvent` before they reach the
sync layer; any mismatch is reported as ``RemoteRejectedError``.

Authorization rejections follow a one-shot rule: the first 401 of a call
forces a single-flight refresh and the request is retried once. A second
401, or a failed refresh, invalidates the credential and raises
``AuthExpiredError``. There is no retry loop beyond that.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time, timedelta
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from calsync.errors import AuthExpiredError, NetworkFailureError, RemoteRejectedError
from calsync.google_credentials import CredentialManager, safe_google_error_message
from calsync.models import CalendarEvent, Credential, SyncWindow

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
PAGE_SIZE = 250
ALL_DAY_START = time(0, 0)
ALL_DAY_END = time(23, 59)


# ---------------------------------------------------------------------------
# Wire schemas
# ---------------------------------------------------------------------------


class GoogleEventTime(BaseModel):
    """``start`` / ``end`` object of a Google event."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    date_time: str | None = Field(default=None, alias="dateTime")
    date: str | None = None
    time_zone: str | None = Field(default=None, alias="timeZone")


class GoogleEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    summary: str = ""
    description: str | None = None
    status: str | None = None
    start: GoogleEventTime
    end: GoogleEventTime

    @field_validator("summary", mode="before")
    @classmethod
    def _coerce_summary(cls, value: Any) -> Any:
        return "" if value is None else value


class GoogleEventPage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    items: list[GoogleEvent] = Field(default_factory=list)
    next_page_token: str | None = Field(default=None, alias="nextPageToken")


class GoogleCreatedEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        return datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc


def _boundary(payload: GoogleEventTime, *, all_day_time: time) -> tuple[date, time]:
    if payload.date_time:
        # Google renders dateTime in the zone requested on the list call; keep its wall time.
        parsed = _parse_google_datetime(payload.date_time)
        return parsed.date(), parsed.time().replace(second=0, microsecond=0)
    if payload.date:
        try:
            return date.fromisoformat(payload.date), all_day_time
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {payload.date}"
            ) from exc
    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def to_calendar_event(remote: GoogleEvent) -> CalendarEvent:
    """Map a validated Google event to a local event keyed by its Google id.

    Timed events keep the wall-clock date and time Google reports, offset
    included or not. All-day events span 00:00 to 23:59 of their start date.
    """
    event_date, start_time = _boundary(remote.start, all_day_time=ALL_DAY_START)
    _, end_time = _boundary(remote.end, all_day_time=ALL_DAY_END)
    if remote.start.date_time is None:
        end_time = ALL_DAY_END
    return CalendarEvent(
        id=remote.id,
        title=remote.summary,
        date=event_date,
        start_time=start_time,
        end_time=end_time,
        description=remote.description or "",
        external_id=remote.id,
    )


def build_event_body(event: CalendarEvent, timezone: str) -> dict[str, Any]:
    """Build the Google create payload for a local event in *timezone*."""
    start = datetime.combine(event.date, event.start_time)
    end = datetime.combine(event.date, event.end_time)
    if end < start:
        # Ends after midnight.
        end += timedelta(days=1)
    body: dict[str, Any] = {
        "summary": event.title,
        "start": {"dateTime": start.isoformat(timespec="seconds"), "timeZone": timezone},
        "end": {"dateTime": end.isoformat(timespec="seconds"), "timeZone": timezone},
    }
    if event.description:
        body["description"] = event.description
    return body


def _is_unauthorized(response: httpx.Response) -> bool:
    if response.status_code == 401:
        return True
    try:
        payload = response.json()
    except ValueError:
        return False
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return error.get("status") == "UNAUTHENTICATED" or error.get("code") == 401
    return False


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GoogleCalendarClient:
    """List and create events on one Google calendar."""

    def __init__(
        self,
        credentials: CredentialManager,
        http_client: httpx.AsyncClient,
        *,
        calendar_id: str = "primary",
        timezone: str = "UTC",
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._calendar_id = calendar_id
        self._timezone = timezone

    @property
    def calendar_id(self) -> str:
        return self._calendar_id

    async def fetch_events(self, window: SyncWindow) -> list[CalendarEvent]:
        """Return events in *window* ordered by start time.

        Recurring events are expanded into instances server-side.
        """
        params: dict[str, Any] = {
            "timeMin": _google_rfc3339(window.start),
            "timeMax": _google_rfc3339(window.end),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": PAGE_SIZE,
            "timeZone": self._timezone,
        }
        events: list[CalendarEvent] = []
        page_token: str | None = None
        while True:
            if page_token:
                params["pageToken"] = page_token
            payload = await self._request_json("GET", self._events_path(), params=params)
            try:
                page = GoogleEventPage.model_validate(payload)
                for item in page.items:
                    if item.status == "cancelled":
                        continue
                    events.append(to_calendar_event(item))
            except (ValidationError, ValueError) as exc:
                raise RemoteRejectedError(
                    f"Google Calendar returned an unexpected event payload: {exc}"
                ) from exc
            page_token = page.next_page_token
            if not page_token:
                break

        logger.debug(
            "Fetched %d Google events for calendar %s", len(events), self._calendar_id
        )
        return events

    async def create_event(self, event: CalendarEvent) -> str:
        """Create *event* remotely and return the provider-assigned id."""
        payload = await self._request_json(
            "POST",
            self._events_path(),
            json_body=build_event_body(event, self._timezone),
        )
        try:
            created = GoogleCreatedEvent.model_validate(payload)
        except ValidationError as exc:
            raise RemoteRejectedError(
                "Google Calendar create response is missing the event id"
            ) from exc
        logger.info("Created Google event %s for local event %s", created.id, event.id)
        return created.id

    # -- transport -----------------------------------------------------------

    def _events_path(self) -> str:
        return f"/calendars/{quote(self._calendar_id, safe='')}/events"

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"

        credential = await self._credentials.ensure_valid()
        response = await self._send(method, url, credential, params=params, json_body=json_body)

        if _is_unauthorized(response):
            logger.info("Google Calendar returned 401; refreshing credential once")
            credential = await self._credentials.force_refresh(rejected=credential)
            response = await self._send(
                method, url, credential, params=params, json_body=json_body
            )
            if _is_unauthorized(response):
                await self._credentials.invalidate()
                raise AuthExpiredError("Google Calendar rejected the refreshed credential")

        if response.status_code < 200 or response.status_code >= 300:
            raise RemoteRejectedError(
                safe_google_error_message(response), status_code=response.status_code
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteRejectedError(
                "Google Calendar API returned invalid JSON for a successful response",
                status_code=response.status_code,
            ) from exc

        if not isinstance(payload, dict):
            raise RemoteRejectedError(
                "Google Calendar API returned an unexpected JSON payload shape",
                status_code=response.status_code,
            )
        return payload

    async def _send(
        self,
        method: str,
        url: str,
        credential: Credential,
        *,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {credential.access_token}"}
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise NetworkFailureError(f"Google Calendar request failed: {exc}") from exc
