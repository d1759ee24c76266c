"""Reconciliation of the local event collection with Google Calendar.

Merge policy: every local event that has never been pushed (no external id)
is preserved verbatim, and every event in the fetched remote window replaces
whatever the local collection held for it.
Local edits to previously synced events are therefore superseded by the
remote state on the next sync.

Sync passes are serialized per user. A pass that starts while another is in
flight fails fast with ``SyncInProgressError``. Disconnecting bumps a
connection epoch; a pass whose epoch changed while it was waiting on the
network discards its results instead of writing them back.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from opentelemetry import trace

from calsync.core.logging import new_operation_id, operation_context
from calsync.core.store import LocalStore, load_events, save_events
from calsync.errors import AuthExpiredError, SyncInProgressError
from calsync.google_credentials import CredentialManager, CredentialState
from calsync.models import CalendarEvent, SyncWindow, new_local_id
from calsync.modules.calendar import GoogleCalendarClient

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = frozenset({"title", "date", "start_time", "end_time", "description"})


class ConnectionState(StrEnum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one sync pass."""

    fetched: int
    local_only: int
    removed: int
    total: int
    discarded: bool = False


def merge(local: Iterable[CalendarEvent], remote: Iterable[CalendarEvent]) -> list[CalendarEvent]:
    """Merge a local collection with a freshly fetched remote window.

    Returns the never-synced local events followed by one entry per distinct
    external id in *remote*, in input order. Re-merging the output with the
    same *remote* yields the same collection.
    """
    merged: dict[str, CalendarEvent] = {}
    for event in local:
        if event.external_id is None:
            merged.setdefault(event.dedup_key, event)
    for event in remote:
        merged.setdefault(event.dedup_key, event)
    return list(merged.values())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CalendarSyncService:
    """Connect, disconnect, sync and publish for one user's calendar."""

    def __init__(
        self,
        credentials: CredentialManager,
        client: GoogleCalendarClient,
        store: LocalStore,
        *,
        user: str = "default",
        months_back: int = 1,
        months_ahead: int = 2,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._credentials = credentials
        self._client = client
        self._store = store
        self._user = user
        self._months_back = months_back
        self._months_ahead = months_ahead
        self._clock = clock

        self._lock = asyncio.Lock()
        self._epoch = 0
        self._state = ConnectionState.DISCONNECTED
        self._last_result: SyncResult | None = None

        self._poller_task: asyncio.Task | None = None
        self._force_sync_event = asyncio.Event()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    @property
    def last_result(self) -> SyncResult | None:
        return self._last_result

    async def restore(self) -> ConnectionState:
        """Resume a connection persisted by a previous run."""
        credential_state = await self._credentials.restore()
        if credential_state in (CredentialState.AUTHENTICATED, CredentialState.EXPIRED):
            self._state = ConnectionState.CONNECTED
        return self._state

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, *, force_consent: bool = False) -> SyncResult:
        """Request Google access and run the initial sync.

        A cancelled consent leaves the connection state unchanged.
        """
        await self._credentials.request_access(force_consent=force_consent)
        self._state = ConnectionState.CONNECTED
        logger.info("Connected to Google Calendar %s", self._client.calendar_id)
        return await self.sync()

    async def disconnect(self) -> None:
        """Disconnect and revoke. In-flight passes finish but discard their results."""
        self._epoch += 1
        self._state = ConnectionState.DISCONNECTED
        await self._credentials.revoke()
        logger.info("Disconnected from Google Calendar")

    # ------------------------------------------------------------------
    # Sync / publish
    # ------------------------------------------------------------------

    async def sync(self) -> SyncResult:
        """Fetch the remote window, merge it into the local collection, write back.

        Raises
        ------
        SyncInProgressError
            Another sync or publish is running for this user.
        AuthExpiredError
            The credential is gone; the service is marked disconnected.
        """
        if self._lock.locked():
            raise SyncInProgressError("A calendar sync is already running")

        async with self._lock:
            with operation_context(
                sync_pass=new_operation_id(), calendar_id=self._client.calendar_id
            ):
                return await self._sync_locked()

    async def _sync_locked(self) -> SyncResult:
        tracer = trace.get_tracer("calsync")
        with tracer.start_as_current_span("calsync.sync") as span:
            epoch = self._epoch
            window = SyncWindow.around(
                self._clock(),
                months_back=self._months_back,
                months_ahead=self._months_ahead,
            )
            span.set_attribute("window_start", window.start.isoformat())
            span.set_attribute("window_end", window.end.isoformat())

            remote = await self._remote_call(self._client.fetch_events(window))
            span.set_attribute("events_fetched", len(remote))

            if self._epoch != epoch:
                logger.info("Discarding sync results: disconnected while fetching")
                span.set_attribute("discarded", True)
                result = SyncResult(
                    fetched=len(remote), local_only=0, removed=0, total=0, discarded=True
                )
                self._last_result = result
                return result

            local = await load_events(self._store, self._user)
            merged = merge(local, remote)
            await save_events(self._store, self._user, merged)

            remote_ids = {event.external_id for event in remote}
            result = SyncResult(
                fetched=len(remote),
                local_only=sum(1 for event in local if event.external_id is None),
                removed=sum(
                    1
                    for event in local
                    if event.external_id is not None and event.external_id not in remote_ids
                ),
                total=len(merged),
            )
            span.set_attribute("events_total", result.total)
            self._last_result = result

        logger.info(
            "Calendar sync complete: %d fetched, %d local-only, %d total",
            result.fetched,
            result.local_only,
            result.total,
        )
        return result

    async def publish(self, event_id: str) -> CalendarEvent:
        """Push one local-only event to Google and record its external id.

        Already published events are returned unchanged.
        """
        if self._lock.locked():
            raise SyncInProgressError("A calendar sync is already running")

        async with self._lock:
            epoch = self._epoch
            events = await load_events(self._store, self._user)
            event = _find_event(events, event_id)
            if event.external_id is not None:
                return event

            external_id = await self._remote_call(self._client.create_event(event))
            published = event.model_copy(update={"external_id": external_id})

            if self._epoch != epoch:
                logger.info("Not recording external id for %s: disconnected mid-publish", event_id)
                return published

            events = await load_events(self._store, self._user)
            updated = [published if item.id == event_id else item for item in events]
            await save_events(self._store, self._user, updated)
            return published

    # ------------------------------------------------------------------
    # Local events
    # ------------------------------------------------------------------

    async def list_events(self) -> list[CalendarEvent]:
        events = await load_events(self._store, self._user)
        return sorted(events, key=lambda event: (event.date, event.start_time, event.title))

    async def add_event(
        self,
        *,
        title: str,
        date: dt.date,
        start_time: dt.time,
        end_time: dt.time,
        description: str = "",
    ) -> CalendarEvent:
        """Create a local-only event. Waits for an in-flight sync to finish."""
        event = CalendarEvent(
            id=new_local_id(),
            title=title,
            date=date,
            start_time=start_time,
            end_time=end_time,
            description=description,
        )
        async with self._lock:
            events = await load_events(self._store, self._user)
            events.append(event)
            await save_events(self._store, self._user, events)
        return event

    async def update_event(self, event_id: str, **fields: Any) -> CalendarEvent:
        """Edit a local event's fields. Waits for an in-flight sync to finish.

        Edits to a synced event are local only; the next sync restores the
        remote copy.

        Raises
        ------
        ValueError
            If the event does not exist or an unknown field is given.
        """
        unknown = set(fields) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown event field(s): {', '.join(sorted(unknown))}")

        async with self._lock:
            events = await load_events(self._store, self._user)
            current = _find_event(events, event_id)
            updated = CalendarEvent.model_validate({**current.model_dump(), **fields})
            events = [updated if item.id == event_id else item for item in events]
            await save_events(self._store, self._user, events)
        return updated

    async def delete_event(self, event_id: str) -> None:
        """Remove an event from the local collection.

        A synced event reappears on the next sync while it still exists remotely.
        """
        async with self._lock:
            events = await load_events(self._store, self._user)
            _find_event(events, event_id)
            await save_events(
                self._store, self._user, [item for item in events if item.id != event_id]
            )

    # ------------------------------------------------------------------
    # Background poller
    # ------------------------------------------------------------------

    def start_poller(self, interval_minutes: int) -> None:
        if interval_minutes <= 0 or self._poller_task is not None:
            return
        self._poller_task = asyncio.create_task(
            self._run_sync_poller(interval_minutes * 60), name="calendar-sync-poller"
        )
        logger.info("Calendar sync poller started (interval=%dm)", interval_minutes)

    def request_sync(self) -> None:
        """Wake the poller for an immediate sync."""
        self._force_sync_event.set()

    async def stop_poller(self) -> None:
        if self._poller_task is not None and not self._poller_task.done():
            self._poller_task.cancel()
            try:
                await self._poller_task
            except asyncio.CancelledError:
                pass
        self._poller_task = None

    async def _run_sync_poller(self, interval_seconds: float) -> None:
        logger.debug("Calendar sync poller loop started (interval=%ds)", interval_seconds)
        while True:
            if self.is_connected:
                try:
                    await self.sync()
                except SyncInProgressError:
                    logger.debug("Calendar sync poller: pass skipped, sync already running")
                except AuthExpiredError as exc:
                    logger.warning("Calendar sync poller: %s", exc)
                except Exception as exc:
                    logger.error("Calendar sync poller error: %s", exc, exc_info=True)

            try:
                await asyncio.wait_for(self._force_sync_event.wait(), timeout=interval_seconds)
                self._force_sync_event.clear()
                logger.debug("Calendar sync poller: immediate sync requested")
            except TimeoutError:
                pass

    # ------------------------------------------------------------------

    async def _remote_call(self, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except AuthExpiredError:
            self._state = ConnectionState.DISCONNECTED
            logger.warning("Google Calendar session expired; marked disconnected")
            raise


def _find_event(events: list[CalendarEvent], event_id: str) -> CalendarEvent:
    for event in events:
        if event.id == event_id:
            return event
    raise ValueError(f"Event {event_id} not found")
