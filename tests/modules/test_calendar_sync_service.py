"""Tests for calsync.modules.sync: merge policy, serialization and connection lifecycle."""

from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime, time

import pytest

from calsync.core.store import load_events, save_events
from calsync.errors import AuthExpiredError, SyncInProgressError, UserCancelledError
from calsync.google_credentials import CredentialManager
from calsync.models import CalendarEvent, SyncWindow
from calsync.modules.calendar import GoogleEvent, to_calendar_event
from calsync.modules.sync import CalendarSyncService, ConnectionState, merge

pytestmark = pytest.mark.unit

USER = "alice"


def _event(
    event_id: str, title: str, *, external_id: str | None = None, day: int = 10
) -> CalendarEvent:
    return CalendarEvent(
        id=event_id,
        title=title,
        date=date(2024, 1, day),
        start_time=time(9, 0),
        end_time=time(10, 0),
        external_id=external_id,
    )


def _remote(google_id: str, title: str, day: int = 10) -> CalendarEvent:
    return _event(google_id, title, external_id=google_id, day=day)


class FakeCalendarClient:
    """Stands in for GoogleCalendarClient; optionally blocks until released."""

    calendar_id = "primary"

    def __init__(self) -> None:
        self.remote: list[CalendarEvent] = []
        self.windows: list[SyncWindow] = []
        self.created: list[CalendarEvent] = []
        self.fetch_error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()
        self.next_id = "g-created"

    async def _wait(self) -> None:
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()

    async def fetch_events(self, window: SyncWindow) -> list[CalendarEvent]:
        self.windows.append(window)
        await self._wait()
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.remote)

    async def create_event(self, event: CalendarEvent) -> str:
        self.created.append(event)
        await self._wait()
        return self.next_id


@pytest.fixture
def client() -> FakeCalendarClient:
    return FakeCalendarClient()


@pytest.fixture
def credentials(google_config, consent_flow, store, clock) -> CredentialManager:
    return CredentialManager(google_config, flow=consent_flow, store=store, user=USER, clock=clock)


@pytest.fixture
async def service(credentials, client, store, clock) -> CalendarSyncService:
    svc = CalendarSyncService(credentials, client, store, user=USER, clock=clock)
    await credentials.request_access()
    svc._state = ConnectionState.CONNECTED
    yield svc
    await svc.stop_poller()


# ---------------------------------------------------------------------------
# merge
# ---------------------------------------------------------------------------


class TestMerge:
    def test_local_only_kept_and_remote_wins(self):
        local = [
            _event("local-1", "Dentist"),
            _remote("g1", "Standup (edited locally)"),
            _remote("g-old", "Cancelled upstream"),
        ]
        remote = [_remote("g1", "Standup"), _remote("g2", "Planning", day=11)]

        merged = merge(local, remote)

        assert [(e.id, e.title) for e in merged] == [
            ("local-1", "Dentist"),
            ("g1", "Standup"),
            ("g2", "Planning"),
        ]

    def test_unsynced_local_plus_fetched_remote(self):
        local = [
            CalendarEvent(
                id="1",
                title="Standup",
                date=date(2024, 1, 10),
                start_time=time(9, 0),
                end_time=time(9, 15),
            )
        ]
        remote = [
            to_calendar_event(
                GoogleEvent.model_validate(
                    {
                        "id": "g1",
                        "summary": "Planning",
                        "start": {"dateTime": "2024-01-11T10:00:00"},
                        "end": {"dateTime": "2024-01-11T11:00:00"},
                    }
                )
            )
        ]

        merged = merge(local, remote)

        assert [e.to_json() for e in merged] == [
            {
                "id": "1",
                "title": "Standup",
                "date": "2024-01-10",
                "startTime": "09:00",
                "endTime": "09:15",
                "description": "",
                "externalId": None,
            },
            {
                "id": "g1",
                "title": "Planning",
                "date": "2024-01-11",
                "startTime": "10:00",
                "endTime": "11:00",
                "description": "",
                "externalId": "g1",
            },
        ]

    @pytest.mark.parametrize(
        ("local", "remote"),
        [
            ([_event("local-1", "Dentist")], [_remote("g1", "Standup")]),
            ([], [_remote("g1", "Standup"), _remote("g2", "Planning", day=11)]),
            ([_event("local-1", "Dentist"), _remote("g-old", "Dropped upstream")], []),
            ([_remote("g1", "Standup (edited locally)")], [_remote("g1", "Standup")]),
            (
                [_event("local-1", "Dentist")],
                [_remote("g1", "first"), _remote("g1", "second")],
            ),
            (
                [_event("local-1", "Dentist"), _remote("g-gone", "Deleted upstream")],
                [_remote("g1", "Standup")],
            ),
            ([], []),
        ],
        ids=[
            "local-and-remote",
            "empty-local",
            "empty-remote",
            "stale-synced-local",
            "duplicate-remote-ids",
            "synced-local-missing-remotely",
            "both-empty",
        ],
    )
    def test_idempotent(self, local, remote):
        once = merge(local, remote)
        assert merge(once, remote) == once
        assert {e.external_id for e in once if e.is_synced} == {e.external_id for e in remote}

    def test_duplicate_remote_ids_collapse(self):
        merged = merge([], [_remote("g1", "first"), _remote("g1", "second")])
        assert [e.title for e in merged] == ["first"]


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------


class TestSync:
    async def test_reconciles_local_collection(self, service, client, store):
        await save_events(
            store,
            USER,
            [_event("local-1", "Dentist"), _remote("g-old", "Dropped upstream")],
        )
        client.remote = [_remote("g1", "Standup"), _remote("g2", "Planning", day=11)]

        result = await service.sync()

        assert (result.fetched, result.local_only, result.removed, result.total) == (2, 1, 1, 3)
        assert not result.discarded
        assert service.last_result == result
        titles = [e.title for e in await load_events(store, USER)]
        assert titles == ["Dentist", "Standup", "Planning"]

    async def test_second_sync_is_stable(self, service, client, store):
        await save_events(store, USER, [_event("local-1", "Dentist")])
        client.remote = [_remote("g1", "Standup")]

        await service.sync()
        first = await load_events(store, USER)
        await service.sync()

        assert await load_events(store, USER) == first

    async def test_fetch_window_around_now(self, service, client):
        await service.sync()
        [window] = client.windows
        assert window.start == datetime(2023, 12, 10, 9, 0, tzinfo=UTC)
        assert window.end == datetime(2024, 3, 10, 9, 0, tzinfo=UTC)

    async def test_concurrent_sync_fails_fast(self, service, client):
        client.gate = asyncio.Event()
        first = asyncio.create_task(service.sync())
        await client.entered.wait()

        assert service.is_syncing
        with pytest.raises(SyncInProgressError):
            await service.sync()
        with pytest.raises(SyncInProgressError):
            await service.publish("anything")

        client.gate.set()
        await first
        assert len(client.windows) == 1
        assert not service.is_syncing

    async def test_disconnect_mid_sync_discards_results(self, service, client, store):
        client.gate = asyncio.Event()
        client.remote = [_remote("g1", "Standup")]
        pending = asyncio.create_task(service.sync())
        await client.entered.wait()

        await service.disconnect()
        client.gate.set()
        result = await pending

        assert result.discarded
        assert service.state is ConnectionState.DISCONNECTED
        assert await load_events(store, USER) == []

    async def test_auth_expired_marks_disconnected(self, service, client, store):
        await save_events(store, USER, [_event("local-1", "Dentist")])
        client.fetch_error = AuthExpiredError("gone")

        with pytest.raises(AuthExpiredError):
            await service.sync()

        assert service.state is ConnectionState.DISCONNECTED
        assert [e.id for e in await load_events(store, USER)] == ["local-1"]

    async def test_add_event_waits_for_sync(self, service, client, store):
        client.gate = asyncio.Event()
        client.remote = [_remote("g1", "Standup")]
        syncing = asyncio.create_task(service.sync())
        await client.entered.wait()

        adding = asyncio.create_task(
            service.add_event(
                title="Dentist",
                date=date(2024, 1, 12),
                start_time=time(8, 0),
                end_time=time(9, 0),
            )
        )
        await asyncio.sleep(0)
        assert not adding.done()

        client.gate.set()
        await syncing
        added = await adding

        ids = {e.id for e in await load_events(store, USER)}
        assert ids == {"g1", added.id}


# ---------------------------------------------------------------------------
# connect / disconnect / restore
# ---------------------------------------------------------------------------


class TestConnection:
    async def test_connect_runs_initial_sync(self, credentials, client, store, clock):
        service = CalendarSyncService(credentials, client, store, user=USER, clock=clock)
        client.remote = [_remote("g1", "Standup")]

        result = await service.connect(force_consent=True)

        assert service.is_connected
        assert result.fetched == 1
        assert credentials.is_authenticated

    async def test_cancelled_connect_leaves_state(
        self, credentials, client, store, clock, consent_flow
    ):
        service = CalendarSyncService(credentials, client, store, user=USER, clock=clock)
        consent_flow.authorize_result = UserCancelledError("closed")

        with pytest.raises(UserCancelledError):
            await service.connect()

        assert service.state is ConnectionState.DISCONNECTED
        assert client.windows == []

    async def test_disconnect_revokes(self, service, consent_flow):
        await service.disconnect()
        assert service.state is ConnectionState.DISCONNECTED
        assert consent_flow.revoked == ["refresh-1"]

    async def test_restore_reconnects_from_stored_credential(
        self, credentials, client, store, clock, google_config, consent_flow
    ):
        await credentials.request_access()
        fresh_manager = CredentialManager(
            google_config, flow=consent_flow, store=store, user=USER, clock=clock
        )
        service = CalendarSyncService(fresh_manager, client, store, user=USER, clock=clock)

        assert await service.restore() is ConnectionState.CONNECTED

    async def test_restore_without_credential(self, credentials, client, store, clock):
        service = CalendarSyncService(credentials, client, store, user=USER, clock=clock)
        assert await service.restore() is ConnectionState.DISCONNECTED


# ---------------------------------------------------------------------------
# publish / local events
# ---------------------------------------------------------------------------


class TestPublish:
    async def test_records_external_id(self, service, client, store):
        event = await service.add_event(
            title="Planning", date=date(2024, 1, 11), start_time=time(14), end_time=time(15)
        )

        published = await service.publish(event.id)

        assert published.external_id == "g-created"
        assert client.created[0].id == event.id
        [stored] = await load_events(store, USER)
        assert stored.external_id == "g-created"

        again = await service.publish(event.id)
        assert again.external_id == "g-created"
        assert len(client.created) == 1

    async def test_published_event_survives_next_sync(self, service, client, store):
        event = await service.add_event(
            title="Planning", date=date(2024, 1, 11), start_time=time(14), end_time=time(15)
        )
        await service.publish(event.id)
        client.remote = [_remote("g-created", "Planning", day=11)]

        result = await service.sync()

        assert result.total == 1
        [stored] = await load_events(store, USER)
        assert stored.external_id == "g-created"

    async def test_unknown_event(self, service):
        with pytest.raises(ValueError, match="not found"):
            await service.publish("missing")

    async def test_disconnect_mid_publish_not_recorded(self, service, client, store):
        event = await service.add_event(
            title="Planning", date=date(2024, 1, 11), start_time=time(14), end_time=time(15)
        )
        client.gate = asyncio.Event()
        pending = asyncio.create_task(service.publish(event.id))
        await client.entered.wait()

        await service.disconnect()
        client.gate.set()
        await pending

        [stored] = await load_events(store, USER)
        assert stored.external_id is None

    async def test_list_events_sorted(self, service, store):
        await save_events(
            store,
            USER,
            [_event("b", "Later", day=12), _event("a", "Sooner", day=10)],
        )
        assert [e.id for e in await service.list_events()] == ["a", "b"]


class TestEditAndDelete:
    async def test_update_local_event(self, service, store):
        event = await service.add_event(
            title="Dentist", date=date(2024, 1, 12), start_time=time(8), end_time=time(9)
        )

        updated = await service.update_event(
            event.id, title="Dentist (moved)", start_time=time(10), end_time=time(11)
        )

        assert (updated.id, updated.title, updated.date) == (
            event.id,
            "Dentist (moved)",
            date(2024, 1, 12),
        )
        [stored] = await load_events(store, USER)
        assert stored == updated
        assert stored.start_time == time(10)

    async def test_local_edit_of_synced_event_is_superseded_by_sync(
        self, service, client, store
    ):
        client.remote = [_remote("g1", "Standup")]
        await service.sync()

        edited = await service.update_event("g1", title="Standup (edited locally)")
        assert edited.external_id == "g1"
        await service.sync()

        [stored] = await load_events(store, USER)
        assert (stored.id, stored.title) == ("g1", "Standup")

    async def test_update_rejects_unknown_field(self, service):
        event = await service.add_event(
            title="Dentist", date=date(2024, 1, 12), start_time=time(8), end_time=time(9)
        )
        with pytest.raises(ValueError, match="external_id"):
            await service.update_event(event.id, external_id="g-forged")

    async def test_update_rejects_invalid_value(self, service):
        event = await service.add_event(
            title="Dentist", date=date(2024, 1, 12), start_time=time(8), end_time=time(9)
        )
        with pytest.raises(ValueError):
            await service.update_event(event.id, start_time="25:99")

    async def test_update_unknown_event(self, service):
        with pytest.raises(ValueError, match="not found"):
            await service.update_event("missing", title="x")

    async def test_deleted_local_event_does_not_return(self, service, client, store):
        client.remote = [_remote("g1", "Standup")]
        event = await service.add_event(
            title="Dentist", date=date(2024, 1, 12), start_time=time(8), end_time=time(9)
        )

        await service.delete_event(event.id)
        await service.sync()

        assert [e.id for e in await load_events(store, USER)] == ["g1"]

    async def test_deleted_synced_event_returns_while_remote(self, service, client, store):
        client.remote = [_remote("g1", "Standup")]
        await service.sync()

        await service.delete_event("g1")
        assert await load_events(store, USER) == []

        await service.sync()
        assert [e.id for e in await load_events(store, USER)] == ["g1"]

    async def test_delete_unknown_event(self, service):
        with pytest.raises(ValueError, match="not found"):
            await service.delete_event("missing")

    async def test_delete_waits_for_sync(self, service, client, store):
        client.remote = [_remote("g1", "Standup")]
        await service.sync()
        client.gate = asyncio.Event()
        client.entered.clear()
        syncing = asyncio.create_task(service.sync())
        await client.entered.wait()

        deleting = asyncio.create_task(service.delete_event("g1"))
        await asyncio.sleep(0)
        assert not deleting.done()

        client.gate.set()
        await syncing
        await deleting
        assert await load_events(store, USER) == []


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------


class TestPoller:
    async def test_syncs_immediately_and_on_request(self, service, client):
        service.start_poller(60)
        for _ in range(100):
            if len(client.windows) >= 1:
                break
            await asyncio.sleep(0.01)
        assert len(client.windows) == 1

        service.request_sync()
        for _ in range(100):
            if len(client.windows) >= 2:
                break
            await asyncio.sleep(0.01)
        assert len(client.windows) == 2

        await service.stop_poller()

    async def test_disabled_interval_does_not_start(self, service):
        service.start_poller(0)
        assert service._poller_task is None

    async def test_poller_survives_auth_expiry(self, service, client):
        client.fetch_error = AuthExpiredError("gone")
        service.start_poller(60)
        for _ in range(100):
            if client.windows:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.01)

        assert service.state is ConnectionState.DISCONNECTED
        assert not service._poller_task.done()
        await service.stop_poller()
