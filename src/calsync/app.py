"""Application context: builds and owns every calsync component for one user.

Usage::

    async with CalsyncApp(load_config(path)) as app:
        await app.sync_service.sync()

Startup order: logging context, Local Store, HTTP client, credential manager
(restored from the store), calendar client, sync service, notification
channels and the reminder scheduler. Shutdown runs in reverse.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

import httpx

from calsync.config import CalsyncConfig
from calsync.core.logging import set_user_context
from calsync.core.scheduler import ReminderScheduler
from calsync.core.store import JsonFileStore, LocalStore, MemoryStore, PostgresStore
from calsync.google_credentials import ConsentFlow, CredentialManager, GoogleConsentFlow
from calsync.modules.calendar import GoogleCalendarClient
from calsync.modules.sync import CalendarSyncService
from calsync.notify.channels import AlertCallback, EmailChannel, LocalAlertChannel, SmsChannel
from calsync.notify.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 30.0


async def open_store(config: CalsyncConfig) -> LocalStore:
    """Open the Local Store backend selected by ``[calsync.store]``."""
    backend = config.store.backend
    if backend == "memory":
        return MemoryStore()
    if backend == "postgres":
        assert config.store.dsn is not None
        return await PostgresStore.connect(config.store.dsn)
    return JsonFileStore(Path(config.store.path))


class CalsyncApp:
    """Owns the store, HTTP client and every service built on them."""

    def __init__(
        self,
        config: CalsyncConfig,
        *,
        store: LocalStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        consent_flow: ConsentFlow | None = None,
        alert_callback: AlertCallback | None = None,
        on_prompt: Callable[[str], None] | None = None,
    ) -> None:
        self.config = config
        self._store = store
        self._owns_store = store is None
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._consent_flow = consent_flow
        self._alert_callback = alert_callback
        self._on_prompt = on_prompt

        self._credentials: CredentialManager | None = None
        self._sync_service: CalendarSyncService | None = None
        self._dispatcher: NotificationDispatcher | None = None
        self._scheduler: ReminderScheduler | None = None

    # -- accessors -----------------------------------------------------------

    @property
    def store(self) -> LocalStore:
        if self._store is None:
            raise RuntimeError("CalsyncApp is not started")
        return self._store

    @property
    def credentials(self) -> CredentialManager:
        if self._credentials is None:
            raise RuntimeError("CalsyncApp is not started")
        return self._credentials

    @property
    def sync_service(self) -> CalendarSyncService:
        if self._sync_service is None:
            raise RuntimeError("CalsyncApp is not started")
        return self._sync_service

    @property
    def dispatcher(self) -> NotificationDispatcher:
        if self._dispatcher is None:
            raise RuntimeError("CalsyncApp is not started")
        return self._dispatcher

    @property
    def scheduler(self) -> ReminderScheduler:
        if self._scheduler is None:
            raise RuntimeError("CalsyncApp is not started")
        return self._scheduler

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        config = self.config
        set_user_context(config.user)

        if self._store is None:
            self._store = await open_store(config)
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)

        flow = self._consent_flow
        if flow is None and config.google is not None:
            flow = GoogleConsentFlow(config.google, self._http_client, on_prompt=self._on_prompt)

        self._credentials = CredentialManager(
            config.google,
            flow=flow,
            http_client=self._http_client,
            store=self._store,
            user=config.user,
        )
        client = GoogleCalendarClient(
            self._credentials,
            self._http_client,
            calendar_id=config.sync.calendar_id,
            timezone=config.timezone,
        )
        self._sync_service = CalendarSyncService(
            self._credentials,
            client,
            self._store,
            user=config.user,
            months_back=config.sync.months_back,
            months_ahead=config.sync.months_ahead,
        )
        await self._sync_service.restore()

        self._dispatcher = NotificationDispatcher(
            [
                LocalAlertChannel(self._alert_callback),
                EmailChannel(
                    config.email,
                    self._http_client,
                    to_email=config.user_email,
                    to_name=config.user_name,
                ),
                SmsChannel(config.sms, self._http_client),
            ]
        )
        self._scheduler = ReminderScheduler(
            self._store,
            self._dispatcher,
            user=config.user,
            timezone=config.tzinfo,
            interval_seconds=config.scheduler.tick_interval_seconds,
        )
        logger.info(
            "calsync started (store=%s, google=%s, email=%s, sms=%s)",
            config.store.backend,
            "on" if config.google else "off",
            "on" if config.email else "off",
            "on" if config.sms else "off",
        )

    def start_background(self) -> None:
        """Start the reminder scheduler and, when configured, the sync poller."""
        self.scheduler.start()
        if self.config.google is not None:
            self.sync_service.start_poller(self.config.sync.interval_minutes)

    async def shutdown(self) -> None:
        if self._scheduler is not None:
            await self._scheduler.stop()
        if self._sync_service is not None:
            await self._sync_service.stop_poller()
        if self._credentials is not None:
            await self._credentials.aclose()
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        if self._owns_store and isinstance(self._store, PostgresStore):
            await self._store.close()

    async def __aenter__(self) -> CalsyncApp:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()
