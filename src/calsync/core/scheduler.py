"""Reminder due-check scheduler.

A single background task evaluates reminders once at start-up and then every
``interval_seconds``. Ticks never overlap. For each reminder that is due,
incomplete and not yet notified, the scheduler dispatches it and then
persists ``notification_sent = True`` before moving on to the next one.

Delivery is at-least-once: a crash between dispatch and the write-back can
repeat a notification after restart.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, tzinfo

from opentelemetry import trace

from calsync.core.logging import new_operation_id, operation_context
from calsync.core.store import LocalStore, load_reminders, save_reminders
from calsync.models import Reminder
from calsync.notify.channels import ChannelOutcome
from calsync.notify.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL_SECONDS = 60


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ReminderScheduler:
    """Periodic due-check over one user's reminder collection."""

    def __init__(
        self,
        store: LocalStore,
        dispatcher: NotificationDispatcher,
        *,
        user: str = "default",
        timezone: tzinfo = UTC,
        interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._user = user
        self._tz = timezone
        self._interval_seconds = interval_seconds
        self._clock = clock

        self._tick_in_progress = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the loop. The first due-check runs immediately."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="reminder-scheduler")
        logger.info("Reminder scheduler started (interval=%ss)", self._interval_seconds)

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as exc:
                logger.error("Reminder tick failed: %s", exc, exc_info=True)
            await asyncio.sleep(self._interval_seconds)

    async def tick(self) -> int:
        """Evaluate due reminders and dispatch them.

        Creates a ``calsync.reminders.tick`` span with attributes
        ``reminders_due`` and ``reminders_dispatched``.

        Returns:
            The number of reminders dispatched and marked sent. ``0`` when a
            previous tick is still running.
        """
        if self._tick_in_progress:
            logger.debug("Reminder tick skipped; previous tick still running")
            return 0

        self._tick_in_progress = True
        try:
            with operation_context(tick=new_operation_id()):
                return await self._dispatch_due()
        finally:
            self._tick_in_progress = False

    async def _dispatch_due(self) -> int:
        tracer = trace.get_tracer("calsync")
        with tracer.start_as_current_span("calsync.reminders.tick") as span:
            now = self._clock()
            reminders = await load_reminders(self._store, self._user)
            due = [r for r in reminders if r.awaiting_dispatch and r.is_due(now, self._tz)]
            span.set_attribute("reminders_due", len(due))

            dispatched = 0
            for reminder in due:
                with operation_context(reminder_id=reminder.id):
                    outcomes = await self._dispatcher.dispatch(reminder)
                    if await self._mark_sent(reminder, outcomes):
                        dispatched += 1

            span.set_attribute("reminders_dispatched", dispatched)
            return dispatched

    async def _mark_sent(self, reminder: Reminder, outcomes: dict[str, ChannelOutcome]) -> bool:
        # Re-read: the reminder may have been edited or removed during dispatch.
        reminders = await load_reminders(self._store, self._user)
        for index, current in enumerate(reminders):
            if current.id != reminder.id:
                continue
            if current.date != reminder.date or current.time != reminder.time:
                logger.info(
                    "Reminder %s was rescheduled during dispatch; leaving it armed", reminder.id
                )
                return False
            reminders[index] = current.model_copy(update={"notification_sent": True})
            await save_reminders(self._store, self._user, reminders)
            logger.info(
                "Reminder %s marked sent",
                reminder.id,
                extra={"outcomes": {name: str(o.status) for name, o in outcomes.items()}},
            )
            return True
        logger.info("Reminder %s was deleted during dispatch", reminder.id)
        return False
