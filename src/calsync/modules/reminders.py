"""Reminder collection operations.

Each operation reads the whole ``reminders::<user>`` collection, applies one
change, and writes the collection back.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any

from calsync.core.store import LocalStore, load_reminders, save_reminders
from calsync.models import Reminder, new_local_id

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "date",
        "time",
        "description",
        "email_notification",
        "sms_notification",
        "phone_number",
    }
)


def _find(reminders: list[Reminder], reminder_id: str) -> int:
    for index, reminder in enumerate(reminders):
        if reminder.id == reminder_id:
            return index
    raise ValueError(f"Reminder {reminder_id} not found")


def _check_sms(reminder: Reminder) -> None:
    if reminder.sms_notification and reminder.phone_number is None:
        raise ValueError("SMS notifications require a phone number")


async def list_reminders(store: LocalStore, user: str) -> list[Reminder]:
    """Return reminders with incomplete ones first, each group ordered by due time."""
    reminders = await load_reminders(store, user)
    return sorted(reminders, key=lambda r: (r.is_complete, r.date, r.time, r.title))


async def add_reminder(
    store: LocalStore,
    user: str,
    *,
    title: str,
    date: dt.date,
    time: dt.time,
    description: str | None = None,
    email_notification: bool = False,
    sms_notification: bool = False,
    phone_number: str | None = None,
) -> Reminder:
    reminder = Reminder(
        id=new_local_id(),
        title=title,
        date=date,
        time=time,
        description=description,
        email_notification=email_notification,
        sms_notification=sms_notification,
        phone_number=phone_number,
    )
    _check_sms(reminder)

    reminders = await load_reminders(store, user)
    reminders.append(reminder)
    await save_reminders(store, user, reminders)
    logger.info("Reminder created: %s due %s %s", reminder.id, reminder.date, reminder.time)
    return reminder


async def update_reminder(
    store: LocalStore,
    user: str,
    reminder_id: str,
    **fields: Any,
) -> Reminder:
    """Update a reminder's fields.

    Changing the date or time re-arms the reminder: ``notification_sent`` is
    reset so the rescheduled occurrence fires again.

    Raises
    ------
    ValueError
        If the reminder does not exist or an unknown field is given.
    """
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown reminder field(s): {', '.join(sorted(unknown))}")

    reminders = await load_reminders(store, user)
    index = _find(reminders, reminder_id)
    current = reminders[index]

    updated = Reminder.model_validate({**current.model_dump(), **fields})
    if updated.date != current.date or updated.time != current.time:
        updated = updated.model_copy(update={"notification_sent": False})
    _check_sms(updated)

    reminders[index] = updated
    await save_reminders(store, user, reminders)
    return updated


async def toggle_complete(store: LocalStore, user: str, reminder_id: str) -> Reminder:
    reminders = await load_reminders(store, user)
    index = _find(reminders, reminder_id)
    toggled = reminders[index].model_copy(
        update={"is_complete": not reminders[index].is_complete}
    )
    reminders[index] = toggled
    await save_reminders(store, user, reminders)
    return toggled


async def delete_reminder(store: LocalStore, user: str, reminder_id: str) -> None:
    reminders = await load_reminders(store, user)
    index = _find(reminders, reminder_id)
    del reminders[index]
    await save_reminders(store, user, reminders)
