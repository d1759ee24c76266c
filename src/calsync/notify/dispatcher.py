"""Fan-out of a due reminder to every notification channel.

Channels run concurrently and independently. A failure on one channel never
stops the others, and :meth:`NotificationDispatcher.dispatch` itself never
raises for channel problems; it returns one :class:`ChannelOutcome` per
channel.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from calsync.errors import ChannelUnconfiguredError, DispatchError
from calsync.models import Reminder
from calsync.notify.channels import ChannelOutcome, ChannelStatus, NotificationChannel

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    def __init__(self, channels: Sequence[NotificationChannel]) -> None:
        self._channels = list(channels)

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    async def dispatch(self, reminder: Reminder) -> dict[str, ChannelOutcome]:
        """Attempt every channel for *reminder* and report per-channel outcomes."""
        outcomes = await asyncio.gather(
            *(self._attempt(channel, reminder) for channel in self._channels)
        )
        result = {outcome.channel: outcome for outcome in outcomes}
        logger.info(
            "Dispatched reminder %s: %s",
            reminder.id,
            ", ".join(f"{name}={outcome.status}" for name, outcome in result.items()),
        )
        return result

    async def _attempt(self, channel: NotificationChannel, reminder: Reminder) -> ChannelOutcome:
        if not channel.wants(reminder):
            return ChannelOutcome(channel.name, ChannelStatus.SKIPPED)
        try:
            message_id = await channel.send(reminder)
        except ChannelUnconfiguredError as exc:
            logger.info("Skipping %s notification: %s", channel.name, exc.message)
            return ChannelOutcome(channel.name, ChannelStatus.UNCONFIGURED, detail=exc.message)
        except DispatchError as exc:
            logger.warning("%s notification failed for %s: %s", channel.name, reminder.id, exc)
            return ChannelOutcome(channel.name, ChannelStatus.FAILED, detail=exc.message)
        except Exception as exc:
            logger.error(
                "Unexpected %s notification error for %s", channel.name, reminder.id, exc_info=True
            )
            return ChannelOutcome(channel.name, ChannelStatus.FAILED, detail=str(exc))
        return ChannelOutcome(channel.name, ChannelStatus.SENT, message_id=message_id)
