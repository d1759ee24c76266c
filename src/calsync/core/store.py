"""Local key-value store for per-user collections and credentials.

Three interchangeable backends implement :class:`LocalStore`:

- :class:`MemoryStore` keeps values in process memory (tests, ephemeral runs).
- :class:`JsonFileStore` writes one JSON document per key under a directory,
  replacing files atomically.
- :class:`PostgresStore` upserts JSONB rows into a ``state`` table via asyncpg.

Values are plain JSON-compatible structures. The typed helpers at the bottom
of the module (``load_events``, ``save_reminders``, ...) translate between
those structures and the pydantic models, keyed per user as
``events::<user>``, ``reminders::<user>`` and ``credentials::<user>``.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import asyncpg
from pydantic import ValidationError

from calsync.models import CalendarEvent, Reminder

logger = logging.getLogger(__name__)

EVENTS_PREFIX = "events"
REMINDERS_PREFIX = "reminders"
CREDENTIALS_PREFIX = "credentials"

_SAFE_FILENAME = re.compile(r"[^A-Za-z0-9_.-]")


def events_key(user: str) -> str:
    return f"{EVENTS_PREFIX}::{user}"


def reminders_key(user: str) -> str:
    return f"{REMINDERS_PREFIX}::{user}"


def credentials_key(user: str) -> str:
    return f"{CREDENTIALS_PREFIX}::{user}"


@runtime_checkable
class LocalStore(Protocol):
    """Async key-value persistence used by every calsync component."""

    async def get(self, key: str) -> Any | None: ...

    async def put(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryStore:
    """Dictionary-backed store. Values are deep-copied on the way in and out."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def get(self, key: str) -> Any | None:
        value = self._data.get(key)
        return copy.deepcopy(value)

    async def put(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


# ---------------------------------------------------------------------------
# JSON file backend
# ---------------------------------------------------------------------------


class JsonFileStore:
    """One ``<key>.json`` file per key under *root*.

    Writes go to a temporary file in the same directory followed by
    ``os.replace`` so a crash never leaves a half-written document behind.
    """

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    def _path_for(self, key: str) -> Path:
        return self._root / f"{_SAFE_FILENAME.sub('_', key)}.json"

    async def get(self, key: str) -> Any | None:
        return await asyncio.to_thread(self._read, self._path_for(key))

    async def put(self, key: str, value: Any) -> None:
        payload = json.dumps(value, indent=2, sort_keys=True)
        await asyncio.to_thread(self._write, self._path_for(key), payload)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._path_for(key).unlink, missing_ok=True)

    @staticmethod
    def _read(path: Path) -> Any | None:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable store file %s", path)
            return None

    def _write(self, path: Path, payload: str) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._root, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


# ---------------------------------------------------------------------------
# PostgreSQL backend
# ---------------------------------------------------------------------------

_CREATE_STATE_TABLE = """
CREATE TABLE IF NOT EXISTS state (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL DEFAULT '{}'::jsonb,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    version INTEGER NOT NULL DEFAULT 1
)
"""


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB column value; asyncpg returns it as text without a codec."""
    if isinstance(val, str):
        return json.loads(val)
    return val


class PostgresStore:
    """``state`` table store over an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @classmethod
    async def connect(cls, dsn: str, *, min_size: int = 1, max_size: int = 4) -> PostgresStore:
        """Open a pool for *dsn* and make sure the ``state`` table exists."""
        pool = await asyncpg.create_pool(dsn, min_size=min_size, max_size=max_size)
        store = cls(pool)
        await store.ensure_schema()
        return store

    async def ensure_schema(self) -> None:
        await self._pool.execute(_CREATE_STATE_TABLE)

    async def close(self) -> None:
        await self._pool.close()

    async def get(self, key: str) -> Any | None:
        row = await self._pool.fetchval("SELECT value FROM state WHERE key = $1", key)
        if row is None:
            return None
        return decode_jsonb(row)

    async def put(self, key: str, value: Any) -> None:
        await self._pool.execute(
            """
            INSERT INTO state (key, value, updated_at, version)
            VALUES ($1, $2::jsonb, now(), 1)
            ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value,
                    updated_at = now(),
                    version = state.version + 1
            """,
            key,
            json.dumps(value),
        )

    async def delete(self, key: str) -> None:
        await self._pool.execute("DELETE FROM state WHERE key = $1", key)


# ---------------------------------------------------------------------------
# Typed collection helpers
# ---------------------------------------------------------------------------


def _load_collection(raw: Any, model: type[CalendarEvent] | type[Reminder], key: str) -> list:
    if raw is None:
        return []
    if not isinstance(raw, list):
        logger.warning("Store key %s does not hold a list; treating as empty", key)
        return []
    items: list = []
    for entry in raw:
        try:
            items.append(model.model_validate(entry))
        except ValidationError as exc:
            logger.warning(
                "Skipping malformed %s entry under %s: %s",
                model.__name__,
                key,
                exc.errors(include_url=False),
            )
    return items


async def load_events(store: LocalStore, user: str) -> list[CalendarEvent]:
    key = events_key(user)
    return _load_collection(await store.get(key), CalendarEvent, key)


async def save_events(store: LocalStore, user: str, events: list[CalendarEvent]) -> None:
    await store.put(events_key(user), [event.to_json() for event in events])


async def load_reminders(store: LocalStore, user: str) -> list[Reminder]:
    key = reminders_key(user)
    return _load_collection(await store.get(key), Reminder, key)


async def save_reminders(store: LocalStore, user: str, reminders: list[Reminder]) -> None:
    await store.put(reminders_key(user), [reminder.to_json() for reminder in reminders])
