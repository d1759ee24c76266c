"""Shared fixtures for calsync tests."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from calsync.config import GoogleOAuthConfig
from calsync.core.store import MemoryStore
from calsync.errors import AuthError
from calsync.models import TokenGrant


class FakeClock:
    """Mutable clock; call it to read, ``advance`` to move forward."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2024, 1, 10, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeConsentFlow:
    """In-memory ConsentFlow that records calls and returns queued grants."""

    def __init__(self) -> None:
        self.authorize_calls: list[dict] = []
        self.refresh_calls: list[str | None] = []
        self.revoked: list[str] = []
        self.authorize_result: TokenGrant | AuthError = TokenGrant(
            access_token="access-1", expires_in=3600, refresh_token="refresh-1"
        )
        self.refresh_results: list[TokenGrant | AuthError] = []
        self.refresh_delay: float = 0.0
        self.revoke_error: Exception | None = None

    async def authorize(self, scopes: frozenset[str], *, force_consent: bool) -> TokenGrant:
        self.authorize_calls.append({"scopes": scopes, "force_consent": force_consent})
        if isinstance(self.authorize_result, AuthError):
            raise self.authorize_result
        return self.authorize_result

    async def refresh(self, scopes: frozenset[str], refresh_token: str | None) -> TokenGrant:
        self.refresh_calls.append(refresh_token)
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        result = (
            self.refresh_results.pop(0)
            if self.refresh_results
            else TokenGrant(access_token=f"access-r{len(self.refresh_calls)}", expires_in=3600)
        )
        if isinstance(result, AuthError):
            raise result
        return result

    async def revoke(self, token: str) -> None:
        self.revoked.append(token)
        if self.revoke_error is not None:
            raise self.revoke_error


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def consent_flow() -> FakeConsentFlow:
    return FakeConsentFlow()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def google_config() -> GoogleOAuthConfig:
    return GoogleOAuthConfig(client_id="client-123.apps.googleusercontent.com")
