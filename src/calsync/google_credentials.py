"""Google OAuth credential lifecycle for calsync.

:class:`CredentialManager` exclusively owns the user's :class:`~calsync.models.Credential`.
Every component that talks to Google borrows a valid credential through
:meth:`CredentialManager.ensure_valid`; nothing else caches tokens.

State machine::

    unauthenticated -> authorizing -> authenticated -> expired
                                              ^             |
                                              +-- reconnect +

The interactive part is delegated to a :class:`ConsentFlow`. The production
implementation, :class:`GoogleConsentFlow`, opens the system browser on
Google's consent page and receives the authorization code on a loopback
HTTP listener, then exchanges it at the token endpoint with httpx.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import secrets
import threading
import webbrowser
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Protocol
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
from pydantic import ValidationError

from calsync.config import GoogleOAuthConfig
from calsync.core.store import LocalStore, credentials_key
from calsync.errors import (
    AuthError,
    AuthExpiredError,
    AuthFailureError,
    ConfigError,
    MissingCredentialError,
    PopupBlockedError,
    UserCancelledError,
)
from calsync.models import Credential, TokenGrant

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

CALENDAR_SCOPES: frozenset[str] = frozenset(
    {
        "https://www.googleapis.com/auth/calendar.events",
        "https://www.googleapis.com/auth/calendar.readonly",
    }
)

REFRESH_THRESHOLD = timedelta(seconds=60)
CALLBACK_PATH = "/oauth2/callback"


class CredentialState(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZING = "authorizing"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def safe_google_error_message(response: httpx.Response) -> str:
    """Extract a short, whitespace-normalized error message from a Google response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return " ".join(description.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


# ---------------------------------------------------------------------------
# Consent flow
# ---------------------------------------------------------------------------


class ConsentFlow(Protocol):
    """Awaitable OAuth request/response units used by :class:`CredentialManager`."""

    async def authorize(self, scopes: frozenset[str], *, force_consent: bool) -> TokenGrant: ...

    async def refresh(self, scopes: frozenset[str], refresh_token: str | None) -> TokenGrant: ...

    async def revoke(self, token: str) -> None: ...


class _CallbackHandler(BaseHTTPRequestHandler):
    server: _LoopbackServer

    def do_GET(self):  # noqa: N802
        parsed = urlparse(self.path)
        if parsed.path != CALLBACK_PATH:
            self.send_response(404)
            self.end_headers()
            return

        params = {key: values[0] for key, values in parse_qs(parsed.query).items()}
        if "error" in params:
            message = "Authorization failed. You can close this window."
        else:
            message = "calsync is connected. You can close this window and return to the terminal."
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.end_headers()
        self.wfile.write(f"<html><body><h2>{message}</h2></body></html>".encode())
        self.server.params = params
        self.server.received.set()

    def log_message(self, fmt: str, *args):  # noqa: D401
        """Silence handler logging."""


class _LoopbackServer(HTTPServer):
    def __init__(self, port: int) -> None:
        super().__init__(("127.0.0.1", port), _CallbackHandler)
        self.params: dict[str, str] = {}
        self.received = threading.Event()

    @property
    def redirect_uri(self) -> str:
        return f"http://127.0.0.1:{self.server_address[1]}{CALLBACK_PATH}"


def _bind_loopback(preferred_port: int) -> _LoopbackServer:
    try:
        return _LoopbackServer(preferred_port)
    except OSError:
        logger.info("OAuth callback port %d unavailable; using an ephemeral port", preferred_port)
        return _LoopbackServer(0)


def _pkce_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class GoogleConsentFlow:
    """Browser + loopback consent flow against Google's OAuth 2.0 endpoints."""

    def __init__(
        self,
        config: GoogleOAuthConfig,
        http_client: httpx.AsyncClient,
        *,
        open_browser: Callable[[str], bool] = webbrowser.open,
        on_prompt: Callable[[str], None] | None = None,
    ) -> None:
        self._config = config
        self._http_client = http_client
        self._open_browser = open_browser
        self._on_prompt = on_prompt

    def authorization_url(
        self,
        scopes: frozenset[str],
        *,
        redirect_uri: str,
        state: str,
        code_verifier: str,
        force_consent: bool,
    ) -> str:
        params = {
            "client_id": self._config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(sorted(scopes)),
            "state": state,
            "code_challenge": _pkce_challenge(code_verifier),
            "code_challenge_method": "S256",
            "access_type": "offline",
            "include_granted_scopes": "true",
        }
        if force_consent:
            params["prompt"] = "consent"
        return f"{GOOGLE_OAUTH_AUTHORIZE_URL}?{urlencode(params)}"

    async def authorize(self, scopes: frozenset[str], *, force_consent: bool) -> TokenGrant:
        try:
            server = _bind_loopback(self._config.redirect_port)
        except OSError as exc:
            raise PopupBlockedError("Could not start the local OAuth callback listener") from exc

        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        try:
            redirect_uri = server.redirect_uri
            state = secrets.token_urlsafe(24)
            code_verifier = secrets.token_urlsafe(64)
            url = self.authorization_url(
                scopes,
                redirect_uri=redirect_uri,
                state=state,
                code_verifier=code_verifier,
                force_consent=force_consent,
            )
            if self._on_prompt is not None:
                self._on_prompt(url)

            try:
                opened = self._open_browser(url)
            except webbrowser.Error as exc:
                raise PopupBlockedError("No browser is available for Google sign-in") from exc
            if not opened:
                raise PopupBlockedError("The browser refused to open the Google sign-in page")

            received = await asyncio.to_thread(
                server.received.wait, self._config.consent_timeout_seconds
            )
            if not received:
                raise UserCancelledError("Timed out waiting for Google consent")
            params = dict(server.params)
        finally:
            await asyncio.to_thread(server.shutdown)
            server.server_close()

        return await self._exchange_code(
            params, state=state, redirect_uri=redirect_uri, code_verifier=code_verifier
        )

    async def _exchange_code(
        self,
        params: dict[str, str],
        *,
        state: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> TokenGrant:
        error = params.get("error")
        if error == "access_denied":
            raise UserCancelledError("The user declined Google consent")
        if error:
            raise AuthFailureError(f"Google authorization failed: {error}")
        if params.get("state") != state:
            raise AuthFailureError("OAuth state mismatch on callback")
        code = params.get("code")
        if not code:
            raise AuthFailureError("OAuth callback did not include an authorization code")

        data = {
            "code": code,
            "client_id": self._config.client_id,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
            "code_verifier": code_verifier,
        }
        if self._config.client_secret:
            data["client_secret"] = self._config.client_secret
        return await self._request_token(data)

    async def refresh(self, scopes: frozenset[str], refresh_token: str | None) -> TokenGrant:
        if refresh_token is None:
            # Without a refresh token the provider can only re-issue through consent.
            return await self.authorize(scopes, force_consent=False)

        data = {
            "client_id": self._config.client_id,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if self._config.client_secret:
            data["client_secret"] = self._config.client_secret
        return await self._request_token(data)

    async def revoke(self, token: str) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_REVOKE_URL,
                data={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            raise AuthFailureError(f"Google token revocation request failed: {exc}") from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise AuthFailureError(
                "Google token revocation failed "
                f"({response.status_code}): {safe_google_error_message(response)}"
            )

    async def _request_token(self, data: dict[str, str]) -> TokenGrant:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise AuthFailureError(f"Google OAuth token request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise AuthFailureError(
                "Google OAuth token request failed "
                f"({response.status_code}): {safe_google_error_message(response)}"
            )

        try:
            payload: Any = response.json()
        except ValueError as exc:
            raise AuthFailureError("Google OAuth token endpoint returned invalid JSON") from exc

        try:
            return TokenGrant.model_validate(payload)
        except ValidationError as exc:
            raise AuthFailureError(
                "Google OAuth token response is missing a non-empty access_token"
            ) from exc


# ---------------------------------------------------------------------------
# Credential manager
# ---------------------------------------------------------------------------


class CredentialManager:
    """Owns the OAuth credential for one user and hands out valid tokens.

    Parameters
    ----------
    config:
        Google OAuth client settings, or ``None`` when the integration is not
        configured. :meth:`initialize` then fails with a cached ``ConfigError``.
    flow:
        Consent flow. Defaults to :class:`GoogleConsentFlow` built on
        *http_client*.
    store:
        Optional Local Store used to persist the credential across runs.
    """

    def __init__(
        self,
        config: GoogleOAuthConfig | None,
        *,
        flow: ConsentFlow | None = None,
        http_client: httpx.AsyncClient | None = None,
        store: LocalStore | None = None,
        user: str = "default",
        scopes: frozenset[str] = CALENDAR_SCOPES,
        refresh_threshold: timedelta = REFRESH_THRESHOLD,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._flow = flow
        self._http_client = http_client
        self._owns_http_client = False
        self._store = store
        self._user = user
        self._scopes = scopes
        self._refresh_threshold = refresh_threshold
        self._clock = clock

        self._state = CredentialState.UNAUTHENTICATED
        self._credential: Credential | None = None
        self._refresh_task: asyncio.Task[Credential] | None = None
        self._initialized = False
        self._config_error: ConfigError | None = None

    # -- status --------------------------------------------------------------

    @property
    def state(self) -> CredentialState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state is CredentialState.AUTHENTICATED

    @property
    def is_configured(self) -> bool:
        return self._config is not None

    @property
    def expires_at(self) -> datetime | None:
        return self._credential.expires_at if self._credential else None

    @property
    def scopes(self) -> frozenset[str]:
        return self._scopes

    # -- lifecycle -----------------------------------------------------------

    def initialize(self) -> None:
        """Validate configuration and build the consent flow.

        A missing OAuth client id raises ``MissingCredentialError``. The error
        is remembered and re-raised on every later call so the integration
        stays disabled for the rest of the session.
        """
        if self._config_error is not None:
            raise self._config_error
        if self._initialized:
            return
        if self._config is None or not self._config.client_id:
            self._config_error = MissingCredentialError(
                "Google OAuth client id is not configured"
            )
            raise self._config_error
        if self._flow is None:
            if self._http_client is None:
                self._http_client = httpx.AsyncClient(timeout=30.0)
                self._owns_http_client = True
            self._flow = GoogleConsentFlow(self._config, self._http_client)
        self._initialized = True

    async def aclose(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
            self._owns_http_client = False

    async def restore(self) -> CredentialState:
        """Reload a persisted credential, if any, and derive the state from it."""
        if self._store is None:
            return self._state
        key = credentials_key(self._user)
        raw = await self._store.get(key)
        if raw is None:
            return self._state
        try:
            credential = Credential.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding unreadable stored credential for %s", self._user)
            await self._store.delete(key)
            return self._state

        if credential.is_valid(self._clock()):
            self._credential = credential
            self._state = CredentialState.AUTHENTICATED
        elif credential.refresh_token:
            self._credential = credential
            self._state = CredentialState.EXPIRED
        else:
            logger.info("Stored credential for %s has expired; discarding", self._user)
            await self._store.delete(key)
        return self._state

    # -- operations ----------------------------------------------------------

    async def request_access(self, *, force_consent: bool = False) -> Credential:
        """Run interactive consent and become ``authenticated``.

        Cancellation and other consent failures leave the previous state and
        credential untouched.
        """
        self.initialize()
        assert self._flow is not None
        previous_state = self._state
        self._state = CredentialState.AUTHORIZING
        try:
            grant = await self._flow.authorize(self._scopes, force_consent=force_consent)
        except UserCancelledError:
            logger.info("Google consent cancelled by user")
            self._state = previous_state
            raise
        except BaseException:
            self._state = previous_state
            raise

        credential = Credential.from_grant(
            grant,
            now=self._clock(),
            requested_scopes=self._scopes,
            previous=self._credential,
        )
        await self._install(credential)
        logger.info(
            "Google Calendar access granted",
            extra={"expires_at": credential.expires_at.isoformat()},
        )
        return credential

    async def ensure_valid(self) -> Credential:
        """Return a credential valid for at least the refresh threshold.

        Refreshes are single-flight: concurrent callers that find the
        credential near expiry share one refresh and observe the same result.

        Raises
        ------
        AuthExpiredError
            No credential is held, or the refresh failed.
        """
        self.initialize()
        credential = self._credential
        if credential is None:
            raise AuthExpiredError("Not connected to Google Calendar")
        if credential.remaining(self._clock()) >= self._refresh_threshold:
            return credential
        return await self._refresh_single_flight()

    async def force_refresh(self, rejected: Credential | None = None) -> Credential:
        """Refresh regardless of remaining lifetime.

        When *rejected* is given and a different credential has already been
        installed since, that credential is returned without another refresh.
        """
        self.initialize()
        current = self._credential
        if current is None:
            raise AuthExpiredError("Not connected to Google Calendar")
        if rejected is not None and current is not rejected and current.is_valid(self._clock()):
            return current
        return await self._refresh_single_flight()

    async def invalidate(self) -> None:
        """Drop the credential after an unrecoverable rejection."""
        if self._credential is not None:
            logger.warning("Invalidating Google credential for %s", self._user)
        self._credential = None
        self._state = CredentialState.EXPIRED
        await self._forget()

    async def revoke(self) -> None:
        """Disconnect: clear local state, then best-effort revoke at the provider.

        Never raises on provider failure.
        """
        credential = self._credential
        self._credential = None
        self._state = CredentialState.UNAUTHENTICATED
        await self._forget()
        if credential is None or self._flow is None:
            return
        token = credential.refresh_token or credential.access_token
        try:
            await self._flow.revoke(token)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Google token revocation failed: %s", exc)
        else:
            logger.info("Google token revoked for %s", self._user)

    # -- internals -----------------------------------------------------------

    async def _refresh_single_flight(self) -> Credential:
        task = self._refresh_task
        if task is None:
            task = asyncio.create_task(self._refresh())
            task.add_done_callback(self._on_refresh_done)
            self._refresh_task = task
        return await asyncio.shield(task)

    def _on_refresh_done(self, task: asyncio.Task[Credential]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Mark the exception retrieved when every waiter was cancelled.
            task.exception()

    async def _refresh(self) -> Credential:
        assert self._flow is not None
        credential = self._credential
        if credential is None:
            raise AuthExpiredError("Not connected to Google Calendar")

        logger.debug("Refreshing Google credential for %s", self._user)
        try:
            grant = await self._flow.refresh(
                credential.scopes or self._scopes, credential.refresh_token
            )
        except AuthError as exc:
            logger.warning("Google credential refresh failed: %s", exc)
            if self._credential is credential:
                self._credential = None
                self._state = CredentialState.EXPIRED
                await self._forget()
            raise AuthExpiredError("Google credential refresh failed; reconnect required") from exc

        if self._credential is not credential:
            # Revoked or replaced while the refresh was in flight.
            if self._credential is None:
                raise AuthExpiredError("Google credential was cleared during refresh")
            return self._credential

        refreshed = Credential.from_grant(
            grant,
            now=self._clock(),
            requested_scopes=credential.scopes or self._scopes,
            previous=credential,
        )
        await self._install(refreshed)
        return refreshed

    async def _install(self, credential: Credential) -> None:
        self._credential = credential
        self._state = CredentialState.AUTHENTICATED
        if self._store is not None:
            await self._store.put(credentials_key(self._user), credential.model_dump(mode="json"))

    async def _forget(self) -> None:
        if self._store is not None:
            await self._store.delete(credentials_key(self._user))
