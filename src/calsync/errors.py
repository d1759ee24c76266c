"""Error taxonomy shared by the credential, calendar, sync and notification layers.

Every failure surfaced to a caller is one of four families:

- :class:`AuthError`: OAuth consent, refresh and token validity problems.
- :class:`SyncError`: remote calendar transport and payload problems.
- :class:`DispatchError`: a single notification channel could not deliver.
- :class:`ConfigError`: a required credential is absent from configuration.

User-facing text is derived from the error *kind* via :func:`user_message`,
never from the raw exception string (which may carry transport details).
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Stable identifiers for each concrete error kind."""

    USER_CANCELLED = "user_cancelled"
    POPUP_BLOCKED = "popup_blocked"
    AUTH_FAILURE = "auth_failure"
    AUTH_EXPIRED = "auth_expired"
    NETWORK_FAILURE = "network_failure"
    REMOTE_REJECTED = "remote_rejected"
    SYNC_IN_PROGRESS = "sync_in_progress"
    CHANNEL_UNCONFIGURED = "channel_unconfigured"
    CHANNEL_FAILURE = "channel_failure"
    MISSING_CREDENTIAL = "missing_credential"


class CalsyncError(RuntimeError):
    """Base class for all calsync errors."""

    kind: ErrorKind


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class AuthError(CalsyncError):
    """Base error raised by the credential manager and authenticated calls."""

    kind = ErrorKind.AUTH_FAILURE


class UserCancelledError(AuthError):
    """The user dismissed or denied the consent prompt. Recoverable."""

    kind = ErrorKind.USER_CANCELLED


class PopupBlockedError(AuthError):
    """The consent prompt could not be shown (browser or loopback unavailable)."""

    kind = ErrorKind.POPUP_BLOCKED


class AuthFailureError(AuthError):
    """The provider rejected the authorization request."""

    kind = ErrorKind.AUTH_FAILURE


class AuthExpiredError(AuthError):
    """The credential is gone or can no longer be refreshed; reconnect required."""

    kind = ErrorKind.AUTH_EXPIRED


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


class SyncError(CalsyncError):
    """Base error raised by the remote calendar client and sync service."""

    kind = ErrorKind.NETWORK_FAILURE


class NetworkFailureError(SyncError):
    """The request never produced an HTTP response."""

    kind = ErrorKind.NETWORK_FAILURE


class RemoteRejectedError(SyncError):
    """The remote answered with an error status or a payload we cannot accept."""

    kind = ErrorKind.REMOTE_REJECTED

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        self.message = message
        if status_code is None:
            super().__init__(f"Remote calendar rejected the request: {message}")
        else:
            super().__init__(f"Remote calendar rejected the request ({status_code}): {message}")


class SyncInProgressError(SyncError):
    """A sync pass for this user is already running."""

    kind = ErrorKind.SYNC_IN_PROGRESS


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class DispatchError(CalsyncError):
    """Base error for a single notification channel."""

    kind = ErrorKind.CHANNEL_FAILURE

    def __init__(self, channel: str, message: str) -> None:
        self.channel = channel
        self.message = message
        super().__init__(f"[{channel}] {message}")


class ChannelUnconfiguredError(DispatchError):
    """The channel's provider credentials are absent; the channel is skipped."""

    kind = ErrorKind.CHANNEL_UNCONFIGURED


class ChannelFailureError(DispatchError):
    """The channel's provider refused or failed the delivery."""

    kind = ErrorKind.CHANNEL_FAILURE


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


class ConfigError(CalsyncError):
    """Raised when configuration is missing, malformed, or invalid."""

    kind = ErrorKind.MISSING_CREDENTIAL


class MissingCredentialError(ConfigError):
    """A credential required by an integration is not configured."""

    kind = ErrorKind.MISSING_CREDENTIAL


_USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.USER_CANCELLED: "Google sign-in was cancelled. Nothing was changed.",
    ErrorKind.POPUP_BLOCKED: (
        "The Google sign-in window could not be opened. Allow pop-ups or open the "
        "printed link manually and try again."
    ),
    ErrorKind.AUTH_FAILURE: "Google sign-in failed. Please try connecting again.",
    ErrorKind.AUTH_EXPIRED: (
        "Your Google Calendar session has expired. Reconnect to resume syncing."
    ),
    ErrorKind.NETWORK_FAILURE: (
        "Could not reach Google Calendar. Check your connection and try again."
    ),
    ErrorKind.REMOTE_REJECTED: "Google Calendar rejected the request. Please try again later.",
    ErrorKind.SYNC_IN_PROGRESS: "A sync is already running. Please wait for it to finish.",
    ErrorKind.CHANNEL_UNCONFIGURED: "This notification channel is not configured.",
    ErrorKind.CHANNEL_FAILURE: "The notification could not be delivered on this channel.",
    ErrorKind.MISSING_CREDENTIAL: (
        "A required credential is not configured. Check calsync.toml and your environment."
    ),
}


def user_message(exc: BaseException) -> str:
    """Return the user-facing message for *exc*, keyed on its error kind.

    Exceptions outside the taxonomy map to a generic message so transport
    details never leak into the UI.
    """
    kind = getattr(exc, "kind", None)
    if isinstance(kind, ErrorKind):
        return _USER_MESSAGES[kind]
    return "Something went wrong. Please try again."
