"""calsync configuration loading and validation.

Reads ``calsync.toml`` (a file path, or a directory containing one), resolves
``${VAR}`` / ``${VAR:-default}`` references from the environment, and returns
a validated :class:`CalsyncConfig`.

Integration credentials double as feature flags: when the Google client id,
the EmailJS ids/key, or the Twilio account credentials are absent, the
corresponding section resolves to ``None`` and the integration stays
disabled for the whole session. Each credential field falls back to a
well-known environment variable when the TOML file does not set it.
"""

from __future__ import annotations

import logging
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calsync.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "calsync.toml"
CONFIG_PATH_ENV = "CALSYNC_CONFIG"

DEFAULT_USER = "default"
DEFAULT_STORE_DIR = "~/.local/share/calsync"
DEFAULT_REDIRECT_PORT = 8765
DEFAULT_CONSENT_TIMEOUT_SECONDS = 120
DEFAULT_SENDER_NAME = "Sync My Calendar"

# Pattern matching ${VAR_NAME} or ${VAR_NAME:-default}.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")
_VALID_STORE_BACKENDS = ("memory", "file", "postgres")

# Environment fallbacks for credential fields, keyed by (section, field).
CREDENTIAL_ENV_FALLBACKS: dict[tuple[str, str], str] = {
    ("google", "client_id"): "GOOGLE_OAUTH_CLIENT_ID",
    ("google", "client_secret"): "GOOGLE_OAUTH_CLIENT_SECRET",
    ("email", "service_id"): "EMAILJS_SERVICE_ID",
    ("email", "template_id"): "EMAILJS_TEMPLATE_ID",
    ("email", "public_key"): "EMAILJS_PUBLIC_KEY",
    ("email", "private_key"): "EMAILJS_PRIVATE_KEY",
    ("sms", "account_sid"): "TWILIO_ACCOUNT_SID",
    ("sms", "auth_token"): "TWILIO_AUTH_TOKEN",
    ("sms", "from_number"): "TWILIO_FROM_NUMBER",
}


@dataclass
class LoggingConfig:
    """Logging configuration from [calsync.logging]."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class StoreConfig:
    """Local Store backend from [calsync.store]."""

    backend: str = "file"
    path: str = DEFAULT_STORE_DIR
    dsn: str | None = None


@dataclass
class SchedulerConfig:
    """Reminder due-check loop from [calsync.scheduler]."""

    tick_interval_seconds: int = 60


@dataclass
class SyncConfig:
    """Remote calendar sync settings from [calsync.sync].

    ``interval_minutes = 0`` disables the background poller; syncs then run
    only on connect or on demand.
    """

    calendar_id: str = "primary"
    interval_minutes: int = 0
    months_back: int = 1
    months_ahead: int = 2


@dataclass
class GoogleOAuthConfig:
    """Google OAuth client from [google]."""

    client_id: str
    client_secret: str | None = None
    redirect_port: int = DEFAULT_REDIRECT_PORT
    consent_timeout_seconds: int = DEFAULT_CONSENT_TIMEOUT_SECONDS

    def __repr__(self) -> str:
        return (
            f"GoogleOAuthConfig(client_id={self.client_id!r}, "
            f"client_secret={'<REDACTED>' if self.client_secret else None}, "
            f"redirect_port={self.redirect_port!r})"
        )


@dataclass
class EmailJSConfig:
    """EmailJS templated email provider from [email]."""

    service_id: str
    template_id: str
    public_key: str
    private_key: str | None = None
    sender_name: str = DEFAULT_SENDER_NAME

    def __repr__(self) -> str:
        return (
            f"EmailJSConfig(service_id={self.service_id!r}, "
            f"template_id={self.template_id!r}, public_key=<REDACTED>, "
            f"private_key={'<REDACTED>' if self.private_key else None})"
        )


@dataclass
class TwilioConfig:
    """Twilio SMS provider from [sms]."""

    account_sid: str
    auth_token: str
    from_number: str

    def __repr__(self) -> str:
        return (
            f"TwilioConfig(account_sid={self.account_sid!r}, auth_token=<REDACTED>, "
            f"from_number={self.from_number!r})"
        )


@dataclass
class CalsyncConfig:
    """Parsed and validated calsync configuration."""

    user: str = DEFAULT_USER
    user_email: str | None = None
    user_name: str | None = None
    timezone: str = "UTC"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    google: GoogleOAuthConfig | None = None
    email: EmailJSConfig | None = None
    sms: TwilioConfig | None = None

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values are returned
    unchanged. ``${VAR:-default}`` falls back to *default* when the
    variable is unset.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set and has no default.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name, default = match.group(1), match.group(2)
        env_value = os.environ.get(var_name)
        if env_value is None:
            if default is not None:
                return default
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _credential_value(section: dict[str, Any], section_name: str, key: str) -> str | None:
    raw = section.get(key)
    if raw is None:
        env_name = CREDENTIAL_ENV_FALLBACKS.get((section_name, key))
        raw = os.environ.get(env_name) if env_name else None
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ConfigError(f"{section_name}.{key} must be a string")
    normalized = raw.strip()
    return normalized or None


def _table(parent: dict[str, Any], key: str, *, where: str) -> dict[str, Any]:
    section = parent.get(key, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{where}] must be a table")
    return section


def _int_setting(
    section: dict[str, Any], key: str, default: int, *, where: str, minimum: int
) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"Invalid {where}.{key}: {raw!r}. Must be an integer.")
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {where}.{key}: {raw!r}. Must be an integer.") from exc
    if value < minimum:
        raise ConfigError(f"Invalid {where}.{key}: {value!r}. Must be >= {minimum}.")
    return value


def _positive_int(section: dict[str, Any], key: str, default: int, *, where: str) -> int:
    return _int_setting(section, key, default, where=where, minimum=1)


def _parse_google(section: dict[str, Any]) -> GoogleOAuthConfig | None:
    client_id = _credential_value(section, "google", "client_id")
    if client_id is None:
        logger.info("Google OAuth client id not configured; calendar sync is disabled")
        return None
    return GoogleOAuthConfig(
        client_id=client_id,
        client_secret=_credential_value(section, "google", "client_secret"),
        redirect_port=_positive_int(
            section, "redirect_port", DEFAULT_REDIRECT_PORT, where="google"
        ),
        consent_timeout_seconds=_positive_int(
            section,
            "consent_timeout_seconds",
            DEFAULT_CONSENT_TIMEOUT_SECONDS,
            where="google",
        ),
    )


def _parse_email(section: dict[str, Any]) -> EmailJSConfig | None:
    values = {
        key: _credential_value(section, "email", key)
        for key in ("service_id", "template_id", "public_key")
    }
    missing = sorted(key for key, value in values.items() if value is None)
    if missing:
        if len(missing) < len(values):
            logger.warning(
                "EmailJS configuration incomplete (missing: %s); email notifications disabled",
                ", ".join(missing),
            )
        else:
            logger.info("EmailJS not configured; email notifications disabled")
        return None
    return EmailJSConfig(
        service_id=values["service_id"],  # type: ignore[arg-type]
        template_id=values["template_id"],  # type: ignore[arg-type]
        public_key=values["public_key"],  # type: ignore[arg-type]
        private_key=_credential_value(section, "email", "private_key"),
        sender_name=str(section.get("sender_name", DEFAULT_SENDER_NAME)),
    )


def _parse_sms(section: dict[str, Any]) -> TwilioConfig | None:
    values = {
        key: _credential_value(section, "sms", key)
        for key in ("account_sid", "auth_token", "from_number")
    }
    missing = sorted(key for key, value in values.items() if value is None)
    if missing:
        if len(missing) < len(values):
            logger.warning(
                "Twilio configuration incomplete (missing: %s); SMS notifications disabled",
                ", ".join(missing),
            )
        else:
            logger.info("Twilio not configured; SMS notifications disabled")
        return None
    return TwilioConfig(
        account_sid=values["account_sid"],  # type: ignore[arg-type]
        auth_token=values["auth_token"],  # type: ignore[arg-type]
        from_number=values["from_number"],  # type: ignore[arg-type]
    )


def _resolve_config_path(path: Path | None) -> Path | None:
    if path is None:
        env_path = os.environ.get(CONFIG_PATH_ENV)
        if not env_path:
            return None
        path = Path(env_path)
    path = path.expanduser()
    if path.is_dir():
        path = path / CONFIG_FILENAME
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    return path


def parse_config(data: dict[str, Any]) -> CalsyncConfig:
    """Validate an already-parsed TOML document into :class:`CalsyncConfig`."""
    data = resolve_env_vars(data)

    # --- [calsync] section ---
    main = _table(data, "calsync", where="calsync")

    user = str(main.get("user", DEFAULT_USER)).strip()
    if not user:
        raise ConfigError("calsync.user must be a non-empty string")

    timezone = str(main.get("timezone") or os.environ.get("TZ") or "UTC").strip()
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid calsync.timezone: {timezone!r}") from exc

    # --- [calsync.logging] ---
    logging_section = _table(main, "logging", where="calsync.logging")
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid calsync.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    logging_config = LoggingConfig(
        level=str(logging_section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=logging_section.get("log_root"),
    )

    # --- [calsync.store] ---
    store_section = _table(main, "store", where="calsync.store")
    backend = str(store_section.get("backend", "file")).lower()
    if backend not in _VALID_STORE_BACKENDS:
        raise ConfigError(
            f"Invalid calsync.store.backend: {backend!r}. "
            f"Expected one of: {', '.join(_VALID_STORE_BACKENDS)}."
        )
    dsn = store_section.get("dsn")
    if backend == "postgres" and not dsn:
        raise ConfigError("calsync.store.dsn is required when backend is 'postgres'")
    store_config = StoreConfig(
        backend=backend,
        path=str(store_section.get("path", DEFAULT_STORE_DIR)),
        dsn=dsn,
    )

    # --- [calsync.scheduler] ---
    scheduler_section = _table(main, "scheduler", where="calsync.scheduler")
    scheduler_config = SchedulerConfig(
        tick_interval_seconds=_positive_int(
            scheduler_section, "tick_interval_seconds", 60, where="calsync.scheduler"
        ),
    )

    # --- [calsync.sync] ---
    sync_section = _table(main, "sync", where="calsync.sync")
    sync_config = SyncConfig(
        calendar_id=str(sync_section.get("calendar_id", "primary")).strip() or "primary",
        interval_minutes=_int_setting(
            sync_section, "interval_minutes", 0, where="calsync.sync", minimum=0
        ),
        months_back=_positive_int(sync_section, "months_back", 1, where="calsync.sync"),
        months_ahead=_positive_int(sync_section, "months_ahead", 2, where="calsync.sync"),
    )

    return CalsyncConfig(
        user=user,
        user_email=main.get("email"),
        user_name=main.get("name"),
        timezone=timezone,
        logging=logging_config,
        store=store_config,
        scheduler=scheduler_config,
        sync=sync_config,
        google=_parse_google(_table(data, "google", where="google")),
        email=_parse_email(_table(data, "email", where="email")),
        sms=_parse_sms(_table(data, "sms", where="sms")),
    )


def load_config(path: Path | None = None) -> CalsyncConfig:
    """Load and validate calsync configuration.

    Parameters
    ----------
    path:
        A ``calsync.toml`` file or a directory containing one. When ``None``,
        ``$CALSYNC_CONFIG`` is consulted; without either, defaults plus the
        credential environment variables are used.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    toml_path = _resolve_config_path(path)
    if toml_path is None:
        return parse_config({})

    try:
        data = tomllib.loads(toml_path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
