"""Typed settings for the IMAP queue and its mail client.

Queue options and connection parameters are wrapped in Pydantic models so the
queue engine, the client and the CLI can rely on validated values. Settings are
read from a JSON file, overridden by ``IMAPQUEUE_*`` environment variables, and
the IMAP password may be kept out of the file entirely by storing it in the
system keyring.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import keyring
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from .errors import ConfigurationError


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".imapqueue" / "config.json"
DEFAULT_STATE_PATH = Path.home() / ".imapqueue" / "state.db"
DEFAULT_SECRETS_SERVICE = "imapqueue"


class QueueSettings(BaseModel):
    """Options for :class:`imapqueue.queue.MailboxQueue`; immutable once built."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    skip_initial: bool = Field(
        default=False, description="Skip every message present when the queue starts"
    )
    initial_watermark: Optional[int] = Field(
        default=None,
        ge=1,
        description="Known next identifier from a previous run; disables skip_initial",
    )
    idle_timeout: float = Field(
        default=30.0, gt=0, description="Seconds to stay in IDLE before re-checking"
    )
    sleep_on_retry: float = Field(
        default=30.0, ge=0, description="Seconds to sleep between reconnect attempts"
    )
    max_retry: Optional[int] = Field(
        default=None, ge=0, description="Reconnect attempts before giving up (unbounded if unset)"
    )


class ImapSettings(BaseModel):
    """Connection parameters for :class:`imapqueue.client.ImapMailClient`."""

    host: str = Field(..., min_length=1, description="IMAP hostname")
    port: int = Field(default=993, ge=1, le=65535, description="IMAP port")
    username: str = Field(..., min_length=1, description="Login name")
    password: Optional[SecretStr] = Field(
        default=None, description="Password; looked up in the keyring when unset"
    )
    folder: str = Field(default="INBOX", min_length=1, description="Folder to drain")
    use_uid: bool = Field(default=True, description="Deliver UIDs instead of sequence numbers")
    ssl: bool = Field(default=True, description="Use implicit TLS")
    connection_timeout: float = Field(default=30.0, gt=0, description="Socket timeout in seconds")

    @field_validator("host")
    @classmethod
    def _strip_host(cls, value: str) -> str:
        return value.strip()

    @property
    def account(self) -> str:
        """Stable account key used by the watermark store."""
        return f"{self.username}@{self.host}:{self.port}"


class Settings(BaseModel):
    """Root configuration state."""

    imap: ImapSettings
    queue: QueueSettings = Field(default_factory=QueueSettings)
    state_path: Path = Field(default=DEFAULT_STATE_PATH)

    @field_validator("state_path")
    @classmethod
    def _expand_state_path(cls, value: Path) -> Path:
        return value.expanduser()


@dataclass
class SecretStore:
    """Keyring abstraction for IMAP passwords."""

    service_name: str = DEFAULT_SECRETS_SERVICE
    keyring_module: Any = field(default=keyring)

    def set_secret(self, key: str, value: str) -> None:
        self.keyring_module.set_password(self.service_name, key, value)

    def get_secret(self, key: str) -> Optional[str]:
        return self.keyring_module.get_password(self.service_name, key)


def build_queue_settings(**options: Any) -> QueueSettings:
    """Validate queue options, translating failures into ``ConfigurationError``."""

    try:
        return QueueSettings(**options)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid queue options: {exc}") from exc


def load_settings(path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from disk, apply environment overrides and validate."""

    if not path.exists():
        raise ConfigurationError(
            f"Settings file not found at {path}", details={"path": str(path)}
        )
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Settings file {path} is not valid JSON: {exc}") from exc

    payload = _apply_env_overrides(payload)
    try:
        return Settings.model_validate(payload)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def resolve_password(imap: ImapSettings, secret_store: Optional[SecretStore] = None) -> str:
    """Return the IMAP password from settings, falling back to the keyring."""

    if imap.password is not None:
        return imap.password.get_secret_value()
    secret_store = secret_store or SecretStore()
    secret = secret_store.get_secret(imap.account)
    if secret is None:
        raise ConfigurationError(
            f"No password configured for {imap.account}",
            details={"keyring_service": secret_store.service_name},
        )
    logger.debug("IMAP password loaded from keyring", extra={"account": imap.account})
    return secret


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    imap = data.setdefault("imap", {})
    _set_env_override(imap, "host", "IMAPQUEUE_HOST")
    _set_env_override(imap, "port", "IMAPQUEUE_PORT", cast=int)
    _set_env_override(imap, "username", "IMAPQUEUE_USERNAME")
    _set_env_override(imap, "password", "IMAPQUEUE_PASSWORD")
    _set_env_override(imap, "folder", "IMAPQUEUE_FOLDER")

    queue = data.setdefault("queue", {})
    _set_env_override(queue, "idle_timeout", "IMAPQUEUE_IDLE_TIMEOUT", cast=float)
    _set_env_override(queue, "sleep_on_retry", "IMAPQUEUE_SLEEP_ON_RETRY", cast=float)
    _set_env_override(queue, "max_retry", "IMAPQUEUE_MAX_RETRY", cast=int)

    _set_env_override(data, "state_path", "IMAPQUEUE_STATE_PATH")
    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    *,
    cast: Any = None,
) -> None:
    raw = os.getenv(env_name)
    if raw is None:
        return
    if cast is None:
        mapping[key] = raw
        return
    try:
        mapping[key] = cast(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{env_name} must be a {cast.__name__}, got {raw!r}") from exc


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_STATE_PATH",
    "ImapSettings",
    "QueueSettings",
    "SecretStore",
    "Settings",
    "build_queue_settings",
    "load_settings",
    "resolve_password",
]
