"""Configuration loading and validation for the HealthAssist core."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
import tomllib
from typing import Any
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    field_validator,
)

from .exceptions import ConfigValidationError

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "healthassist"
CONFIG_PATH = CONFIG_DIR / "config.toml"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
VALID_UPLOAD_MODES = {"storage", "function"}

DEFAULT_PERSONA = (
    "You are HealthAssist, a friendly virtual health assistant. Ask short "
    "follow-up questions to understand the patient's symptoms, give general "
    "health information only, never present a diagnosis, and always remind the "
    "patient to consult a healthcare provider for medical decisions. If the "
    "symptoms sound like an emergency, tell the patient to contact emergency "
    "services immediately."
)


def _require_http_url(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string.")
    normalized = value.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme.lower() not in {"http", "https"} or not parsed.hostname:
        raise ValueError(f"{field_name} must be an http(s) URL with a hostname.")
    return normalized


class StoreConfig(BaseModel):
    """Persistent store endpoint (PostgREST-style API)."""

    url: str = "http://localhost:54321"
    api_key: str = ""
    timeout: int = Field(default=30, ge=1, le=600)
    conversations_table: str = "conversations"
    messages_table: str = "chat_messages"
    attachments_table: str = "chat_attachments"
    intake_table: str = "patient_details"

    @field_validator("url", mode="before")
    @classmethod
    def _validate_url(cls, value: Any) -> str:
        return _require_http_url(value, "store.url")

    @field_validator("api_key", mode="before")
    @classmethod
    def _normalize_api_key(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("api_key must be a string.")
        return value.strip()

    @field_validator(
        "conversations_table",
        "messages_table",
        "attachments_table",
        "intake_table",
        mode="before",
    )
    @classmethod
    def _validate_table_name(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Table names must be strings.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("Table names must not be empty.")
        return normalized


class ResponderConfig(BaseModel):
    """Responder endpoint and assistant persona."""

    url: str = "http://localhost:54321/functions/v1/chat"
    timeout: int = Field(default=120, ge=1, le=3600)
    persona: str = DEFAULT_PERSONA
    error_message: str = (
        "Sorry, I couldn't get a response right now. Please try again."
    )

    @field_validator("url", mode="before")
    @classmethod
    def _validate_url(cls, value: Any) -> str:
        return _require_http_url(value, "responder.url")

    @field_validator("persona", "error_message", mode="before")
    @classmethod
    def _validate_text(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Expected a string value.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("String value must not be empty.")
        return normalized


class AttachmentsConfig(BaseModel):
    """Attachment upload settings."""

    bucket: str = "chat_attachments"
    upload_mode: str = "storage"
    function_url: str = "http://localhost:54321/functions/v1/upload"
    max_bytes: int = Field(default=10 * 1024 * 1024, ge=1, le=1024 * 1024 * 1024)
    enforce_content_types: bool = False

    @field_validator("upload_mode", mode="before")
    @classmethod
    def _validate_mode(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("upload_mode must be a string.")
        normalized = value.strip().lower()
        if normalized not in VALID_UPLOAD_MODES:
            raise ValueError(f"Unsupported upload_mode {normalized!r}.")
        return normalized

    @field_validator("function_url", mode="before")
    @classmethod
    def _validate_url(cls, value: Any) -> str:
        return _require_http_url(value, "attachments.function_url")

    @field_validator("bucket", mode="before")
    @classmethod
    def _validate_bucket(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("bucket must be a non-empty string.")
        return value.strip()


class ConversationsConfig(BaseModel):
    """Conversation lifecycle defaults."""

    default_title: str = "New Consultation"

    @field_validator("default_title", mode="before")
    @classmethod
    def _validate_title(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("default_title must be a non-empty string.")
        return value.strip()


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/healthassist/app.log"

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("log_file_path must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("log_file_path must not be empty.")
        return normalized


class Config(BaseModel):
    """Root configuration model for all sections."""

    store: StoreConfig = StoreConfig()
    responder: ResponderConfig = ResponderConfig()
    attachments: AttachmentsConfig = AttachmentsConfig()
    conversations: ConversationsConfig = ConversationsConfig()
    logging: LoggingConfig = LoggingConfig()


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump()


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _enforce_private_permissions(path: Path) -> None:
    """Best-effort enforcement of private file permissions on POSIX systems."""
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning("Unable to enforce 0600 permissions for %s: %s", path, exc)


def _safe_default_config() -> dict[str, dict[str, Any]]:
    """Return a deep copy of validated default config data."""
    return deepcopy(DEFAULT_CONFIG)


def _validate_config(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate merged config and fallback to safe defaults when possible."""
    try:
        config = Config.model_validate(raw)
        return config.model_dump()
    except ValidationError as exc:
        LOGGER.warning("Configuration validation failed, using safe defaults: %s", exc)
        return _safe_default_config()
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> dict[str, dict[str, Any]]:
    """
    Load configuration from TOML, merge with defaults, and validate.

    The store API key holds a credential, so the file is kept private (0600).
    """
    target_path = config_path or CONFIG_PATH
    ensure_config_dir(target_path.parent)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (
            Exception
        ) as exc:  # noqa: BLE001 - we must not crash on invalid user config.
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    merged = (
        _deep_merge(DEFAULT_CONFIG, raw_data)
        if isinstance(raw_data, dict)
        else _safe_default_config()
    )
    return _validate_config(merged)
