"""Configuration loading and validation for mcp-chat."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .exceptions import ConfigValidationError

import tomllib  # stdlib since Python 3.11 (project requires >=3.11)

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "mcpchat"
CONFIG_PATH = CONFIG_DIR / "config.toml"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _normalize_names(value: Any, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{field_name} must be a list of server names.")
    normalized: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"Each entry in {field_name} must be a string.")
        candidate = item.strip()
        if candidate and candidate not in normalized:
            normalized.append(candidate)
    return normalized


class ProviderConfig(BaseModel):
    """Model provider endpoint and request settings."""

    name: str = "ollama"
    host: str = "http://localhost:11434"
    model: str = "llama3.2"
    timeout: int = Field(default=120, ge=1, le=3600)
    retries: int = Field(default=2, ge=0, le=10)
    retry_backoff_seconds: float = Field(default=0.5, ge=0.0, le=60.0)
    system_prompt: str = "You are a helpful assistant."
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name", "host", "model", mode="before")
    @classmethod
    def _validate_required_string(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Expected a string value.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("String value must not be empty.")
        return normalized

    @field_validator("system_prompt", mode="before")
    @classmethod
    def _normalize_prompt(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Expected a string value.")
        return value.strip()

    @model_validator(mode="after")
    def _validate_host(self) -> ProviderConfig:
        parsed = urlparse(self.host)
        if parsed.scheme.lower() not in {"http", "https"}:
            raise ValueError("provider.host must use http or https scheme.")
        if not (parsed.hostname or "").strip():
            raise ValueError("provider.host must include a hostname.")
        return self


class ServerPolicyConfig(BaseModel):
    """Per-server overrides."""

    auto_authorize: bool | None = None


class McpConfig(BaseModel):
    """MCP server selection and tool execution policy."""

    servers: list[str] = Field(default_factory=list)
    enabled_servers: list[str] = Field(default_factory=list)
    conversation_servers: dict[str, list[str]] = Field(default_factory=dict)
    default_auto_authorize: bool = False
    server_policies: dict[str, ServerPolicyConfig] = Field(default_factory=dict)
    max_tool_rounds: int = Field(default=5, ge=1, le=15)

    @field_validator("servers", "enabled_servers", mode="before")
    @classmethod
    def _validate_server_list(cls, value: Any) -> list[str]:
        return _normalize_names(value, "server list")

    @field_validator("conversation_servers", mode="before")
    @classmethod
    def _validate_conversation_servers(cls, value: Any) -> dict[str, list[str]]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("conversation_servers must be a table of id -> names.")
        mapping: dict[str, list[str]] = {}
        for key, names in value.items():
            if not isinstance(key, str) or not key.strip():
                raise ValueError("conversation_servers keys must be non-empty strings.")
            mapping[key.strip()] = _normalize_names(names, "conversation_servers")
        return mapping


class PersistenceConfig(BaseModel):
    """Message segment persistence settings."""

    enabled: bool = True
    directory: str = "~/.local/state/mcpchat/messages"
    autosave_interval_seconds: float = Field(default=1.0, ge=0.2, le=60.0)

    @field_validator("directory", mode="before")
    @classmethod
    def _validate_path_string(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Path value must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("Path value must not be empty.")
        return normalized


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/mcpchat/app.log"

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

    provider: ProviderConfig = ProviderConfig()
    mcp: McpConfig = McpConfig()
    persistence: PersistenceConfig = PersistenceConfig()
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

    The optional ``config_path`` argument is intended for tests and tooling.
    """
    target_path = config_path or CONFIG_PATH
    ensure_config_dir(target_path.parent)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    merged = (
        _deep_merge(DEFAULT_CONFIG, raw_data)
        if isinstance(raw_data, dict)
        else _safe_default_config()
    )
    return _validate_config(merged)
