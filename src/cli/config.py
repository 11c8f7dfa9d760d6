"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./kbchat.yaml (working directory)
3. ~/.kbchat/config.yaml (user home)

Environment variables override YAML: KBCHAT_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
When no file is found the built-in defaults apply.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, field_validator, model_validator

from src.utils.paths import get_default_credentials_path

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Args:
        value: String potentially containing ${VAR} references.

    Returns:
        String with all ${VAR} references replaced by their env values.
        Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    """Recursively resolve ${VAR} references in a nested data structure."""
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class ApiConfig(BaseModel):
    """Where the knowledge base API lives."""

    base_url: str = "http://localhost:8000"
    timeout_seconds: float = 30.0

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalise the base URL so paths join cleanly."""
        return v.rstrip("/")


class SessionConfig(BaseModel):
    """Credential lifecycle settings.

    The lead window is how long before expiry renewal is scheduled.
    The default lifetime applies when the server omits expires_in.
    """

    lead_window_seconds: float = 300.0
    default_token_lifetime_seconds: float = 3600.0
    credentials_path: str | None = None

    @model_validator(mode="after")
    def lead_window_shorter_than_lifetime(self) -> "SessionConfig":
        """A lead window at or past the lifetime would renew in a tight loop."""
        if self.lead_window_seconds < 0:
            raise ValueError("lead_window_seconds must not be negative")
        if self.lead_window_seconds >= self.default_token_lifetime_seconds:
            raise ValueError(
                "lead_window_seconds must be shorter than default_token_lifetime_seconds"
            )
        return self

    def resolved_credentials_path(self) -> Path:
        """Return the credential store path, expanding ~."""
        if self.credentials_path:
            return Path(self.credentials_path).expanduser()
        return get_default_credentials_path()


class PollingConfig(BaseModel):
    """Cadence of the conversation and resource polling loops."""

    waiting_interval_seconds: float = 2.0
    active_interval_seconds: float = 5.0
    idle_interval_seconds: float = 15.0
    resource_interval_seconds: float = 2.0

    @field_validator(
        "waiting_interval_seconds",
        "active_interval_seconds",
        "idle_interval_seconds",
        "resource_interval_seconds",
    )
    @classmethod
    def positive(cls, v: float) -> float:
        """Intervals must be positive."""
        if v <= 0:
            raise ValueError("polling intervals must be positive")
        return v


class ActivityConfig(BaseModel):
    """How long user input counts as recent activity."""

    decay_window_seconds: float = 60.0
    check_interval_seconds: float = 5.0

    @field_validator("decay_window_seconds", "check_interval_seconds")
    @classmethod
    def positive(cls, v: float) -> float:
        """Windows must be positive."""
        if v <= 0:
            raise ValueError("activity windows must be positive")
        return v


class ViewportConfig(BaseModel):
    """Distance from the bottom that still counts as 'at latest'."""

    bottom_threshold_px: int = 100


class ConversationConfig(BaseModel):
    """Message ordering and reply-gating settings."""

    ordering_bucket_seconds: float = 1.0
    reply_grace_seconds: float = 30.0


class LoggingConfig(BaseModel):
    """Client log output."""

    level: str = "warning"
    file: str | None = None

    @field_validator("level")
    @classmethod
    def known_level(cls, v: str) -> str:
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return v.lower()


class KbChatConfig(BaseModel):
    """Top-level configuration for the kbchat client."""

    api: ApiConfig = ApiConfig()
    session: SessionConfig = SessionConfig()
    polling: PollingConfig = PollingConfig()
    activity: ActivityConfig = ActivityConfig()
    viewport: ViewportConfig = ViewportConfig()
    conversation: ConversationConfig = ConversationConfig()
    logging: LoggingConfig = LoggingConfig()


def _find_config_file() -> Path | None:
    """Search for config file in standard locations.

    Returns:
        Path to config file if found, None otherwise.
    """
    candidates = [
        Path.cwd() / "kbchat.yaml",
        Path.cwd() / "kbchat.yml",
        Path.home() / ".kbchat" / "config.yaml",
        Path.home() / ".kbchat" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply KBCHAT_<SECTION>_<KEY> env var overrides to config data.

    For example, ``KBCHAT_POLLING_IDLE_INTERVAL_SECONDS`` maps to section
    ``polling``, field ``idle_interval_seconds``.

    Args:
        data: Parsed YAML config dict.

    Returns:
        Config dict with env var overrides applied.
    """
    prefix = "KBCHAT_"
    known_sections = sorted(
        KbChatConfig.model_fields.keys(), key=len, reverse=True
    )
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        suffix = key[len(prefix):].lower()
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        if matched_section not in data or data[matched_section] is None:
            data[matched_section] = {}
        if isinstance(data[matched_section], dict):
            try:
                data[matched_section][matched_field] = int(value)
            except ValueError:
                if value.lower() in ("true", "false"):
                    data[matched_section][matched_field] = value.lower() == "true"
                else:
                    data[matched_section][matched_field] = value
    return data


def load_config(config_path: str | None = None) -> KbChatConfig:
    """Load kbchat configuration from YAML file with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.kbchat/).

    Returns:
        Parsed and validated KbChatConfig. Defaults (plus env overrides)
        when no config file exists.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
    """
    raw_data: dict[str, Any] = {}
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return KbChatConfig(**data)
