"""Relay settings: defaults, ``.relay/config.json``, env overrides."""

from dataclasses import dataclass, field, fields
import json
import os
from pathlib import Path

import structlog

from agent_relay.dispatcher import DEFAULT_MAX_TRACKED
from agent_relay.prompts import DEFAULT_MAX_CONTEXT_LENGTH
from agent_relay.session import DEFAULT_ALLOWED_TOOLS

logger = structlog.get_logger(__name__)

CONFIG_DIR = ".relay"
CONFIG_FILE = "config.json"

MESSAGE_TIMEOUT = 300.0
VERSION_CHECK_TIMEOUT = 10.0
EXIT_GRACE_SECONDS = 5.0


class ConfigError(ValueError):
    """Raised when the config file cannot be used."""


@dataclass
class RelayConfig:
    binary: str = "claude"
    system_prompt: str = ""
    auto_approve_read_only: bool = True
    remember_approved_tools: bool = True
    extra_allowed_tools: list[str] = field(default_factory=list)
    message_timeout: float = MESSAGE_TIMEOUT
    version_timeout: float = VERSION_CHECK_TIMEOUT
    exit_grace_seconds: float = EXIT_GRACE_SECONDS
    max_context_length: int = DEFAULT_MAX_CONTEXT_LENGTH
    max_tracked_ids: int = DEFAULT_MAX_TRACKED

    def default_tools(self) -> tuple[str, ...]:
        """Tools allowed at the start of every conversation."""
        base = DEFAULT_ALLOWED_TOOLS if self.auto_approve_read_only else ()
        extra = tuple(t for t in self.extra_allowed_tools if t not in base)
        return base + extra


def config_path(cwd: str | None = None) -> Path:
    return Path(cwd or ".") / CONFIG_DIR / CONFIG_FILE


def load_config(cwd: str | None = None) -> RelayConfig:
    """Defaults, then ``.relay/config.json`` if present, then env vars.

    RELAY_BINARY and RELAY_SYSTEM_PROMPT override the file.
    """
    config = RelayConfig()
    path = config_path(cwd)
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Cannot read {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a JSON object")
        config = apply_settings(config, data)

    binary = os.environ.get("RELAY_BINARY", "")
    if binary:
        config.binary = binary
    system_prompt = os.environ.get("RELAY_SYSTEM_PROMPT")
    if system_prompt is not None:
        config.system_prompt = system_prompt
    return config


def apply_settings(config: RelayConfig, data: dict) -> RelayConfig:
    """Copy known keys from ``data`` onto ``config``, checking their types."""
    known = {f.name: f for f in fields(RelayConfig)}
    defaults = RelayConfig()
    for key, value in data.items():
        if key not in known:
            logger.warning("unknown_config_key", key=key)
            continue
        expected = type(getattr(defaults, key))
        if expected is float and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        if not isinstance(value, expected) or (expected is not bool and isinstance(value, bool)):
            raise ConfigError(
                f"Config key {key!r} must be {expected.__name__}, got {type(value).__name__}"
            )
        if key == "extra_allowed_tools" and not all(isinstance(t, str) for t in value):
            raise ConfigError("Config key 'extra_allowed_tools' must be a list of strings")
        setattr(config, key, value)
    return config
