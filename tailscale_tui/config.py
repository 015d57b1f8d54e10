import logging
import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

DEFAULT_REFRESH_INTERVAL = 3.0
DEFAULT_SETTLE_DELAY = 1.0
DEFAULT_COMMAND_TIMEOUT = 15.0
# one unprivileged attempt plus one sudo retry, with some slack
DEFAULT_CALL_DEADLINE = 2 * DEFAULT_COMMAND_TIMEOUT + 5.0

TRUTHY = {"1", "true", "yes", "on"}


class ConfigError(Exception):
    """Raised for settings problems that must stop the app before it starts."""


@dataclass(frozen=True)
class Settings:
    refresh_interval: float = DEFAULT_REFRESH_INTERVAL
    tailscale_path: str = "tailscale"
    mock: bool = False
    settle_delay: float = DEFAULT_SETTLE_DELAY
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    call_deadline: float = DEFAULT_CALL_DEADLINE
    log_file: Optional[str] = None
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        settings = cls(
            refresh_interval=_parse_seconds(
                env.get("TAILSCALE_TUI_REFRESH_INTERVAL"), DEFAULT_REFRESH_INTERVAL, "TAILSCALE_TUI_REFRESH_INTERVAL"
            ),
            tailscale_path=env.get("TAILSCALE_PATH") or "tailscale",
            mock=(env.get("TAILSCALE_TUI_MOCK") or "").strip().lower() in TRUTHY,
            log_file=env.get("TAILSCALE_TUI_LOG_FILE") or None,
            log_level=(env.get("TAILSCALE_TUI_LOG_LEVEL") or "WARNING").upper(),
        )
        settings.validate()
        return settings

    def with_overrides(self, **overrides: object) -> "Settings":
        """Apply non-None overrides (CLI flags take precedence over the environment)."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        updated = replace(self, **changes)
        updated.validate()
        return updated

    def validate(self) -> None:
        if self.refresh_interval <= 0:
            raise ConfigError("refresh interval must be positive")
        if self.settle_delay < 0:
            raise ConfigError("settle delay cannot be negative")
        if self.command_timeout <= 0 or self.call_deadline <= 0:
            raise ConfigError("timeouts must be positive")
        if not self.tailscale_path.strip():
            raise ConfigError("tailscale path is required")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ConfigError(f"unknown log level: {self.log_level}")


def _parse_seconds(value: Optional[str], default: float, name: str) -> float:
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number of seconds, got {value!r}") from None
