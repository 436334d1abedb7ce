"""
Runtime settings for the tunnel engine.

Provides:
- TunnelSettings: timeouts, keepalive, drain and storage locations

Settings can be built directly, or from NBS_TUNNEL_* environment
variables with TunnelSettings.from_env().
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

ENV_PREFIX = "NBS_TUNNEL_"


def default_store_path() -> Path:
    """Location of the persisted forwarding records."""
    config_home = os.environ.get("XDG_CONFIG_HOME")
    base = Path(config_home) if config_home else Path.home() / ".config"
    return base / "nbs-tunnel" / "forwardings.json"


@dataclass
class TunnelSettings:
    """
    Engine-wide settings.

    Attributes:
        connect_timeout: Seconds allowed for the target session to become ready
        jump_connect_timeout: Seconds allowed for each jump host session
        keepalive_interval: Seconds between SSH keepalive requests
        keepalive_count_max: Missed keepalives before the session is dropped
        drain_timeout: Seconds stop() waits for in-flight connections
        known_hosts: known_hosts file for host key checks (None disables checks)
        store_path: JSON file holding forwarding records
        event_log_path: Optional JSONL file for diagnostic events
    """
    connect_timeout: float = 10.0
    jump_connect_timeout: float = 30.0
    keepalive_interval: float = 10.0
    keepalive_count_max: int = 3
    drain_timeout: float = 3.0
    known_hosts: Path | str | None = None
    store_path: Path = field(default_factory=default_store_path)
    event_log_path: Path | None = None

    def __post_init__(self) -> None:
        assert self.connect_timeout > 0, \
            f"connect_timeout must be positive, got {self.connect_timeout}"
        assert self.jump_connect_timeout > 0, \
            f"jump_connect_timeout must be positive, got {self.jump_connect_timeout}"
        assert self.keepalive_interval > 0, \
            f"keepalive_interval must be positive, got {self.keepalive_interval}"
        assert self.keepalive_count_max > 0, \
            f"keepalive_count_max must be positive, got {self.keepalive_count_max}"
        assert self.drain_timeout >= 0, \
            f"drain_timeout must be >= 0, got {self.drain_timeout}"

        self.store_path = Path(self.store_path).expanduser()
        if self.event_log_path is not None:
            self.event_log_path = Path(self.event_log_path).expanduser()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "TunnelSettings":
        """
        Build settings from NBS_TUNNEL_* environment variables.

        Recognised: CONNECT_TIMEOUT, JUMP_CONNECT_TIMEOUT, KEEPALIVE_INTERVAL,
        KEEPALIVE_COUNT_MAX, DRAIN_TIMEOUT, KNOWN_HOSTS, STORE, EVENT_LOG.
        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        kwargs: dict[str, Any] = {}

        floats = {
            "CONNECT_TIMEOUT": "connect_timeout",
            "JUMP_CONNECT_TIMEOUT": "jump_connect_timeout",
            "KEEPALIVE_INTERVAL": "keepalive_interval",
            "DRAIN_TIMEOUT": "drain_timeout",
        }
        for suffix, name in floats.items():
            value = env.get(ENV_PREFIX + suffix)
            if value:
                try:
                    kwargs[name] = float(value)
                except ValueError as e:
                    raise ValueError(f"{ENV_PREFIX}{suffix} must be a number, got {value!r}") from e

        count = env.get(ENV_PREFIX + "KEEPALIVE_COUNT_MAX")
        if count:
            try:
                kwargs["keepalive_count_max"] = int(count)
            except ValueError as e:
                raise ValueError(
                    f"{ENV_PREFIX}KEEPALIVE_COUNT_MAX must be an integer, got {count!r}"
                ) from e

        if env.get(ENV_PREFIX + "KNOWN_HOSTS"):
            kwargs["known_hosts"] = Path(env[ENV_PREFIX + "KNOWN_HOSTS"]).expanduser()
        if env.get(ENV_PREFIX + "STORE"):
            kwargs["store_path"] = Path(env[ENV_PREFIX + "STORE"])
        if env.get(ENV_PREFIX + "EVENT_LOG"):
            kwargs["event_log_path"] = Path(env[ENV_PREFIX + "EVENT_LOG"])

        return cls(**kwargs)

    def to_asyncssh_options(self, jump: bool = False) -> dict[str, Any]:
        """
        Convert to asyncssh connection options.

        Args:
            jump: Use the jump host connect timeout instead of the target one
        """
        options: dict[str, Any] = {
            "connect_timeout": self.jump_connect_timeout if jump else self.connect_timeout,
            "keepalive_interval": self.keepalive_interval,
            "keepalive_count_max": self.keepalive_count_max,
        }
        options["known_hosts"] = None if self.known_hosts is None else str(self.known_hosts)
        return options
