"""
Resolved host descriptors.

Provides:
- JumpHostConfig: One intermediate hop with its own credentials
- HostDescriptor: A target host plus the ordered jump chain to reach it

Jump hosts are ordered nearest-to-client first.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from nbs_tunnel.auth import AuthConfig, describe
from nbs_tunnel.validation import validate_hostname, validate_port, validate_username


@dataclass(frozen=True)
class JumpHostConfig:
    """One hop of a jump host chain."""
    host: str
    username: str
    auth: AuthConfig
    port: int = 22

    def __post_init__(self) -> None:
        object.__setattr__(self, "host", validate_hostname(self.host))
        object.__setattr__(self, "port", validate_port(self.port))
        object.__setattr__(self, "username", validate_username(self.username))

    @property
    def address(self) -> tuple[str, int]:
        return self.host, self.port

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "auth": describe(self.auth),
        }


@dataclass(frozen=True)
class HostDescriptor:
    """
    A target SSH host.

    Attributes:
        host_id: Stable identifier owned by the surrounding application
        host: Hostname or IP of the target
        username: Login name on the target
        port: SSH port of the target
        jump_hosts: Hops to traverse, nearest-to-client first
    """
    host_id: str
    host: str
    username: str
    port: int = 22
    jump_hosts: tuple[JumpHostConfig, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        assert self.host_id, "host_id must be specified"
        object.__setattr__(self, "host", validate_hostname(self.host))
        object.__setattr__(self, "port", validate_port(self.port))
        object.__setattr__(self, "username", validate_username(self.username))
        object.__setattr__(self, "jump_hosts", tuple(self.jump_hosts))

    @property
    def address(self) -> tuple[str, int]:
        return self.host, self.port

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "host_id": self.host_id,
            "host": self.host,
            "port": self.port,
            "username": self.username,
        }
        if self.jump_hosts:
            result["jump_hosts"] = [hop.to_dict() for hop in self.jump_hosts]
        return result
