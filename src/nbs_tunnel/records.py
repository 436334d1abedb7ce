"""
Forwarding records: the declarative description of one forwarding.

Provides:
- ForwardType: LOCAL, REMOTE, DYNAMIC forwarding types
- ForwardStatus: INACTIVE, ACTIVE, ERROR
- ForwardOrigin: MANUAL, AUTO
- ForwardConfig: What the caller asks start() for
- ForwardingRecord: The persisted intent plus its last-known status
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from nbs_tunnel.validation import validate_hostname, validate_port

DEFAULT_LOCAL_HOST = "127.0.0.1"
DEFAULT_REMOTE_HOST = "localhost"

ReuseKey = tuple[str, "ForwardType", int, int | None]


class ForwardType(str, Enum):
    """Types of SSH port forwarding."""
    LOCAL = "local"      # Listen locally, forward to remote_host:remote_port
    REMOTE = "remote"    # Listen on the server, forward back to local_host:local_port
    DYNAMIC = "dynamic"  # SOCKS5 proxy on local_host:local_port


class ForwardStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    ERROR = "error"


class ForwardOrigin(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"


def make_reuse_key(
    host_id: str,
    forward_type: ForwardType,
    local_port: int,
    remote_port: int,
) -> ReuseKey:
    """
    Key under which at most one record may be active.

    Local forwards are additionally keyed by remote port.
    """
    return (
        host_id,
        forward_type,
        local_port,
        remote_port if forward_type == ForwardType.LOCAL else None,
    )


@dataclass(frozen=True)
class ForwardConfig:
    """
    Requested forwarding parameters.

    For LOCAL and DYNAMIC, local_host:local_port is where the listener
    binds (port 0 lets the OS choose). For REMOTE, it is where inbound
    server connections are relayed to, and remote_host:remote_port is the
    bind address requested on the server.

    Attributes:
        local_port: Local listen port, or relay target port for REMOTE
        remote_port: Remote destination (LOCAL) or remote bind port (REMOTE)
        local_host: Local bind address, or relay target host for REMOTE
        remote_host: Remote destination (LOCAL) or remote bind address (REMOTE)
        label: Free-form description
        origin: Whether the user or an automatic rule asked for this
    """
    local_port: int = 0
    remote_port: int = 0
    local_host: str = DEFAULT_LOCAL_HOST
    remote_host: str | None = None
    label: str | None = None
    origin: ForwardOrigin = ForwardOrigin.MANUAL

    def __post_init__(self) -> None:
        object.__setattr__(self, "local_port", validate_port(self.local_port, allow_zero=True))
        object.__setattr__(self, "remote_port", validate_port(self.remote_port, allow_zero=True))
        object.__setattr__(self, "local_host", validate_hostname(self.local_host))
        if self.remote_host is not None:
            object.__setattr__(
                self, "remote_host", validate_hostname(self.remote_host, allow_empty=True),
            )
        object.__setattr__(self, "origin", ForwardOrigin(self.origin))

    def check(self, forward_type: ForwardType) -> None:
        """Validate the fields a given forward type relies on."""
        if forward_type == ForwardType.LOCAL:
            assert self.remote_port > 0, "LOCAL forward requires remote_port"
        elif forward_type == ForwardType.REMOTE:
            assert self.local_port > 0, "REMOTE forward requires local_port"

    def resolved_remote_host(self, forward_type: ForwardType) -> str:
        if forward_type == ForwardType.DYNAMIC:
            return ""
        if self.remote_host is None:
            return DEFAULT_REMOTE_HOST
        return self.remote_host

    def resolved_remote_port(self, forward_type: ForwardType) -> int:
        return 0 if forward_type == ForwardType.DYNAMIC else self.remote_port


@dataclass
class ForwardingRecord:
    """
    One forwarding and its last-known status.

    Records are mutated only by the registry that owns them; everything
    handed out is a snapshot().
    """
    host_id: str
    forward_type: ForwardType
    local_port: int
    local_host: str
    remote_port: int = 0
    remote_host: str = ""
    status: ForwardStatus = ForwardStatus.INACTIVE
    error: str | None = None
    label: str | None = None
    origin: ForwardOrigin = ForwardOrigin.MANUAL
    created_at: float = field(default_factory=lambda: time.time() * 1000)
    running_process: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        assert self.host_id, "host_id must be specified"
        self.forward_type = ForwardType(self.forward_type)
        self.status = ForwardStatus(self.status)
        self.origin = ForwardOrigin(self.origin)
        if self.forward_type == ForwardType.DYNAMIC:
            assert self.remote_port == 0, \
                f"DYNAMIC forward has no remote port, got {self.remote_port}"

    @classmethod
    def from_config(
        cls,
        host_id: str,
        forward_type: ForwardType,
        config: ForwardConfig,
    ) -> "ForwardingRecord":
        return cls(
            host_id=host_id,
            forward_type=forward_type,
            local_port=config.local_port,
            local_host=config.local_host,
            remote_port=config.resolved_remote_port(forward_type),
            remote_host=config.resolved_remote_host(forward_type),
            label=config.label,
            origin=config.origin,
        )

    @property
    def is_active(self) -> bool:
        return self.status == ForwardStatus.ACTIVE

    def reuse_key(self) -> ReuseKey:
        return make_reuse_key(self.host_id, self.forward_type, self.local_port, self.remote_port)

    def apply_config(self, config: ForwardConfig) -> None:
        """Overwrite the mutable intent with a new request for the same key."""
        self.local_port = config.local_port
        self.remote_port = config.resolved_remote_port(self.forward_type)
        self.local_host = config.local_host
        self.remote_host = config.resolved_remote_host(self.forward_type)
        if config.label is not None:
            self.label = config.label
        self.origin = config.origin

    def snapshot(self) -> "ForwardingRecord":
        return replace(self)

    def describe(self) -> str:
        """Human-readable one-liner, e.g. for log messages."""
        if self.forward_type == ForwardType.LOCAL:
            return (
                f"L {self.local_host}:{self.local_port} -> "
                f"{self.remote_host}:{self.remote_port}"
            )
        if self.forward_type == ForwardType.REMOTE:
            return (
                f"R {self.remote_host or '*'}:{self.remote_port} -> "
                f"{self.local_host}:{self.local_port}"
            )
        return f"D {self.local_host}:{self.local_port} (socks5)"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "host_id": self.host_id,
            "forward_type": self.forward_type.value,
            "remote_port": self.remote_port,
            "local_port": self.local_port,
            "local_host": self.local_host,
            "remote_host": self.remote_host,
            "status": self.status.value,
            "origin": self.origin.value,
            "created_at": self.created_at,
        }
        if self.error is not None:
            result["error"] = self.error
        if self.label is not None:
            result["label"] = self.label
        if self.running_process is not None:
            result["running_process"] = self.running_process
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ForwardingRecord":
        """Rebuild a record from to_dict() output, ignoring unknown keys."""
        forward_type = ForwardType(data["forward_type"])
        return cls(
            id=str(data["id"]),
            host_id=str(data["host_id"]),
            forward_type=forward_type,
            remote_port=0 if forward_type == ForwardType.DYNAMIC else int(data.get("remote_port", 0)),
            local_port=int(data.get("local_port", 0)),
            local_host=data.get("local_host") or DEFAULT_LOCAL_HOST,
            remote_host=data.get("remote_host") or "",
            status=ForwardStatus(data.get("status", ForwardStatus.INACTIVE.value)),
            error=data.get("error"),
            label=data.get("label"),
            origin=ForwardOrigin(data.get("origin", ForwardOrigin.MANUAL.value)),
            created_at=float(data.get("created_at") or time.time() * 1000),
            running_process=data.get("running_process"),
        )
