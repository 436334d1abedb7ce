"""
Tunnel error taxonomy with structured data for JSONL logging.

Error hierarchy:
- TunnelError (base)
  - SSHConnectionError
    - ConnectionRefused
    - ConnectionTimeout
    - HostUnreachable
  - AuthenticationError
    - AuthFailed (invalid credentials)
    - HostKeyMismatch (known hosts verification failed)
    - KeyLoadError (private key file issues)
    - AgentError (SSH agent communication failed)
  - ChainConnectionError (a jump host could not be reached or used)
  - BindError (listener could not be bound, locally or remotely)
  - SocksProtocolError (malformed SOCKS5 traffic on one client connection)
  - SessionLifecycleError (session died under an active forwarding)
  - SessionNotReady (operation on a session that is not ready)
"""
from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field, fields
from typing import Any

import asyncssh


@dataclass
class ErrorContext:
    """
    Structured context for tunnel errors.

    Carries what is needed to debug the failure and to log it as JSONL.
    """
    host: str | None = None
    port: int | None = None
    username: str | None = None
    auth_method: str | None = None
    hop_index: int | None = None
    record_id: str | None = None
    original_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.port is not None:
            assert isinstance(self.port, int) and 0 <= self.port <= 65535, (
                f"Port must be between 0 and 65535, got {self.port}"
            )
        if self.hop_index is not None:
            assert self.hop_index >= 0, f"hop_index must be >= 0, got {self.hop_index}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        result: dict[str, Any] = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            if key == "extra":
                field_names = {f.name for f in fields(self)} - {"extra"}
                collisions = field_names & value.keys()
                assert not collisions, (
                    f"Extra keys collide with context field names: {collisions}"
                )
                result.update(value)
            else:
                result[key] = value
        return result


class TunnelError(Exception):
    """
    Base exception for all tunnel errors.

    All errors carry structured context for logging and debugging.
    """

    def __init__(self, message: str, context: ErrorContext | None = None) -> None:
        assert isinstance(message, str) and message.strip(), (
            f"TunnelError message must be a non-empty string, got {message!r}"
        )
        super().__init__(message)
        self.context = context or ErrorContext()

    @property
    def error_type(self) -> str:
        """Return the error type name for logging."""
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSONL logging."""
        return {
            "error_type": self.error_type,
            "message": str(self),
            **self.context.to_dict(),
        }


# ---------------------------------------------------------------------------
# Connection Errors
# ---------------------------------------------------------------------------

class SSHConnectionError(TunnelError):
    """Base class for connection-related errors."""


class ConnectionRefused(SSHConnectionError):
    """Server actively refused the connection."""


class ConnectionTimeout(SSHConnectionError):
    """Connection attempt timed out."""


class HostUnreachable(SSHConnectionError):
    """Host could not be reached (network error)."""


# ---------------------------------------------------------------------------
# Authentication Errors
# ---------------------------------------------------------------------------

class AuthenticationError(TunnelError):
    """Credentials were rejected by a hop or by the target. Never retried."""


class AuthFailed(AuthenticationError):
    """Authentication failed due to invalid credentials."""


class HostKeyMismatch(AuthenticationError):
    """Host key verification failed against known_hosts."""


class KeyLoadError(AuthenticationError):
    """
    Failed to load private key.

    Raised when the key file is missing or unreadable, its format is
    invalid, or the passphrase is wrong.
    """

    def __init__(
        self,
        message: str,
        key_path: str | None = None,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if key_path:
            context.extra["key_path"] = key_path
        if reason:
            context.extra["reason"] = reason
        super().__init__(message, context)
        self.key_path = key_path
        self.reason = reason


class AgentError(AuthenticationError):
    """SSH agent is missing, unreachable, or holds no keys."""

    def __init__(
        self,
        message: str,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if reason:
            context.extra["reason"] = reason
        super().__init__(message, context)
        self.reason = reason


# ---------------------------------------------------------------------------
# Forwarding Errors
# ---------------------------------------------------------------------------

class ChainConnectionError(TunnelError):
    """
    A hop in the jump host chain failed to connect, authenticate or forward.

    Every hop session opened before the failing one has already been
    closed when this is raised.
    """

    def __init__(
        self,
        message: str,
        hop_index: int,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        context.hop_index = hop_index
        super().__init__(message, context)
        self.hop_index = hop_index


class BindError(TunnelError):
    """A local listener could not bind, or the server rejected a remote listener."""


class SocksProtocolError(TunnelError):
    """
    Malformed SOCKS5 greeting or request on a single client connection.

    reply_code is the SOCKS5 REP value to send before closing, or None
    when no reply can meaningfully be sent.
    """

    def __init__(
        self,
        message: str,
        reply_code: int | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        super().__init__(message, context)
        self.reply_code = reply_code


class SessionLifecycleError(TunnelError):
    """The SSH session under an active forwarding closed or failed."""


class SessionNotReady(TunnelError):
    """An operation was attempted on a session that is not ready."""


def map_ssh_exception(exc: BaseException, ctx: ErrorContext) -> TunnelError:
    """Map asyncssh and socket exceptions onto the tunnel error taxonomy."""
    ctx.original_error = str(exc) or type(exc).__name__

    if isinstance(exc, TunnelError):
        return exc

    if isinstance(exc, asyncssh.PermissionDenied):
        return AuthFailed(f"Authentication failed: {exc}", context=ctx)

    if isinstance(exc, asyncssh.HostKeyNotVerifiable):
        return HostKeyMismatch(f"Host key verification failed: {exc}", context=ctx)

    if isinstance(exc, asyncssh.KeyExchangeFailed):
        return SSHConnectionError(f"Key exchange failed: {exc}", context=ctx)

    if isinstance(exc, asyncssh.ConnectionLost):
        return SSHConnectionError(f"Connection lost: {exc}", context=ctx)

    if isinstance(exc, asyncssh.ChannelOpenError):
        return SSHConnectionError(f"Channel open failed: {exc.reason}", context=ctx)

    # TimeoutError is an OSError subclass, so it must be checked first
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ConnectionTimeout(f"Connection timed out: {exc}", context=ctx)

    if isinstance(exc, OSError):
        error_str = str(exc).lower()
        if isinstance(exc, ConnectionRefusedError) or "connection refused" in error_str:
            return ConnectionRefused(f"Connection refused: {exc}", context=ctx)
        if "timed out" in error_str or "timeout" in error_str:
            return ConnectionTimeout(f"Connection timed out: {exc}", context=ctx)
        if "unreachable" in error_str or "no route" in error_str:
            return HostUnreachable(f"Host unreachable: {exc}", context=ctx)
        return SSHConnectionError(f"Connection failed: {exc}", context=ctx)

    if isinstance(exc, asyncssh.Error):
        return SSHConnectionError(f"SSH error: {exc.reason}", context=ctx)

    return TunnelError(f"Unexpected error: {exc!r}", context=ctx)
