"""
Jump host chain connector.

Provides:
- JumpHostChainConnector: Opens each hop through the previous one
- ChainTransport: The last hop's transport plus the hop sessions

Each hop is an SSH session opened over the previous hop's transport
(asyncssh's tunnel= option, which opens a direct-tcpip channel to the
next address and runs SSH over it). The final transport is used to reach
the target host.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, Sequence

from nbs_tunnel.errors import ChainConnectionError, ErrorContext, TunnelError
from nbs_tunnel.events import EventEmitter, EventType

if TYPE_CHECKING:
    from nbs_tunnel.auth import AuthConfig
    from nbs_tunnel.hosts import JumpHostConfig
    from nbs_tunnel.session import SessionTarget, SshSession

log = logging.getLogger(__name__)


class SessionOpener(Protocol):
    async def open(
        self,
        target: "SessionTarget",
        auth: "AuthConfig",
        tunnel: Any = None,
        jump: bool = False,
    ) -> "SshSession": ...


@dataclass
class ChainTransport:
    """
    Result of walking a jump host chain.

    Attributes:
        tunnel: Transport of the last hop, to open the target session over
        sessions: Hop sessions, nearest-to-client first
    """
    tunnel: Any
    sessions: list["SshSession"] = field(default_factory=list)

    async def close(self) -> None:
        """Close hop sessions, furthest first."""
        await close_sessions(self.sessions)


async def close_sessions(sessions: Sequence["SshSession"]) -> None:
    for session in reversed(sessions):
        try:
            await session.close()
        except Exception:
            log.exception("Failed to close hop session %r", session)


class JumpHostChainConnector:
    """
    Connects through an ordered list of jump hosts.

    Usage:
        chain = await JumpHostChainConnector(factory).connect(hops, ("db", 22))
        session = await factory.open(target, auth, tunnel=chain.tunnel)
    """

    def __init__(self, opener: SessionOpener, emitter: EventEmitter | None = None) -> None:
        self._opener = opener
        self._emitter = emitter

    async def connect(
        self,
        hops: Sequence["JumpHostConfig"],
        target: tuple[str, int],
    ) -> ChainTransport:
        """
        Open every hop in order.

        Hop 0 is reached directly; hop i is reached through hop i-1.

        Args:
            hops: Jump hosts, nearest-to-client first
            target: Address the last hop must reach, used for logging

        Raises:
            ChainConnectionError: With hop_index of the hop that failed.
                Already-opened hops are closed before this is raised.
        """
        assert hops, "connect() requires at least one jump host"

        sessions: list[SshSession] = []
        tunnel: Any = None
        total = len(hops)

        for index, hop in enumerate(hops):
            next_host, next_port = hops[index + 1].address if index + 1 < total else target
            try:
                session = await self._opener.open(hop, hop.auth, tunnel=tunnel, jump=True)
            except (TunnelError, OSError) as e:
                await close_sessions(sessions)
                log.warning(
                    "Jump host %d/%d (%s@%s:%d) failed: %s",
                    index + 1, total, hop.username, hop.host, hop.port, e,
                )
                raise ChainConnectionError(
                    f"Jump host {index + 1}/{total} "
                    f"({hop.username}@{hop.host}:{hop.port}) failed: {e}",
                    hop_index=index,
                    context=ErrorContext(
                        host=hop.host,
                        port=hop.port,
                        username=hop.username,
                        auth_method=hop.auth.method,
                        original_error=str(e),
                    ),
                ) from e
            except BaseException:
                await close_sessions(sessions)
                raise

            sessions.append(session)
            tunnel = session.as_tunnel()
            log.info(
                "Jump host %d/%d ready: %s@%s:%d, next %s:%d",
                index + 1, total, hop.username, hop.host, hop.port, next_host, next_port,
            )
            if self._emitter:
                self._emitter.emit(
                    EventType.CONNECT,
                    status="hop_ready",
                    hop_index=index,
                    host=hop.host,
                    port=hop.port,
                    next_host=next_host,
                    next_port=next_port,
                )

        return ChainTransport(tunnel=tunnel, sessions=sessions)
