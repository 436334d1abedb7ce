"""
SSH sessions for forwarding.

Provides:
- SessionState: connecting -> ready -> closed | error
- SshSession: A ready, authenticated session handle
- SshSessionFactory: Opens sessions, walking jump host chains first
- CommandResult / InboundConnection / RemoteListener: session results

A session handle is only handed out once asyncssh reports it
authenticated. Callers that keep it must subscribe with
add_close_listener() so that a dead session can be propagated to
whatever depends on it.
"""
from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol, Sequence

import asyncssh

from nbs_tunnel.auth import AuthConfig, auth_to_options
from nbs_tunnel.errors import (
    AuthenticationError,
    BindError,
    ChainConnectionError,
    ErrorContext,
    SessionNotReady,
    SSHConnectionError,
    TunnelError,
    map_ssh_exception,
)
from nbs_tunnel.events import EventEmitter, EventType
from nbs_tunnel.settings import TunnelSettings

if TYPE_CHECKING:
    from nbs_tunnel.hosts import HostDescriptor

log = logging.getLogger(__name__)


class SessionState(str, Enum):
    """
    Session lifecycle.

    State transitions:
        CONNECTING -> READY (authenticated)
        CONNECTING -> ERROR (connect or auth failed)
        READY -> CLOSED (closed by us or cleanly by the server)
        READY -> ERROR (connection lost)
    """
    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"
    ERROR = "error"


class SessionTarget(Protocol):
    host: str
    port: int
    username: str


@dataclass
class CommandResult:
    """Result of a one-shot remote command."""
    stdout: str
    stderr: str
    exit_code: int


@dataclass
class InboundConnection:
    """A connection the server accepted on a remote listener."""
    reader: Any
    writer: Any
    orig_host: str
    orig_port: int


InboundHandler = Callable[[InboundConnection], Awaitable[None]]
CloseListener = Callable[["SshSession", "BaseException | None"], None]


class RemoteListener:
    """A listener bound on the server side of a session."""

    def __init__(self, listener: Any, bind_host: str) -> None:
        self._listener = listener
        self._bind_host = bind_host
        self._closed = False

    @property
    def port(self) -> int:
        return self._listener.get_port()

    @property
    def bind_host(self) -> str:
        return self._bind_host

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._listener.close()
        await self._listener.wait_closed()


class _SessionClient(asyncssh.SSHClient):
    """asyncssh client callbacks routed back to the owning SshSession."""

    def __init__(self, session: "SshSession") -> None:
        super().__init__()
        self._session = session

    def connection_lost(self, exc: Exception | None) -> None:
        self._session._connection_lost(exc)


class SshSession:
    """
    Handle to one authenticated SSH session.

    Exposes the three operations the forwarding engines need: outbound
    channels, remote listeners and one-shot commands. A session also owns
    the jump host sessions it was tunnelled through and closes them after
    itself.
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        emitter: EventEmitter | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._emitter = emitter
        self._state = SessionState.CONNECTING
        self._conn: asyncssh.SSHClientConnection | None = None
        self._hops: list[SshSession] = []
        self._listeners: list[CloseListener] = []
        self._closing = False
        self._error: BaseException | None = None
        self._hop_cleanup: asyncio.Task | None = None

    def __repr__(self) -> str:
        return f"SshSession({self._username}@{self._host}:{self._port}, {self._state.value})"

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == SessionState.READY

    @property
    def address(self) -> tuple[str, int]:
        return self._host, self._port

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def hops(self) -> list["SshSession"]:
        return list(self._hops)

    def client_factory(self) -> _SessionClient:
        return _SessionClient(self)

    def attach(self, conn: asyncssh.SSHClientConnection) -> None:
        """Bind the authenticated asyncssh connection; the session becomes ready."""
        assert self._state == SessionState.CONNECTING, \
            f"Cannot attach a connection in state {self._state.value}"
        self._conn = conn
        self._state = SessionState.READY

    def fail(self, exc: BaseException) -> None:
        """Mark a session that never became ready as failed."""
        self._error = exc
        self._state = SessionState.ERROR

    def adopt_hops(self, hops: Sequence["SshSession"]) -> None:
        """Take ownership of the jump host sessions this one runs over."""
        self._hops.extend(hops)

    def as_tunnel(self) -> asyncssh.SSHClientConnection:
        """Return the transport other sessions can be tunnelled through."""
        self._require_ready()
        assert self._conn is not None
        return self._conn

    def add_close_listener(self, listener: CloseListener) -> Callable[[], None]:
        """
        Register a callback for when the session closes or fails.

        The callback receives the session and the exception (None for a
        clean close). Returns a callable that unsubscribes.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _require_ready(self) -> None:
        if self._state != SessionState.READY or self._conn is None:
            raise SessionNotReady(
                f"Session to {self._host}:{self._port} is {self._state.value}",
                context=ErrorContext(host=self._host, port=self._port, username=self._username),
            )

    async def open_channel(self, dest_host: str, dest_port: int) -> tuple[Any, Any]:
        """
        Open an outbound direct-tcpip channel to dest_host:dest_port.

        Returns:
            (reader, writer) byte streams for the channel

        Raises:
            SSHConnectionError: If the server refuses the channel
        """
        self._require_ready()
        assert self._conn is not None
        try:
            reader, writer = await self._conn.open_connection(dest_host, dest_port)
        except asyncssh.ChannelOpenError as e:
            raise SSHConnectionError(
                f"Channel to {dest_host}:{dest_port} refused: {e.reason}",
                context=ErrorContext(
                    host=dest_host, port=dest_port, original_error=e.reason,
                ),
            ) from e

        if self._emitter:
            self._emitter.emit(
                EventType.CHANNEL,
                status="opened",
                via=f"{self._host}:{self._port}",
                dest_host=dest_host,
                dest_port=dest_port,
            )
        return reader, writer

    async def request_remote_listener(
        self,
        bind_host: str,
        bind_port: int,
        handler: InboundHandler,
    ) -> RemoteListener:
        """
        Ask the server to listen on bind_host:bind_port.

        Each connection the server accepts is passed to handler as an
        InboundConnection tagged with the peer's source address.

        Raises:
            BindError: If the server rejects the listen request
        """
        self._require_ready()
        assert self._conn is not None

        def handler_factory(orig_host: str, orig_port: int) -> Callable[[Any, Any], Awaitable[None]]:
            async def handle(reader: Any, writer: Any) -> None:
                await handler(InboundConnection(reader, writer, orig_host, orig_port))
            return handle

        try:
            listener = await self._conn.start_server(handler_factory, bind_host, bind_port)
        except asyncssh.ChannelListenError as e:
            raise BindError(
                f"Server refused to listen on {bind_host or '*'}:{bind_port}: {e.reason}",
                context=ErrorContext(host=self._host, port=self._port, original_error=e.reason),
            ) from e

        return RemoteListener(listener, bind_host)

    async def run_command(self, argv: Sequence[str]) -> CommandResult:
        """Run a one-shot command and collect its output."""
        self._require_ready()
        assert self._conn is not None
        assert argv, "argv must not be empty"

        result = await self._conn.run(shlex.join(argv), check=False, errors="replace")
        exit_code = result.exit_status if result.exit_status is not None else -1
        return CommandResult(
            stdout=str(result.stdout or ""),
            stderr=str(result.stderr or ""),
            exit_code=exit_code,
        )

    def _connection_lost(self, exc: BaseException | None) -> None:
        if self._state in (SessionState.CLOSED, SessionState.ERROR):
            return

        if exc is not None and not self._closing:
            self._state = SessionState.ERROR
            self._error = exc
            log.warning("Session to %s:%d lost: %s", self._host, self._port, exc)
        else:
            self._state = SessionState.CLOSED
            log.debug("Session to %s:%d closed", self._host, self._port)

        if self._emitter:
            self._emitter.emit(
                EventType.DISCONNECT,
                host=self._host,
                port=self._port,
                reason="closed" if self._state == SessionState.CLOSED else "lost",
                error=str(exc) if exc else None,
            )

        for listener in list(self._listeners):
            try:
                listener(self, exc if self._state == SessionState.ERROR else None)
            except Exception:
                log.exception("Session close listener %r failed", listener)

        if self._hops and not self._closing:
            self._hop_cleanup = asyncio.get_running_loop().create_task(self._close_hops())

    async def _close_hops(self) -> None:
        hops, self._hops = self._hops, []
        for hop in reversed(hops):
            await hop.close()

    async def close(self) -> None:
        """Close the session, then the jump host sessions under it."""
        self._closing = True
        if self._conn is not None:
            conn, self._conn = self._conn, None
            conn.close()
            await conn.wait_closed()
        if self._state in (SessionState.CONNECTING, SessionState.READY):
            self._state = SessionState.CLOSED
        if self._hop_cleanup is not None:
            await self._hop_cleanup
            self._hop_cleanup = None
        await self._close_hops()


class SshSessionFactory:
    """
    Opens authenticated sessions.

    Usage:
        factory = SshSessionFactory(settings, emitter)
        session = await factory.connect(host, auth)
        reader, writer = await session.open_channel("db.internal", 5432)
    """

    def __init__(
        self,
        settings: TunnelSettings | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        self._settings = settings or TunnelSettings()
        self._emitter = emitter

    async def open(
        self,
        target: SessionTarget,
        auth: AuthConfig,
        tunnel: Any = None,
        jump: bool = False,
    ) -> SshSession:
        """
        Open one session to target.

        Args:
            target: Host, port and username to connect to
            auth: Resolved authentication material
            tunnel: Transport to run the session over (a previous hop)
            jump: Apply the jump host timeout

        Raises:
            AuthenticationError: Credentials rejected or unusable
            SSHConnectionError: Transport-level failure
        """
        ctx = ErrorContext(
            host=target.host,
            port=target.port,
            username=target.username,
            auth_method=auth.method,
        )
        connect_data: dict[str, Any] = {
            "host": target.host,
            "port": target.port,
            "username": target.username,
            "tunnelled": tunnel is not None,
        }
        self._emit(EventType.CONNECT, status="initiating", **connect_data)

        session = SshSession(target.host, target.port, target.username, emitter=self._emitter)
        try:
            options = await auth_to_options(auth)
            options.update(self._settings.to_asyncssh_options(jump=jump))
            if tunnel is not None:
                options["tunnel"] = tunnel
            conn = await asyncssh.connect(
                host=target.host,
                port=target.port,
                username=target.username,
                client_factory=session.client_factory,
                **options,
            )
        except Exception as e:
            mapped = map_ssh_exception(e, ctx)
            session.fail(mapped)
            if isinstance(mapped, AuthenticationError):
                self._emit(
                    EventType.AUTH,
                    status="failed",
                    method=auth.method,
                    username=target.username,
                    error_type=mapped.error_type,
                    error_message=str(mapped),
                )
            self._emit(EventType.ERROR, **mapped.to_dict())
            if mapped is e:
                raise
            raise mapped from e

        session.attach(conn)
        self._emit(EventType.AUTH, status="success", method=auth.method, username=target.username)
        self._emit(EventType.CONNECT, status="connected", **connect_data)
        log.info("Session ready: %s@%s:%d", target.username, target.host, target.port)
        return session

    async def connect(self, host: "HostDescriptor", auth: AuthConfig) -> SshSession:
        """
        Open a session to host, through its jump chain when it has one.

        The returned session owns the hop sessions. If the target itself
        fails, the hop sessions are closed before the error propagates.
        """
        from nbs_tunnel.chain import JumpHostChainConnector

        if not host.jump_hosts:
            return await self.open(host, auth)

        chain = await JumpHostChainConnector(self, self._emitter).connect(
            host.jump_hosts, host.address,
        )
        try:
            session = await self.open(host, auth, tunnel=chain.tunnel)
        except TunnelError as e:
            await chain.close()
            if isinstance(e.__cause__, asyncssh.ChannelOpenError):
                last = len(host.jump_hosts) - 1
                raise ChainConnectionError(
                    f"Jump host {last + 1}/{len(host.jump_hosts)} could not forward "
                    f"to {host.host}:{host.port}: {e}",
                    hop_index=last,
                    context=ErrorContext(host=host.host, port=host.port, original_error=str(e)),
                ) from e
            raise
        except BaseException:
            await chain.close()
            raise

        session.adopt_hops(chain.sessions)
        return session

    def _emit(self, event_type: EventType, **data: Any) -> None:
        if self._emitter:
            self._emitter.emit(event_type, **data)
