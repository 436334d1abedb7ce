"""
Pytest fixtures for nbs-tunnel tests.

Provides:
- FakeSession / FakeSessionFactory: in-memory stand-ins for SshSession that
  open real local sockets, for engine and registry tests
- FakeOpener: records hop opens for jump chain tests
- Echo server fixture (plain asyncio TCP)
- MockSSHServer fixtures for asyncssh integration tests
- Event capture fixture
"""
from __future__ import annotations

import asyncio
from typing import Any, AsyncGenerator, Awaitable, Callable

import asyncssh
import pytest

from nbs_tunnel.errors import AuthFailed, BindError, ErrorContext, SSHConnectionError
from nbs_tunnel.events import EventCollector, EventEmitter
from nbs_tunnel.hosts import HostDescriptor
from nbs_tunnel.session import CommandResult, InboundConnection, SessionState
from nbs_tunnel.testing.mock_server import MockServerConfig, MockSSHServer


class FakeRemoteListener:
    """Stands in for a server-side listener with a local asyncio server."""

    def __init__(self, server: asyncio.Server) -> None:
        self._server = server
        self.closed = False

    @property
    def port(self) -> int:
        return self._server.sockets[0].getsockname()[1]

    async def close(self) -> None:
        self.closed = True
        self._server.close()


class FakeSession:
    """
    SshSession double.

    open_channel connects straight to the destination (or to the entry in
    redirects); request_remote_listener listens on 127.0.0.1 to play the
    server side.
    """

    def __init__(
        self,
        name: str = "fake",
        redirects: dict[tuple[str, int], tuple[str, int]] | None = None,
        fail_channels: bool = False,
        reject_listen: bool = False,
        command_results: dict[tuple[str, ...], CommandResult] | None = None,
    ) -> None:
        self.name = name
        self.redirects = redirects or {}
        self.fail_channels = fail_channels
        self.reject_listen = reject_listen
        self.command_results = command_results or {}
        self.state = SessionState.READY
        self.channels: list[tuple[str, int]] = []
        self.commands: list[tuple[str, ...]] = []
        self.remote_listeners: list[FakeRemoteListener] = []
        self.close_count = 0
        self.tunnel: Any = None
        self._listeners: list[Callable[[Any, BaseException | None], None]] = []

    def __repr__(self) -> str:
        return f"FakeSession({self.name})"

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.READY

    @property
    def closed(self) -> bool:
        return self.close_count > 0

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def as_tunnel(self) -> "FakeSession":
        return self

    def add_close_listener(self, listener: Callable[[Any, BaseException | None], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def open_channel(self, dest_host: str, dest_port: int) -> tuple[Any, Any]:
        self.channels.append((dest_host, dest_port))
        if self.fail_channels or not self.is_ready:
            raise SSHConnectionError(
                f"Channel to {dest_host}:{dest_port} refused",
                context=ErrorContext(host=dest_host, port=dest_port),
            )
        host, port = self.redirects.get((dest_host, dest_port), (dest_host, dest_port))
        return await asyncio.open_connection(host, port)

    async def request_remote_listener(
        self,
        bind_host: str,
        bind_port: int,
        handler: Callable[[InboundConnection], Awaitable[None]],
    ) -> FakeRemoteListener:
        if self.reject_listen:
            raise BindError(f"Server refused to listen on {bind_host}:{bind_port}")

        async def on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            peer = writer.get_extra_info("peername")
            await handler(InboundConnection(reader, writer, peer[0], peer[1]))

        server = await asyncio.start_server(on_connect, "127.0.0.1", bind_port)
        listener = FakeRemoteListener(server)
        self.remote_listeners.append(listener)
        return listener

    async def run_command(self, argv: list[str]) -> CommandResult:
        key = tuple(argv)
        self.commands.append(key)
        if key in self.command_results:
            return self.command_results[key]
        if argv[0] == "sh":
            return CommandResult(stdout="", stderr="", exit_code=0)
        return CommandResult(stdout="", stderr=f"sh: {argv[0]}: not found", exit_code=127)

    def simulate_drop(self, exc: BaseException | None = None) -> None:
        """Behave like a session whose transport died."""
        exc = exc if exc is not None else asyncssh.ConnectionLost("Connection lost")
        self.state = SessionState.ERROR
        for listener in list(self._listeners):
            listener(self, exc)

    async def close(self) -> None:
        self.close_count += 1
        if self.state == SessionState.READY:
            self.state = SessionState.CLOSED
            for listener in list(self._listeners):
                listener(self, None)


class FakeSessionFactory:
    """SessionConnector double handing out FakeSessions."""

    def __init__(self, **session_kwargs: Any) -> None:
        self.session_kwargs = session_kwargs
        self.sessions: list[FakeSession] = []
        self.fail_with: BaseException | None = None
        self.delay = 0.0

    @property
    def last(self) -> FakeSession:
        return self.sessions[-1]

    async def connect(self, host: HostDescriptor, auth: Any) -> FakeSession:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        session = FakeSession(name=f"{host.host_id}#{len(self.sessions)}", **self.session_kwargs)
        self.sessions.append(session)
        return session


class FakeOpener:
    """SessionOpener double for jump chain tests; fails on configured hosts."""

    def __init__(self, failing_hosts: set[str] | None = None) -> None:
        self.failing_hosts = failing_hosts or set()
        self.opened: list[FakeSession] = []
        self.calls: list[tuple[str, Any, bool]] = []

    async def open(self, target: Any, auth: Any, tunnel: Any = None, jump: bool = False) -> FakeSession:
        self.calls.append((target.host, tunnel, jump))
        if target.host in self.failing_hosts:
            raise AuthFailed(f"Authentication failed for {target.host}")
        session = FakeSession(name=target.host)
        session.tunnel = tunnel
        self.opened.append(session)
        return session


async def _echo(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except ConnectionError:
        pass
    finally:
        writer.close()


@pytest.fixture
async def echo_server() -> AsyncGenerator[tuple[str, int], None]:
    """A TCP echo server on 127.0.0.1; yields (host, port)."""
    server = await asyncio.start_server(_echo, "127.0.0.1", 0)
    yield "127.0.0.1", server.sockets[0].getsockname()[1]
    server.close()


@pytest.fixture
async def closed_port() -> int:
    """A port on 127.0.0.1 with nothing listening."""
    server = await asyncio.start_server(_echo, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()
    return port


@pytest.fixture
def fake_sessions() -> FakeSessionFactory:
    return FakeSessionFactory()


@pytest.fixture
def host() -> HostDescriptor:
    return HostDescriptor(host_id="host-1", host="app.example.com", username="deploy")


@pytest.fixture
def event_collector() -> EventCollector:
    """In-memory collector for asserting diagnostic events."""
    return EventCollector()


@pytest.fixture
def emitter(event_collector: EventCollector) -> EventEmitter:
    return EventEmitter(collector=event_collector)


@pytest.fixture
async def mock_ssh_server() -> AsyncGenerator[MockSSHServer, None]:
    """
    MockSSHServer accepting test/test with forwarding enabled.

    Usage:
        async def test_example(mock_ssh_server):
            host = HostDescriptor("h", "127.0.0.1", "test", port=mock_ssh_server.port)
    """
    async with MockSSHServer(MockServerConfig(username="test", password="test")) as server:
        yield server


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> Awaitable[None]:
    """Poll predicate until true or fail the test after timeout seconds."""

    async def _wait() -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                pytest.fail("condition not reached in time")
            await asyncio.sleep(0.01)

    return _wait()
