"""
Forwarding engines: turn a record plus a ready session into live sockets.

Provides:
- BoundForward: Handle to a bound listener with drain-aware close()
- LocalForwardEngine: -L, local listener -> channel to remote_host:remote_port
- RemoteForwardEngine: -R, server listener -> local_host:local_port
- DynamicForwardEngine: -D, local SOCKS5 listener -> per-connection channel
- engine_for: Engine lookup by ForwardType

Engines never touch the record's status; the registry does. Every
accepted connection runs as its own task, and its failure only closes
that one connection.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol

import asyncssh

from nbs_tunnel.errors import BindError, ErrorContext, SocksProtocolError, TunnelError
from nbs_tunnel.records import ForwardingRecord, ForwardType
from nbs_tunnel.socks import (
    GREETING_REPLY,
    REPLY_GENERAL_FAILURE,
    REPLY_SUCCEEDED,
    build_reply,
    read_connect_request,
    read_greeting,
)
from nbs_tunnel.splice import DEFAULT_DRAIN_TIMEOUT, ConnectionTracker, splice

if TYPE_CHECKING:
    from nbs_tunnel.session import InboundConnection, RemoteListener, SshSession

log = logging.getLogger(__name__)

# Exceptions that end a single relayed connection
CONNECTION_ERRORS = (TunnelError, OSError, asyncssh.Error)

SERVER_CLOSE_TIMEOUT = 1.0


class BoundForward:
    """
    A bound listener and the connections it has accepted.

    close() stops accepting first, then gives in-flight connections up to
    drain_timeout seconds before cancelling them. It never raises on a
    drain timeout.
    """

    def __init__(self, name: str, port: int, tracker: ConnectionTracker) -> None:
        self.name = name
        self._port = port
        self._tracker = tracker
        self._closed = False

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name}, port={self._port})"

    @property
    def port(self) -> int:
        return self._port

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def active_connections(self) -> int:
        return len(self._tracker)

    async def close(self, drain_timeout: float = DEFAULT_DRAIN_TIMEOUT) -> None:
        if self._closed:
            return
        self._closed = True
        await self._stop_accepting()
        await self._tracker.drain(drain_timeout)
        await self._finish()
        log.debug("%s closed", self.name)

    async def _stop_accepting(self) -> None:
        raise NotImplementedError

    async def _finish(self) -> None:
        pass


class ServerForward(BoundForward):
    """Local asyncio listener (LOCAL and DYNAMIC)."""

    def __init__(self, name: str, server: asyncio.Server, tracker: ConnectionTracker) -> None:
        super().__init__(name, server.sockets[0].getsockname()[1], tracker)
        self._server = server

    @property
    def is_serving(self) -> bool:
        return self._server.is_serving()

    async def _stop_accepting(self) -> None:
        self._server.close()

    async def _finish(self) -> None:
        # Newer Pythons make wait_closed() wait for every accepted transport
        try:
            await asyncio.wait_for(self._server.wait_closed(), SERVER_CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            log.debug("%s: server did not report closed in time", self.name)


class RemoteListenerForward(BoundForward):
    """Server-side listener (REMOTE)."""

    def __init__(self, name: str, listener: "RemoteListener", tracker: ConnectionTracker) -> None:
        super().__init__(name, listener.port, tracker)
        self._listener = listener

    async def _stop_accepting(self) -> None:
        try:
            await self._listener.close()
        except CONNECTION_ERRORS as e:
            log.debug("%s: remote listener close failed: %s", self.name, e)


class ForwardEngine(Protocol):
    forward_type: ForwardType

    async def bind(self, record: ForwardingRecord, session: "SshSession") -> BoundForward: ...


async def _start_local_server(record: ForwardingRecord, callback: Any) -> asyncio.Server:
    try:
        return await asyncio.start_server(callback, record.local_host, record.local_port)
    except OSError as e:
        raise BindError(
            f"Cannot listen on {record.local_host}:{record.local_port}: {e.strerror or e}",
            context=ErrorContext(
                host=record.local_host,
                port=record.local_port,
                record_id=record.id,
                original_error=str(e),
            ),
        ) from e


def _peer(writer: Any) -> str:
    peer = writer.get_extra_info("peername")
    if isinstance(peer, tuple) and len(peer) >= 2:
        return f"{peer[0]}:{peer[1]}"
    return "unknown"


class LocalForwardEngine:
    """Listen locally; tunnel each connection to a fixed remote destination."""

    forward_type = ForwardType.LOCAL

    async def bind(self, record: ForwardingRecord, session: "SshSession") -> BoundForward:
        name = f"local:{record.id[:8]}"
        tracker = ConnectionTracker(name)
        dest_host, dest_port = record.remote_host, record.remote_port

        def accept(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            tracker.spawn(self._handle(name, session, reader, writer, dest_host, dest_port))

        server = await _start_local_server(record, accept)
        bound = ServerForward(name, server, tracker)
        log.info("%s listening on %s:%d -> %s:%d",
                 name, record.local_host, bound.port, dest_host, dest_port)
        return bound

    async def _handle(
        self,
        name: str,
        session: "SshSession",
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        dest_host: str,
        dest_port: int,
    ) -> None:
        peer = _peer(writer)
        try:
            chan_reader, chan_writer = await session.open_channel(dest_host, dest_port)
        except CONNECTION_ERRORS as e:
            log.warning("%s: channel to %s:%d for %s failed: %s",
                        name, dest_host, dest_port, peer, e)
            writer.close()
            return

        sent, received = await splice(reader, writer, chan_reader, chan_writer)
        log.debug("%s: %s done (%d bytes out, %d bytes in)", name, peer, sent, received)


class RemoteForwardEngine:
    """Ask the server to listen; relay each inbound connection to a local service."""

    forward_type = ForwardType.REMOTE

    async def bind(self, record: ForwardingRecord, session: "SshSession") -> BoundForward:
        name = f"remote:{record.id[:8]}"
        tracker = ConnectionTracker(name)
        target_host, target_port = record.local_host, record.local_port

        async def on_inbound(conn: "InboundConnection") -> None:
            await tracker.run(self._relay(name, conn, target_host, target_port))

        listener = await session.request_remote_listener(
            record.remote_host, record.remote_port, on_inbound,
        )
        bound = RemoteListenerForward(name, listener, tracker)
        log.info("%s server listening on %s:%d -> %s:%d",
                 name, record.remote_host or "*", bound.port, target_host, target_port)
        return bound

    async def _relay(
        self,
        name: str,
        conn: "InboundConnection",
        target_host: str,
        target_port: int,
    ) -> None:
        source = f"{conn.orig_host}:{conn.orig_port}"
        try:
            local_reader, local_writer = await asyncio.open_connection(target_host, target_port)
        except OSError as e:
            log.warning("%s: connect to %s:%d for %s failed: %s",
                        name, target_host, target_port, source, e)
            conn.writer.close()
            return

        sent, received = await splice(conn.reader, conn.writer, local_reader, local_writer)
        log.debug("%s: %s done (%d bytes in, %d bytes out)", name, source, sent, received)


class DynamicForwardEngine:
    """Local SOCKS5 proxy; the client picks each destination."""

    forward_type = ForwardType.DYNAMIC

    async def bind(self, record: ForwardingRecord, session: "SshSession") -> BoundForward:
        name = f"dynamic:{record.id[:8]}"
        tracker = ConnectionTracker(name)

        def accept(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            tracker.spawn(self._handle(name, session, reader, writer))

        server = await _start_local_server(record, accept)
        bound = ServerForward(name, server, tracker)
        log.info("%s SOCKS5 listening on %s:%d", name, record.local_host, bound.port)
        return bound

    async def _handle(
        self,
        name: str,
        session: "SshSession",
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        peer = _peer(writer)
        try:
            await read_greeting(reader)
            writer.write(GREETING_REPLY)
            await writer.drain()
            request = await read_connect_request(reader)
        except SocksProtocolError as e:
            log.info("%s: rejecting %s: %s", name, peer, e)
            await _reply_and_close(writer, e.reply_code)
            return
        except OSError as e:
            log.debug("%s: %s went away during handshake: %s", name, peer, e)
            writer.close()
            return

        try:
            chan_reader, chan_writer = await session.open_channel(request.host, request.port)
        except CONNECTION_ERRORS as e:
            log.warning("%s: channel to %s:%d for %s failed: %s",
                        name, request.host, request.port, peer, e)
            await _reply_and_close(writer, REPLY_GENERAL_FAILURE)
            return

        try:
            writer.write(build_reply(REPLY_SUCCEEDED))
            await writer.drain()
        except OSError as e:
            log.debug("%s: %s went away before success reply: %s", name, peer, e)
            chan_writer.close()
            writer.close()
            return

        sent, received = await splice(reader, writer, chan_reader, chan_writer)
        log.debug("%s: %s -> %s:%d done (%d bytes out, %d bytes in)",
                  name, peer, request.host, request.port, sent, received)


async def _reply_and_close(writer: asyncio.StreamWriter, reply_code: int | None) -> None:
    try:
        if reply_code is not None:
            writer.write(build_reply(reply_code))
            await writer.drain()
    except OSError as e:
        log.debug("Could not send SOCKS5 reply: %s", e)
    finally:
        writer.close()


_ENGINES: dict[ForwardType, type] = {
    ForwardType.LOCAL: LocalForwardEngine,
    ForwardType.REMOTE: RemoteForwardEngine,
    ForwardType.DYNAMIC: DynamicForwardEngine,
}


def engine_for(forward_type: ForwardType) -> ForwardEngine:
    """Return a fresh engine for forward_type."""
    return _ENGINES[ForwardType(forward_type)]()
