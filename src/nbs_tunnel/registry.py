"""
Forwarding registry: the declarative record set and its live resources.

Provides:
- ForwardingRegistry: start/stop/delete/list forwardings, persist records,
  publish lifecycle events and react to session loss

Invariants kept here:
- at most one active record per reuse key; a duplicate start() returns it
- an inactive or failed record matching the key is reused, keeping its id
- a record is active only while its session and listener are alive
- persisted records are always written as inactive
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Any, Callable, Mapping, Protocol

from nbs_tunnel.errors import ErrorContext, SessionLifecycleError
from nbs_tunnel.events import (
    EventEmitter,
    EventType,
    ForwardingEvent,
    ForwardingEventKind,
    ForwardingEventStream,
    ForwardingListener,
)
from nbs_tunnel.forwarding import BoundForward, ForwardEngine, engine_for
from nbs_tunnel.records import (
    ForwardConfig,
    ForwardingRecord,
    ForwardStatus,
    ForwardType,
    ReuseKey,
    make_reuse_key,
)
from nbs_tunnel.settings import TunnelSettings
from nbs_tunnel.store import RecordStore

if TYPE_CHECKING:
    from nbs_tunnel.auth import AuthConfig
    from nbs_tunnel.hosts import HostDescriptor
    from nbs_tunnel.session import SshSession

log = logging.getLogger(__name__)


class SessionConnector(Protocol):
    async def connect(self, host: "HostDescriptor", auth: "AuthConfig") -> "SshSession": ...


@dataclass
class _Resources:
    """Live, non-persisted state of one active record."""
    session: "SshSession"
    bound: BoundForward
    unsubscribe: Callable[[], None]


class ForwardingRegistry:
    """
    Owns forwarding records and their transient resources.

    Construct one per process and pass it to whatever needs it:

        registry = ForwardingRegistry(JsonRecordStore(path), SshSessionFactory())
        registry.load()
        record = await registry.start(ForwardType.LOCAL, config, host, auth)
        ...
        await registry.close()

    start/stop/delete and session-loss handling for the same record id are
    serialised by a per-id asyncio.Lock.
    """

    def __init__(
        self,
        store: RecordStore,
        sessions: SessionConnector,
        settings: TunnelSettings | None = None,
        emitter: EventEmitter | None = None,
        engines: Mapping[ForwardType, ForwardEngine] | None = None,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._settings = settings or TunnelSettings()
        self._emitter = emitter
        self._engines: dict[ForwardType, ForwardEngine] = {
            forward_type: engine_for(forward_type) for forward_type in ForwardType
        }
        if engines:
            self._engines.update(engines)

        self._records: dict[str, ForwardingRecord] = {}
        self._index: dict[ReuseKey, str] = {}
        self._resources: dict[str, _Resources] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._events = ForwardingEventStream()
        self._lifecycle_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(self) -> list[ForwardingRecord]:
        """Snapshots of every record, oldest first."""
        records = sorted(self._records.values(), key=lambda r: r.created_at)
        return [r.snapshot() for r in records]

    def list_for_host(self, host_id: str) -> list[ForwardingRecord]:
        return [r for r in self.list() if r.host_id == host_id]

    def get(self, record_id: str) -> ForwardingRecord | None:
        record = self._records.get(record_id)
        return record.snapshot() if record else None

    def find(
        self,
        host_id: str,
        forward_type: ForwardType,
        local_port: int,
        remote_port: int = 0,
    ) -> ForwardingRecord | None:
        """Look up the record for a reuse key."""
        record = self._lookup(make_reuse_key(host_id, ForwardType(forward_type), local_port, remote_port))
        return record.snapshot() if record else None

    def annotate_process(self, record_id: str, process: str) -> bool:
        """Record the process a port scan found behind a forwarding; not persisted."""
        record = self._records.get(record_id)
        if record is None:
            return False
        record.running_process = process
        return True

    def bound_forward(self, record_id: str) -> BoundForward | None:
        """The live listener of an active record, if any."""
        resources = self._resources.get(record_id)
        return resources.bound if resources else None

    def subscribe(self, listener: ForwardingListener) -> Callable[[], None]:
        """Receive started/stopped/error/deleted events; returns an unsubscribe callable."""
        return self._events.subscribe(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        forward_type: ForwardType,
        config: ForwardConfig,
        host: "HostDescriptor",
        auth: "AuthConfig",
    ) -> ForwardingRecord:
        """
        Start a forwarding, or return the active one with the same key.

        Returns:
            Snapshot of the (now active) record

        Raises:
            AuthenticationError, ChainConnectionError, BindError,
            SSHConnectionError: The record is left in status error and
            nothing stays bound
        """
        forward_type = ForwardType(forward_type)
        config.check(forward_type)
        key = make_reuse_key(
            host.host_id, forward_type, config.local_port, config.resolved_remote_port(forward_type),
        )

        record = self._lookup(key)
        if record is not None and record.is_active:
            log.debug("Reusing active forwarding %s (%s)", record.id, record.describe())
            return record.snapshot()

        if record is None:
            record = ForwardingRecord.from_config(host.host_id, forward_type, config)
            self._records[record.id] = record
            self._index_keys(record, key)

        async with self._lock(record.id):
            if record.is_active:
                return record.snapshot()
            if record.id not in self._records:
                # Deleted while we waited for the lock
                self._records[record.id] = record
                self._index_keys(record, key)

            record.apply_config(config)
            # Ports bound by an earlier run no longer belong to this record
            self._unindex(record.id)
            self._index_keys(record, key)
            self._emit_forward(record, "establishing")
            try:
                resources = await self._bind(record, host, auth)
            except Exception as e:
                record.status = ForwardStatus.ERROR
                record.error = str(e) or type(e).__name__
                self._persist()
                self._emit_forward(record, "failed", error=record.error)
                self._publish(ForwardingEventKind.ERROR, record, record.error)
                log.warning("Forwarding %s failed to start: %s", record.describe(), record.error)
                raise

            self._resources[record.id] = resources
            if forward_type == ForwardType.REMOTE:
                record.remote_port = resources.bound.port
            else:
                record.local_port = resources.bound.port
            record.status = ForwardStatus.ACTIVE
            record.error = None
            self._index_keys(record, record.reuse_key())
            self._persist()
            self._emit_forward(record, "established", actual_port=resources.bound.port)
            self._publish(ForwardingEventKind.STARTED, record)
            log.info("Forwarding started: %s", record.describe())
            return record.snapshot()

    async def _bind(
        self,
        record: ForwardingRecord,
        host: "HostDescriptor",
        auth: "AuthConfig",
    ) -> _Resources:
        session = await self._sessions.connect(host, auth)
        try:
            bound = await self._engines[record.forward_type].bind(record, session)
        except BaseException:
            await self._close_session(session)
            raise

        unsubscribe = session.add_close_listener(partial(self._on_session_closed, record.id))
        if not session.is_ready:
            unsubscribe()
            await bound.close(drain_timeout=0)
            await self._close_session(session)
            raise SessionLifecycleError(
                "SSH session closed while the forwarding was starting",
                context=ErrorContext(record_id=record.id),
            )
        return _Resources(session=session, bound=bound, unsubscribe=unsubscribe)

    async def stop(self, record_id: str) -> ForwardingRecord | None:
        """
        Stop a forwarding; a no-op for unknown or already-inactive ids.

        The listener stops accepting at once, in-flight connections get
        settings.drain_timeout seconds, then the session is closed.
        """
        async with self._lock(record_id):
            record = self._records.get(record_id)
            if record is None:
                return None

            resources = self._resources.pop(record_id, None)
            if resources is None and record.status == ForwardStatus.INACTIVE:
                return record.snapshot()

            if resources is not None:
                await self._teardown(resources, self._settings.drain_timeout)

            record.status = ForwardStatus.INACTIVE
            record.error = None
            self._persist()
            self._emit_forward(record, "stopped")
            self._publish(ForwardingEventKind.STOPPED, record)
            log.info("Forwarding stopped: %s", record.describe())
            return record.snapshot()

    async def delete(self, record_id: str) -> bool:
        """
        Stop (if needed) and remove a record.

        Returns:
            False if no such record existed
        """
        async with self._lock(record_id):
            record = self._records.get(record_id)
            if record is None:
                return False

            resources = self._resources.pop(record_id, None)
            if resources is not None:
                await self._teardown(resources, self._settings.drain_timeout)
                record.status = ForwardStatus.INACTIVE
                record.error = None

            del self._records[record_id]
            self._unindex(record_id)
            self._persist()
            self._emit_forward(record, "deleted")
            self._publish(ForwardingEventKind.DELETED, record)
            log.info("Forwarding deleted: %s", record.describe())

        lock = self._locks.get(record_id)
        if lock is not None and not lock.locked():
            del self._locks[record_id]
        return True

    async def stop_all_for_host(self, host_id: str) -> list[ForwardingRecord]:
        """Stop every live forwarding of one host."""
        ids = [rid for rid, r in self._records.items() if r.host_id == host_id and rid in self._resources]
        return await self._stop_many(ids)

    async def stop_all(self) -> list[ForwardingRecord]:
        return await self._stop_many(list(self._resources))

    async def _stop_many(self, ids: list[str]) -> list[ForwardingRecord]:
        results = await asyncio.gather(*(self.stop(rid) for rid in ids))
        return [r for r in results if r is not None]

    async def close(self) -> None:
        """Stop everything and wait for pending session-loss handling."""
        await self.stop_all()
        if self._lifecycle_tasks:
            await asyncio.gather(*self._lifecycle_tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Session loss
    # ------------------------------------------------------------------

    def _on_session_closed(
        self,
        record_id: str,
        session: "SshSession",
        exc: BaseException | None,
    ) -> None:
        task = asyncio.get_running_loop().create_task(
            self._handle_session_loss(record_id, session, exc)
        )
        self._lifecycle_tasks.add(task)
        task.add_done_callback(self._lifecycle_tasks.discard)

    async def _handle_session_loss(
        self,
        record_id: str,
        session: "SshSession",
        exc: BaseException | None,
    ) -> None:
        async with self._lock(record_id):
            resources = self._resources.get(record_id)
            if resources is None or resources.session is not session:
                return
            del self._resources[record_id]
            await self._teardown(resources, drain_timeout=0)

            record = self._records.get(record_id)
            if record is None:
                return

            if exc is None:
                record.status = ForwardStatus.INACTIVE
                record.error = None
                kind = ForwardingEventKind.STOPPED
                log.info("Session closed under forwarding %s", record.describe())
            else:
                error = SessionLifecycleError(
                    f"SSH session lost: {exc}",
                    context=ErrorContext(record_id=record_id, original_error=str(exc)),
                )
                record.status = ForwardStatus.ERROR
                record.error = str(error)
                kind = ForwardingEventKind.ERROR
                log.warning("Session lost under forwarding %s: %s", record.describe(), exc)

            self._persist()
            self._emit_forward(record, "session_lost", error=record.error)
            self._publish(kind, record, record.error)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> list[ForwardingRecord]:
        """
        Replace the record set with the stored one, every record inactive.

        Entries that cannot be parsed are logged and skipped.
        """
        assert not self._resources, "load() while forwardings are active"

        records: dict[str, ForwardingRecord] = {}
        for item in self._store.load():
            try:
                record = ForwardingRecord.from_dict(item)
            except (KeyError, ValueError, TypeError, AssertionError) as e:
                log.warning("Skipping unreadable forwarding record %r: %s", item.get("id"), e)
                continue
            record.status = ForwardStatus.INACTIVE
            record.error = None
            records[record.id] = record

        self._records = records
        self._index = {}
        for record in records.values():
            self._index_keys(record, record.reuse_key())
        log.info("Loaded %d forwarding record(s)", len(records))
        return self.list()

    def save(self) -> None:
        """Write every record, status forced to inactive."""
        data: list[dict[str, Any]] = []
        for record in self._records.values():
            item = record.to_dict()
            item["status"] = ForwardStatus.INACTIVE.value
            data.append(item)
        self._store.save(data)

    def _persist(self) -> None:
        try:
            self.save()
        except OSError:
            log.exception("Failed to persist forwarding records")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock(self, record_id: str) -> asyncio.Lock:
        lock = self._locks.get(record_id)
        if lock is None:
            lock = self._locks[record_id] = asyncio.Lock()
        return lock

    def _lookup(self, key: ReuseKey) -> ForwardingRecord | None:
        record_id = self._index.get(key)
        if record_id is None:
            return None
        return self._records.get(record_id)

    def _index_keys(self, record: ForwardingRecord, *keys: ReuseKey) -> None:
        for key in keys:
            owner = self._records.get(self._index.get(key, ""))
            if owner is not None and owner is not record and owner.is_active and not record.is_active:
                continue
            self._index[key] = record.id

    def _unindex(self, record_id: str) -> None:
        for key in [k for k, v in self._index.items() if v == record_id]:
            del self._index[key]

    async def _teardown(self, resources: _Resources, drain_timeout: float) -> None:
        resources.unsubscribe()
        try:
            await resources.bound.close(drain_timeout=drain_timeout)
        except Exception:
            log.exception("Failed to close listener %r", resources.bound)
        await self._close_session(resources.session)

    async def _close_session(self, session: "SshSession") -> None:
        try:
            await session.close()
        except Exception:
            log.exception("Failed to close session %r", session)

    def _publish(
        self,
        kind: ForwardingEventKind,
        record: ForwardingRecord,
        error: str | None = None,
    ) -> None:
        self._events.publish(ForwardingEvent(kind=kind, record=record.snapshot(), error=error))

    def _emit_forward(self, record: ForwardingRecord, status: str, **extra: Any) -> None:
        if self._emitter is None:
            return
        self._emitter.emit(
            EventType.FORWARD,
            status=status,
            forward_id=record.id,
            host_id=record.host_id,
            forward_type=record.forward_type.value,
            local_host=record.local_host,
            local_port=record.local_port,
            remote_host=record.remote_host,
            remote_port=record.remote_port,
            **extra,
        )
