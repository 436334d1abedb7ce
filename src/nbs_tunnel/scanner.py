"""
Listening port discovery, locally and over an SSH session.

Provides:
- ListeningPort: One listening TCP socket and its owning process
- parse_ss_output / parse_netstat_output / parse_netstat_windows_output /
  parse_lsof_output / parse_cmdline_output: tolerant line parsers
- PortScanner: Runs the first available listing tool and annotates results
  with the forwardings that currently own each port

Scanning is read-only and advisory. Missing tools fall through to the next
candidate and malformed lines are skipped.
"""
from __future__ import annotations

import asyncio
import logging
import platform
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Sequence

from nbs_tunnel.events import EventEmitter, EventType
from nbs_tunnel.records import ForwardingRecord, ForwardType
from nbs_tunnel.session import CommandResult

if TYPE_CHECKING:
    from nbs_tunnel.auth import AuthConfig
    from nbs_tunnel.hosts import HostDescriptor
    from nbs_tunnel.registry import ForwardingRegistry, SessionConnector
    from nbs_tunnel.session import SshSession

log = logging.getLogger(__name__)

LOCAL_COMMAND_TIMEOUT = 10.0
EXIT_COMMAND_NOT_FOUND = 127
LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})

POSIX_CANDIDATES: tuple[tuple[str, ...], ...] = (
    ("ss", "-tlnp"),
    ("netstat", "-tlnp"),
)
DARWIN_CANDIDATES: tuple[tuple[str, ...], ...] = (
    ("lsof", "-nP", "-iTCP", "-sTCP:LISTEN"),
    ("netstat", "-tlnp"),
)
WINDOWS_CANDIDATES: tuple[tuple[str, ...], ...] = (
    ("netstat", "-ano"),
)

_SS_USERS = re.compile(r'users:\(\("(?P<name>[^"]*)",pid=(?P<pid>\d+)')


@dataclass
class ListeningPort:
    """A listening TCP socket."""
    port: int
    listen_address: str
    pid: int | None = None
    process_name: str | None = None
    command_line: str | None = None
    is_forwarded: bool = False
    forwarding_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _split_address(value: str) -> tuple[str, int] | None:
    """'0.0.0.0:22', '[::]:22', ':::22', '*:80', '127.0.0.53%lo:53' -> (addr, port)"""
    host, sep, port_text = value.rpartition(":")
    if not sep or not port_text.isdigit():
        return None
    port = int(port_text)
    if not 0 < port <= 65535:
        return None
    host = host.strip("[]").split("%", 1)[0]
    if host in ("", "::"):
        host = "::" if value.startswith(("[::]", ":::")) else "*"
    return host, port


def parse_ss_output(output: str) -> list[ListeningPort]:
    """Parse `ss -tlnp`."""
    ports: list[ListeningPort] = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 5 or parts[0] != "LISTEN":
            continue
        address = _split_address(parts[3])
        if address is None:
            continue
        entry = ListeningPort(port=address[1], listen_address=address[0])
        match = _SS_USERS.search(line)
        if match:
            entry.process_name = match.group("name") or None
            entry.pid = int(match.group("pid"))
        ports.append(entry)
    return ports


def parse_netstat_output(output: str) -> list[ListeningPort]:
    """Parse Linux `netstat -tlnp`."""
    ports: list[ListeningPort] = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 6 or not parts[0].startswith("tcp") or parts[5] != "LISTEN":
            continue
        address = _split_address(parts[3])
        if address is None:
            continue
        entry = ListeningPort(port=address[1], listen_address=address[0])
        if len(parts) > 6 and "/" in parts[6]:
            pid_text, _, name = " ".join(parts[6:]).partition("/")
            if pid_text.isdigit():
                entry.pid = int(pid_text)
                entry.process_name = name.strip() or None
        ports.append(entry)
    return ports


def parse_netstat_windows_output(output: str) -> list[ListeningPort]:
    """Parse Windows `netstat -ano`; only LISTENING TCP rows count."""
    ports: list[ListeningPort] = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 5 or parts[0].upper() != "TCP" or parts[3].upper() != "LISTENING":
            continue
        address = _split_address(parts[1])
        if address is None:
            continue
        entry = ListeningPort(port=address[1], listen_address=address[0])
        if parts[4].isdigit():
            entry.pid = int(parts[4])
        ports.append(entry)
    return ports


def parse_lsof_output(output: str) -> list[ListeningPort]:
    """Parse `lsof -nP -iTCP -sTCP:LISTEN`."""
    ports: list[ListeningPort] = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 9 or parts[0] == "COMMAND" or "(LISTEN)" not in parts:
            continue
        name_index = parts.index("(LISTEN)") - 1
        address = _split_address(parts[name_index])
        if address is None or not parts[1].isdigit():
            continue
        ports.append(ListeningPort(
            port=address[1],
            listen_address=address[0],
            pid=int(parts[1]),
            process_name=parts[0],
        ))
    return ports


def parse_cmdline_output(output: str) -> dict[int, str]:
    """Parse `<pid>\\t<command line>` lines from the batch cmdline read."""
    result: dict[int, str] = {}
    for line in output.splitlines():
        pid_text, sep, command = line.partition("\t")
        if not sep or not pid_text.strip().isdigit():
            continue
        command = command.strip()
        if command:
            result[int(pid_text)] = command
    return result


_PARSERS = {
    "ss": parse_ss_output,
    "netstat": parse_netstat_output,
    "lsof": parse_lsof_output,
}


def parser_for(argv: Sequence[str]) -> Any:
    if argv[0] == "netstat" and "-ano" in argv:
        return parse_netstat_windows_output
    return _PARSERS[argv[0]]


def cmdline_script(pids: Iterable[int]) -> str:
    """Shell script printing `<pid>\\t<cmdline>` for each pid."""
    pid_list = " ".join(str(int(pid)) for pid in sorted(set(pids)))
    return (
        f"for p in {pid_list}; do "
        "if [ -r /proc/$p/cmdline ]; then "
        "printf '%s\\t' \"$p\"; tr '\\0' ' ' < /proc/$p/cmdline; echo; "
        "fi; done"
    )


async def run_local_command(argv: Sequence[str]) -> CommandResult:
    """
    Run a local command and capture its output.

    Raises:
        FileNotFoundError: If the program is not installed
    """
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), LOCAL_COMMAND_TIMEOUT)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise
    return CommandResult(
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
        exit_code=process.returncode if process.returncode is not None else -1,
    )


def _is_missing_tool(result: CommandResult) -> bool:
    return result.exit_code == EXIT_COMMAND_NOT_FOUND or "not found" in result.stderr.lower()


class PortScanner:
    """
    Lists listening ports and marks the ones owned by forwardings.

    Usage:
        scanner = PortScanner(registry, factory)
        local = await scanner.scan_local()
        remote = await scanner.scan_remote(host, auth)
    """

    def __init__(
        self,
        registry: "ForwardingRegistry",
        sessions: "SessionConnector | None" = None,
        emitter: EventEmitter | None = None,
        system: str | None = None,
    ) -> None:
        self._registry = registry
        self._sessions = sessions
        self._emitter = emitter
        self._system = system or platform.system()

    def _local_candidates(self) -> tuple[tuple[str, ...], ...]:
        if self._system == "Windows":
            return WINDOWS_CANDIDATES
        if self._system == "Darwin":
            return DARWIN_CANDIDATES
        return POSIX_CANDIDATES

    async def scan_local(self) -> list[ListeningPort]:
        """Scan this machine."""
        ports: list[ListeningPort] = []
        for argv in self._local_candidates():
            try:
                result = await run_local_command(argv)
            except FileNotFoundError:
                log.debug("%s not available locally", argv[0])
                continue
            except (OSError, asyncio.TimeoutError) as e:
                log.warning("Local scan with %s failed: %s", argv[0], e)
                continue
            parsed = parser_for(argv)(result.stdout)
            if not parsed and result.exit_code != 0:
                continue
            ports = parsed
            break
        else:
            log.warning("No local port listing tool succeeded")

        if self._system == "Linux":
            self._read_local_cmdlines(ports)

        active = [r for r in self._registry.list() if r.is_active]
        for entry in ports:
            owner = _local_owner(active, entry.port)
            if owner is not None:
                self._annotate(entry, owner)
        return self._finish(ports, scope="local")

    def _read_local_cmdlines(self, ports: list[ListeningPort]) -> None:
        for entry in ports:
            if entry.pid is None:
                continue
            try:
                raw = Path(f"/proc/{entry.pid}/cmdline").read_bytes()
            except OSError:
                continue
            command = raw.replace(b"\0", b" ").decode(errors="replace").strip()
            if command:
                entry.command_line = command

    async def scan_remote(self, host: "HostDescriptor", auth: "AuthConfig") -> list[ListeningPort]:
        """Open a session to host, scan it, close the session."""
        assert self._sessions is not None, "scan_remote() needs a session connector"
        session = await self._sessions.connect(host, auth)
        try:
            return await self.scan_session(session, host.host_id)
        finally:
            await session.close()

    async def scan_session(self, session: "SshSession", host_id: str) -> list[ListeningPort]:
        """Scan the host behind an already open session."""
        ports: list[ListeningPort] = []
        for argv in POSIX_CANDIDATES:
            result = await session.run_command(argv)
            if _is_missing_tool(result):
                log.debug("%s not available on %s", argv[0], host_id)
                continue
            parsed = parser_for(argv)(result.stdout)
            if not parsed and result.exit_code != 0:
                continue
            ports = parsed
            break
        else:
            log.warning("No port listing tool succeeded on %s", host_id)

        pids = [entry.pid for entry in ports if entry.pid is not None]
        if pids:
            result = await session.run_command(["sh", "-c", cmdline_script(pids)])
            commands = parse_cmdline_output(result.stdout)
            for entry in ports:
                if entry.pid is not None and entry.pid in commands:
                    entry.command_line = commands[entry.pid]

        active = [r for r in self._registry.list_for_host(host_id) if r.is_active]
        for entry in ports:
            owner = _remote_owner(active, entry.port)
            if owner is not None:
                self._annotate(entry, owner)
        return self._finish(ports, scope="remote", host_id=host_id)

    def _annotate(self, entry: ListeningPort, owner: ForwardingRecord) -> None:
        entry.is_forwarded = True
        entry.forwarding_id = owner.id
        process = entry.command_line or entry.process_name
        if process:
            self._registry.annotate_process(owner.id, process)

    def _finish(self, ports: list[ListeningPort], **event_data: Any) -> list[ListeningPort]:
        unique: dict[tuple[int, str], ListeningPort] = {}
        for entry in ports:
            unique.setdefault((entry.port, entry.listen_address), entry)
        result = sorted(unique.values(), key=lambda e: (e.port, e.listen_address))
        if self._emitter:
            self._emitter.emit(
                EventType.SCAN,
                count=len(result),
                forwarded=sum(1 for e in result if e.is_forwarded),
                **event_data,
            )
        return result


def _local_owner(records: list[ForwardingRecord], port: int) -> ForwardingRecord | None:
    for record in records:
        if record.forward_type in (ForwardType.LOCAL, ForwardType.DYNAMIC) and record.local_port == port:
            return record
    return None


def _remote_owner(records: list[ForwardingRecord], port: int) -> ForwardingRecord | None:
    for record in records:
        if record.remote_port != port:
            continue
        if record.forward_type == ForwardType.REMOTE:
            return record
        # A local forward only lands on the server itself through a loopback target
        if record.forward_type == ForwardType.LOCAL and record.remote_host in LOOPBACK_HOSTS:
            return record
    return None
