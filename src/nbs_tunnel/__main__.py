"""
CLI interface for nbs-tunnel.

Usage:
    python -m nbs_tunnel -L 8080:localhost:80 user@host       # Local forward
    python -m nbs_tunnel -R 9090:localhost:3000 user@host     # Remote forward
    python -m nbs_tunnel -D 1080 user@host                    # SOCKS5 proxy
    python -m nbs_tunnel -J admin@bastion -L 5432:db:5432 user@app
    python -m nbs_tunnel --scan-remote user@host              # Listening ports
    python -m nbs_tunnel --scan-local
    python -m nbs_tunnel --list                               # Stored forwardings
    python -m nbs_tunnel --help
"""
from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import os
import re
import signal
import sys
from pathlib import Path
from typing import Sequence

from nbs_tunnel.auth import AgentAuth, AuthConfig, PasswordAuth, PrivateKeyAuth
from nbs_tunnel.errors import TunnelError
from nbs_tunnel.events import EventCollector, EventEmitter
from nbs_tunnel.hosts import HostDescriptor, JumpHostConfig
from nbs_tunnel.records import ForwardConfig, ForwardType
from nbs_tunnel.registry import ForwardingRegistry
from nbs_tunnel.scanner import ListeningPort, PortScanner
from nbs_tunnel.session import SshSessionFactory
from nbs_tunnel.settings import TunnelSettings
from nbs_tunnel.store import JsonRecordStore

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

DEFAULT_KEY_NAMES = ("id_ed25519", "id_ecdsa", "id_rsa")


def parse_target(target: str, default_port: int = 22) -> tuple[str, str | None, int]:
    """
    Parse [user@]host[:port].

    Returns:
        Tuple of (host, username, port) where username may be None.
    """
    username = None
    if "@" in target:
        username, target = target.rsplit("@", 1)

    match = re.match(r"^\[([^\]]+)\](?::(\d+))?$", target)
    if match:
        host, port = match.groups()
        return host, username, int(port) if port else default_port

    if target.count(":") == 1:
        host, port = target.split(":")
        return host, username, int(port)
    return target, username, default_port


def parse_forward(spec: str) -> tuple[str | None, int, str, int]:
    """
    Parse a -L/-R specification.

    Formats:
        port:host:hostport           -> (None, port, host, hostport)
        bind_addr:port:host:hostport -> (bind_addr, port, host, hostport)
        *:port:host:hostport         -> ("", port, host, hostport)

    Raises:
        ValueError: If spec format is invalid
    """
    match = re.match(r"^\[([^\]]+)\]:(\d+):(.+):(\d+)$", spec)
    if match:
        bind_host, bind_port, dest_host, dest_port = match.groups()
        return bind_host, int(bind_port), dest_host.strip("[]"), int(dest_port)

    parts = spec.split(":")
    if len(parts) == 3:
        return None, int(parts[0]), parts[1], int(parts[2])
    if len(parts) == 4:
        bind_host = "" if parts[0] == "*" else parts[0]
        return bind_host, int(parts[1]), parts[2], int(parts[3])
    raise ValueError(
        f"Invalid forward spec: {spec!r}. Expected [bind_addr:]port:host:hostport"
    )


def parse_dynamic_forward(spec: str) -> tuple[str | None, int]:
    """
    Parse a -D specification: port, bind_addr:port or *:port.

    Raises:
        ValueError: If spec format is invalid
    """
    match = re.match(r"^\[([^\]]+)\]:(\d+)$", spec)
    if match:
        bind_host, bind_port = match.groups()
        return bind_host, int(bind_port)

    parts = spec.split(":")
    if len(parts) == 1:
        return None, int(parts[0])
    if len(parts) == 2:
        bind_host = "0.0.0.0" if parts[0] == "*" else parts[0]
        return bind_host, int(parts[1])
    raise ValueError(f"Invalid dynamic forward spec: {spec!r}. Expected [bind_addr:]port")


def build_configs(args: argparse.Namespace) -> list[tuple[ForwardType, ForwardConfig]]:
    """Turn -L/-R/-D options into start() requests."""
    configs: list[tuple[ForwardType, ForwardConfig]] = []

    for spec in args.local_forward or []:
        bind_host, bind_port, dest_host, dest_port = parse_forward(spec)
        configs.append((ForwardType.LOCAL, ForwardConfig(
            local_host="0.0.0.0" if bind_host == "" else bind_host or "127.0.0.1",
            local_port=bind_port,
            remote_host=dest_host,
            remote_port=dest_port,
            label=f"-L {spec}",
        )))

    for spec in args.remote_forward or []:
        bind_host, bind_port, dest_host, dest_port = parse_forward(spec)
        configs.append((ForwardType.REMOTE, ForwardConfig(
            remote_host="localhost" if bind_host is None else bind_host,
            remote_port=bind_port,
            local_host=dest_host,
            local_port=dest_port,
            label=f"-R {spec}",
        )))

    for spec in args.dynamic_forward or []:
        bind_host, bind_port = parse_dynamic_forward(spec)
        configs.append((ForwardType.DYNAMIC, ForwardConfig(
            local_host=bind_host or "127.0.0.1",
            local_port=bind_port,
            label=f"-D {spec}",
        )))

    return configs


def resolve_auth(args: argparse.Namespace) -> AuthConfig:
    """
    Pick the authentication method from the command line.

    Without -i/--password/--agent: the agent when SSH_AUTH_SOCK is set,
    else the first default key in ~/.ssh, else a password prompt.
    """
    if args.identity:
        return PrivateKeyAuth(args.identity)
    if args.password:
        return PasswordAuth(getpass.getpass("Password: "))
    if args.agent or os.environ.get("SSH_AUTH_SOCK"):
        return AgentAuth()

    for name in DEFAULT_KEY_NAMES:
        candidate = Path.home() / ".ssh" / name
        if candidate.exists():
            return PrivateKeyAuth(candidate)
    return PasswordAuth(getpass.getpass("Password: "))


def build_host(args: argparse.Namespace, auth: AuthConfig) -> HostDescriptor:
    """Build the target descriptor; jump hosts reuse the target's credentials."""
    host, username, port = parse_target(args.target, args.port)
    username = username or getpass.getuser()

    hops = []
    for hop_spec in (args.proxy_jump or "").split(","):
        if not hop_spec.strip():
            continue
        hop_host, hop_user, hop_port = parse_target(hop_spec.strip())
        hops.append(JumpHostConfig(
            host=hop_host,
            port=hop_port,
            username=hop_user or username,
            auth=auth,
        ))

    return HostDescriptor(
        host_id=f"{username}@{host}:{port}",
        host=host,
        port=port,
        username=username,
        jump_hosts=tuple(hops),
    )


def format_port(entry: ListeningPort) -> str:
    process = entry.process_name or "-"
    if entry.pid is not None:
        process = f"{process}[{entry.pid}]"
    forwarded = f"  forwarded:{entry.forwarding_id[:8]}" if entry.forwarding_id else ""
    command = f"  {entry.command_line}" if entry.command_line else ""
    return f"{entry.listen_address}:{entry.port}  {process}{forwarded}{command}"


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the nbs-tunnel CLI."""
    parser = argparse.ArgumentParser(
        prog="nbs-tunnel",
        description="SSH tunnels and port forwarding over jump host chains",
        epilog="Example: python -m nbs_tunnel -L 8080:localhost:80 user@host",
    )

    parser.add_argument(
        "target",
        nargs="?",
        metavar="[user@]host[:port]",
        help="Target host (optionally with username and port)",
    )

    parser.add_argument(
        "-p", "--port",
        type=int,
        default=22,
        help="SSH port (default: 22)",
    )

    parser.add_argument(
        "-i", "--identity",
        metavar="FILE",
        help="Private key file for authentication",
    )

    parser.add_argument(
        "--password",
        action="store_true",
        help="Prompt for password authentication",
    )

    parser.add_argument(
        "--agent",
        action="store_true",
        help="Authenticate with the SSH agent",
    )

    parser.add_argument(
        "-J", "--proxy-jump",
        metavar="HOSTS",
        help="Jump hosts, comma-separated and nearest first: user@host[:port],...",
    )

    parser.add_argument(
        "-L", "--local-forward",
        action="append",
        metavar="SPEC",
        help="Local port forward: [bind_addr:]port:host:hostport",
    )

    parser.add_argument(
        "-R", "--remote-forward",
        action="append",
        metavar="SPEC",
        help="Remote port forward: [bind_addr:]port:host:hostport",
    )

    parser.add_argument(
        "-D", "--dynamic-forward",
        action="append",
        metavar="SPEC",
        help="SOCKS5 proxy: [bind_addr:]port",
    )

    parser.add_argument(
        "--scan-remote",
        action="store_true",
        help="List listening ports on the target and exit",
    )

    parser.add_argument(
        "--scan-local",
        action="store_true",
        help="List listening ports on this machine and exit",
    )

    parser.add_argument(
        "--list",
        action="store_true",
        help="List stored forwardings and exit",
    )

    parser.add_argument(
        "--store",
        metavar="FILE",
        help="Forwarding record file (default: ~/.config/nbs-tunnel/forwardings.json)",
    )

    parser.add_argument(
        "--events",
        action="store_true",
        help="Print JSONL events to stderr on exit",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug, -vvv asyncssh debug)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Only log errors",
    )

    return parser


def configure_logging(verbose: int, quiet: bool) -> None:
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)
    logging.getLogger("asyncssh").setLevel(
        logging.DEBUG if verbose >= 3 else logging.WARNING if not quiet else logging.ERROR
    )


async def wait_for_shutdown() -> None:
    """Block until SIGINT or SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass
    await stop_event.wait()


async def run_tunnel(args: argparse.Namespace) -> int:
    """
    Run the requested action.

    Returns:
        Process exit code
    """
    settings = TunnelSettings.from_env()
    if args.store:
        settings.store_path = Path(args.store).expanduser()

    collector = EventCollector() if args.events else None
    emitter = EventEmitter(collector=collector, jsonl_path=settings.event_log_path)
    factory = SshSessionFactory(settings, emitter)
    registry = ForwardingRegistry(JsonRecordStore(settings.store_path), factory, settings, emitter)
    scanner = PortScanner(registry, factory, emitter)

    try:
        registry.load()

        if args.list:
            for record in registry.list():
                label = f"  ({record.label})" if record.label else ""
                print(f"{record.id}  {record.host_id}  {record.describe()}{label}")
            return 0

        if args.scan_local:
            for entry in await scanner.scan_local():
                print(format_port(entry))
            return 0

        if not args.target:
            print("Error: a target host is required", file=sys.stderr)
            return 2

        configs = build_configs(args)
        auth = resolve_auth(args)
        host = build_host(args, auth)

        if args.scan_remote:
            for entry in await scanner.scan_remote(host, auth):
                print(format_port(entry))
            return 0

        if not configs:
            print("Error: nothing to do, give at least one of -L, -R or -D", file=sys.stderr)
            return 2

        try:
            for forward_type, config in configs:
                record = await registry.start(forward_type, config, host, auth)
                print(record.describe())
            if not args.quiet:
                print("Forwarding active. Press Ctrl+C to exit.", file=sys.stderr)
            await wait_for_shutdown()
        finally:
            await registry.close()
        return 0

    except (TunnelError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    finally:
        emitter.close()
        if collector is not None:
            for event in collector.events:
                print(event.to_json(), file=sys.stderr)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    return asyncio.run(run_tunnel(args))


if __name__ == "__main__":
    sys.exit(main())
