"""
SSH authentication material.

Provides:
- PasswordAuth, PrivateKeyAuth, AgentAuth: the resolved credential kinds
- AuthConfig: their union, handled exhaustively by auth_to_options()
- load_private_key / get_agent_keys helpers with classified errors

Credentials arrive here already resolved; prompting and storage belong to
the surrounding application.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union, assert_never

import asyncssh

from nbs_tunnel.errors import AgentError, KeyLoadError


def expand_path(path: Path | str) -> Path:
    """Expand ~ and environment variables in a path."""
    return Path(os.path.expandvars(os.path.expanduser(str(path))))


@dataclass(frozen=True)
class PasswordAuth:
    """Password authentication."""
    password: str

    method = "password"

    def __post_init__(self) -> None:
        assert isinstance(self.password, str), "password must be a string"

    def __repr__(self) -> str:
        return "PasswordAuth(password=***)"


@dataclass(frozen=True)
class PrivateKeyAuth:
    """Private key authentication with an optional passphrase."""
    key_path: Path | str
    passphrase: str | None = None

    method = "private_key"

    def __post_init__(self) -> None:
        assert str(self.key_path).strip(), "key_path must not be empty"
        object.__setattr__(self, "key_path", expand_path(self.key_path))

    def __repr__(self) -> str:
        hidden = "***" if self.passphrase else None
        return f"PrivateKeyAuth(key_path={str(self.key_path)!r}, passphrase={hidden})"


@dataclass(frozen=True)
class AgentAuth:
    """
    SSH agent authentication.

    agent_path names the agent socket; None means SSH_AUTH_SOCK.
    """
    agent_path: str | None = None

    method = "agent"


AuthConfig = Union[PasswordAuth, PrivateKeyAuth, AgentAuth]


def describe(auth: AuthConfig) -> dict[str, Any]:
    """Secret-free description of an auth config for logging."""
    result: dict[str, Any] = {"method": auth.method}
    if isinstance(auth, PrivateKeyAuth):
        result["key_path"] = str(auth.key_path)
        result["encrypted"] = auth.passphrase is not None
    elif isinstance(auth, AgentAuth) and auth.agent_path:
        result["agent_path"] = auth.agent_path
    return result


def load_private_key(
    key_path: Path | str,
    passphrase: str | None = None,
) -> asyncssh.SSHKey:
    """
    Load a private key from file.

    Raises:
        KeyLoadError: If the key cannot be loaded (file not found, bad
            format, wrong passphrase)
    """
    key_path = expand_path(key_path)

    if not key_path.exists():
        raise KeyLoadError(
            f"Private key file not found: {key_path}",
            key_path=str(key_path),
            reason="file_not_found",
        )

    if not os.access(key_path, os.R_OK):
        raise KeyLoadError(
            f"Private key file not readable: {key_path}",
            key_path=str(key_path),
            reason="permission_denied",
        )

    try:
        return asyncssh.read_private_key(str(key_path), passphrase=passphrase)
    except asyncssh.KeyEncryptionError as e:
        raise KeyLoadError(
            f"Failed to decrypt private key {key_path}: {e}",
            key_path=str(key_path),
            reason="wrong_passphrase",
        ) from e
    except asyncssh.KeyImportError as e:
        error_msg = str(e).lower()
        if "passphrase" in error_msg or "decrypt" in error_msg:
            reason = "wrong_passphrase"
        elif "format" in error_msg or "invalid" in error_msg:
            reason = "invalid_format"
        else:
            reason = "import_error"

        raise KeyLoadError(
            f"Failed to load private key {key_path}: {e}",
            key_path=str(key_path),
            reason=reason,
        ) from e
    except (OSError, ValueError) as e:
        raise KeyLoadError(
            f"Unexpected error loading private key {key_path}: {e}",
            key_path=str(key_path),
            reason="unknown",
        ) from e


async def get_agent_keys(agent_path: str | None = None) -> list[asyncssh.SSHKey]:
    """
    Get keys from an SSH agent.

    Raises:
        AgentError: If the agent is unavailable, unreachable or empty
    """
    sock_path = agent_path or os.environ.get("SSH_AUTH_SOCK")
    if not sock_path:
        raise AgentError(
            "SSH agent not available: SSH_AUTH_SOCK not set",
            reason="no_auth_sock",
        )

    if not sock_path.startswith("\\\\") and not Path(sock_path).exists():
        raise AgentError(
            f"SSH agent socket not found: {sock_path}",
            reason="socket_not_found",
        )

    try:
        async with asyncssh.connect_agent(sock_path) as agent:
            keys = list(await agent.get_keys())
    except (OSError, asyncssh.Error) as e:
        raise AgentError(
            f"SSH agent communication failed: {e}",
            reason="communication_error",
        ) from e

    if not keys:
        raise AgentError("No keys available from SSH agent", reason="no_keys")
    return keys


async def auth_to_options(auth: AuthConfig) -> dict[str, Any]:
    """
    Resolve an auth config into asyncssh connect options.

    Each branch disables the other methods so that exactly the requested
    credential is offered to the server.
    """
    if isinstance(auth, PasswordAuth):
        return {
            "password": auth.password,
            "client_keys": None,
            "agent_path": None,
            "preferred_auth": ["password", "keyboard-interactive"],
        }
    elif isinstance(auth, PrivateKeyAuth):
        key = load_private_key(auth.key_path, auth.passphrase)
        return {
            "client_keys": [key],
            "password": None,
            "agent_path": None,
            "preferred_auth": ["publickey"],
        }
    elif isinstance(auth, AgentAuth):
        keys = await get_agent_keys(auth.agent_path)
        return {
            "client_keys": keys,
            "password": None,
            "agent_path": None,
            "preferred_auth": ["publickey"],
        }
    else:
        assert_never(auth)
