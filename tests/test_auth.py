"""
Tests for SSH authentication material.

Tests cover:
- Auth configs hide secrets in repr and describe()
- Private key loading with classified errors
- SSH agent detection
- auth_to_options offers exactly the requested method

These are unit tests; nothing here needs a server.
"""
from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import asyncssh
import pytest

from nbs_tunnel.auth import (
    AgentAuth,
    PasswordAuth,
    PrivateKeyAuth,
    auth_to_options,
    describe,
    get_agent_keys,
    load_private_key,
)
from nbs_tunnel.errors import AgentError, AuthenticationError, KeyLoadError


@pytest.fixture
def key_file(tmp_path: Path) -> Path:
    path = tmp_path / "id_ed25519"
    asyncssh.generate_private_key("ssh-ed25519").write_private_key(str(path))
    return path


@pytest.fixture
def encrypted_key_file(tmp_path: Path) -> Path:
    path = tmp_path / "id_encrypted"
    asyncssh.generate_private_key("ssh-ed25519").write_private_key(str(path), passphrase="s3cret")
    return path


class TestAuthConfig:

    def test_password_repr_hides_password(self) -> None:
        auth = PasswordAuth("hunter2")
        assert "hunter2" not in repr(auth)
        assert auth.method == "password"

    def test_key_repr_hides_passphrase(self) -> None:
        auth = PrivateKeyAuth("/keys/id_rsa", passphrase="s3cret")
        assert "s3cret" not in repr(auth)
        assert "/keys/id_rsa" in repr(auth)

    def test_key_path_expands_user(self) -> None:
        auth = PrivateKeyAuth("~/.ssh/id_ed25519")
        assert auth.key_path == Path.home() / ".ssh" / "id_ed25519"

    def test_key_path_must_not_be_empty(self) -> None:
        with pytest.raises(AssertionError):
            PrivateKeyAuth("  ")

    def test_describe_excludes_secrets(self) -> None:
        assert describe(PasswordAuth("hunter2")) == {"method": "password"}
        assert describe(PrivateKeyAuth("/keys/id", passphrase="pw")) == {
            "method": "private_key",
            "key_path": "/keys/id",
            "encrypted": True,
        }
        assert describe(AgentAuth("/tmp/agent.sock")) == {
            "method": "agent",
            "agent_path": "/tmp/agent.sock",
        }
        assert describe(AgentAuth()) == {"method": "agent"}


class TestKeyLoading:

    def test_load_generated_key(self, key_file: Path) -> None:
        key = load_private_key(key_file)
        assert key.get_algorithm() == "ssh-ed25519"

    def test_load_encrypted_key(self, encrypted_key_file: Path) -> None:
        assert load_private_key(encrypted_key_file, "s3cret") is not None

    def test_wrong_passphrase(self, encrypted_key_file: Path) -> None:
        with pytest.raises(KeyLoadError) as exc_info:
            load_private_key(encrypted_key_file, "wrong")
        assert exc_info.value.reason == "wrong_passphrase"

    def test_missing_passphrase(self, encrypted_key_file: Path) -> None:
        with pytest.raises(KeyLoadError) as exc_info:
            load_private_key(encrypted_key_file)
        assert exc_info.value.reason == "wrong_passphrase"

    def test_file_not_found(self, tmp_path: Path) -> None:
        with pytest.raises(KeyLoadError) as exc_info:
            load_private_key(tmp_path / "nope")
        assert exc_info.value.reason == "file_not_found"
        assert exc_info.value.key_path == str(tmp_path / "nope")
        assert isinstance(exc_info.value, AuthenticationError)

    @pytest.mark.skipif(os.name == "nt" or os.geteuid() == 0, reason="needs POSIX permissions as non-root")
    def test_permission_denied(self, key_file: Path) -> None:
        key_file.chmod(0o000)
        try:
            with pytest.raises(KeyLoadError) as exc_info:
                load_private_key(key_file)
            assert exc_info.value.reason == "permission_denied"
        finally:
            key_file.chmod(0o600)

    def test_invalid_format(self, tmp_path: Path) -> None:
        path = tmp_path / "garbage"
        path.write_text("this is not a key\n")
        with pytest.raises(KeyLoadError) as exc_info:
            load_private_key(path)
        assert exc_info.value.reason in {"invalid_format", "import_error", "unknown"}


class TestAgent:

    @pytest.mark.asyncio
    async def test_no_auth_sock(self, monkeypatch) -> None:
        monkeypatch.delenv("SSH_AUTH_SOCK", raising=False)
        with pytest.raises(AgentError) as exc_info:
            await get_agent_keys()
        assert exc_info.value.reason == "no_auth_sock"

    @pytest.mark.asyncio
    async def test_socket_missing(self, tmp_path: Path) -> None:
        with pytest.raises(AgentError) as exc_info:
            await get_agent_keys(str(tmp_path / "agent.sock"))
        assert exc_info.value.reason == "socket_not_found"

    @pytest.mark.asyncio
    async def test_agent_keys_offered(self, tmp_path: Path) -> None:
        sock = tmp_path / "agent.sock"
        sock.touch()
        key = MagicMock()
        agent = MagicMock()
        agent.get_keys = AsyncMock(return_value=[key])
        agent.__aenter__ = AsyncMock(return_value=agent)
        agent.__aexit__ = AsyncMock(return_value=None)

        with patch("nbs_tunnel.auth.asyncssh.connect_agent", return_value=agent):
            options = await auth_to_options(AgentAuth(str(sock)))

        assert options["client_keys"] == [key]
        assert options["preferred_auth"] == ["publickey"]

    @pytest.mark.asyncio
    async def test_empty_agent(self, tmp_path: Path) -> None:
        sock = tmp_path / "agent.sock"
        sock.touch()
        agent = MagicMock()
        agent.get_keys = AsyncMock(return_value=[])
        agent.__aenter__ = AsyncMock(return_value=agent)
        agent.__aexit__ = AsyncMock(return_value=None)

        with patch("nbs_tunnel.auth.asyncssh.connect_agent", return_value=agent):
            with pytest.raises(AgentError) as exc_info:
                await get_agent_keys(str(sock))
        assert exc_info.value.reason == "no_keys"


class TestAuthToOptions:

    @pytest.mark.asyncio
    async def test_password_disables_keys(self) -> None:
        options = await auth_to_options(PasswordAuth("pw"))
        assert options["password"] == "pw"
        assert options["client_keys"] is None
        assert options["agent_path"] is None

    @pytest.mark.asyncio
    async def test_private_key_disables_password(self, key_file: Path) -> None:
        options = await auth_to_options(PrivateKeyAuth(key_file))
        assert len(options["client_keys"]) == 1
        assert options["password"] is None
        assert options["preferred_auth"] == ["publickey"]

    @pytest.mark.asyncio
    async def test_private_key_load_failure_propagates(self, tmp_path: Path) -> None:
        with pytest.raises(KeyLoadError):
            await auth_to_options(PrivateKeyAuth(tmp_path / "missing"))
