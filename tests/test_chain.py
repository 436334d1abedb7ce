"""
Tests for JumpHostChainConnector and chained sessions.

Tests:
- Each hop is opened over the previous hop's transport
- A failing hop closes already-opened hops and reports its index
- Chained sessions through a real asyncssh server
"""
from __future__ import annotations

import asyncio

import pytest

from conftest import FakeOpener
from nbs_tunnel.auth import PasswordAuth
from nbs_tunnel.chain import ChainTransport, JumpHostChainConnector
from nbs_tunnel.errors import AuthFailed, ChainConnectionError
from nbs_tunnel.events import EventType
from nbs_tunnel.hosts import HostDescriptor, JumpHostConfig
from nbs_tunnel.session import SessionState, SshSessionFactory
from nbs_tunnel.settings import TunnelSettings
from nbs_tunnel.testing import MockServerConfig, MockSSHServer


def hop(name: str) -> JumpHostConfig:
    return JumpHostConfig(host=name, username="ops", auth=PasswordAuth("pw"))


class TestChainConnector:

    @pytest.mark.asyncio
    async def test_hops_open_through_previous_transport(self) -> None:
        opener = FakeOpener()
        hops = [hop("bastion-1"), hop("bastion-2"), hop("bastion-3")]

        chain = await JumpHostChainConnector(opener).connect(hops, ("db.internal", 22))

        assert [c[0] for c in opener.calls] == ["bastion-1", "bastion-2", "bastion-3"]
        assert all(jump for _, _, jump in opener.calls)
        first, second, third = opener.opened
        assert first.tunnel is None
        assert second.tunnel is first
        assert third.tunnel is second
        assert chain.tunnel is third
        assert chain.sessions == [first, second, third]

    @pytest.mark.asyncio
    async def test_failing_hop_closes_opened_hops(self) -> None:
        opener = FakeOpener(failing_hosts={"bastion-2"})
        hops = [hop("bastion-1"), hop("bastion-2"), hop("bastion-3")]

        with pytest.raises(ChainConnectionError) as exc_info:
            await JumpHostChainConnector(opener).connect(hops, ("db.internal", 22))

        error = exc_info.value
        assert error.hop_index == 1
        assert "2/3" in str(error)
        assert "bastion-2" in str(error)
        assert isinstance(error.__cause__, AuthFailed)
        assert error.context.host == "bastion-2"
        assert error.context.auth_method == "password"

        # Hop 3 is never attempted; hop 1 is closed
        assert [c[0] for c in opener.calls] == ["bastion-1", "bastion-2"]
        assert opener.opened[0].close_count == 1

    @pytest.mark.asyncio
    async def test_first_hop_failure(self) -> None:
        opener = FakeOpener(failing_hosts={"bastion-1"})
        with pytest.raises(ChainConnectionError) as exc_info:
            await JumpHostChainConnector(opener).connect([hop("bastion-1")], ("db", 22))
        assert exc_info.value.hop_index == 0
        assert opener.opened == []

    @pytest.mark.asyncio
    async def test_cancellation_closes_opened_hops(self) -> None:
        opener = FakeOpener()
        original_open = opener.open

        async def slow_second(target, auth, tunnel=None, jump=False):
            if target.host == "bastion-2":
                await asyncio.sleep(10)
            return await original_open(target, auth, tunnel=tunnel, jump=jump)

        opener.open = slow_second
        task = asyncio.create_task(
            JumpHostChainConnector(opener).connect([hop("bastion-1"), hop("bastion-2")], ("db", 22))
        )
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert opener.opened[0].close_count == 1

    @pytest.mark.asyncio
    async def test_hop_ready_events(self, emitter, event_collector) -> None:
        await JumpHostChainConnector(FakeOpener(), emitter).connect(
            [hop("bastion-1"), hop("bastion-2")], ("db.internal", 5432),
        )
        ready = [e for e in event_collector.get_by_type(EventType.CONNECT)
                 if e.data.get("status") == "hop_ready"]
        assert [e.data["hop_index"] for e in ready] == [0, 1]
        assert ready[0].data["next_host"] == "bastion-2"
        assert (ready[1].data["next_host"], ready[1].data["next_port"]) == ("db.internal", 5432)

    @pytest.mark.asyncio
    async def test_chain_transport_close_is_reverse_order(self) -> None:
        closed: list[str] = []

        class Recorder:
            def __init__(self, name: str) -> None:
                self.name = name

            async def close(self) -> None:
                closed.append(self.name)

        await ChainTransport(tunnel=None, sessions=[Recorder("a"), Recorder("b")]).close()
        assert closed == ["b", "a"]


class TestChainedSessions:
    """Real asyncssh sessions: client -> bastion -> target, all on localhost."""

    @pytest.mark.asyncio
    async def test_session_through_jump_host(self, echo_server, emitter) -> None:
        async with MockSSHServer() as bastion, MockSSHServer(
            MockServerConfig(username="app", password="app-pw"),
        ) as target:
            host = HostDescriptor(
                host_id="target",
                host="127.0.0.1",
                port=target.port,
                username="app",
                jump_hosts=(JumpHostConfig("127.0.0.1", "test", PasswordAuth("test"), port=bastion.port),),
            )
            factory = SshSessionFactory(TunnelSettings(), emitter)
            session = await factory.connect(host, PasswordAuth("app-pw"))
            try:
                assert session.is_ready
                assert len(session.hops) == 1

                channels = bastion.events_of("SERVER_CHANNEL")
                assert channels[0].data["dest_port"] == target.port

                reader, writer = await session.open_channel(*echo_server)
                writer.write(b"through the bastion")
                assert await asyncio.wait_for(reader.readexactly(19), 5) == b"through the bastion"
                writer.close()
            finally:
                hop_session = session.hops[0]
                await session.close()
            assert session.state == SessionState.CLOSED
            assert hop_session.state == SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_bad_credentials_on_second_hop(self) -> None:
        async with MockSSHServer() as first, MockSSHServer() as second, MockSSHServer() as target:
            host = HostDescriptor(
                host_id="target",
                host="127.0.0.1",
                port=target.port,
                username="test",
                jump_hosts=(
                    JumpHostConfig("127.0.0.1", "test", PasswordAuth("test"), port=first.port),
                    JumpHostConfig("127.0.0.1", "test", PasswordAuth("wrong"), port=second.port),
                ),
            )
            with pytest.raises(ChainConnectionError) as exc_info:
                await SshSessionFactory().connect(host, PasswordAuth("test"))

            assert exc_info.value.hop_index == 1
            assert isinstance(exc_info.value.__cause__, AuthFailed)
            await asyncio.sleep(0.1)
            assert first.connection_count == 0

    @pytest.mark.asyncio
    async def test_bastion_refusing_forward_names_last_hop(self) -> None:
        async with MockSSHServer(MockServerConfig(allow_tcpip=False)) as bastion, MockSSHServer() as target:
            host = HostDescriptor(
                host_id="target",
                host="127.0.0.1",
                port=target.port,
                username="test",
                jump_hosts=(JumpHostConfig("127.0.0.1", "test", PasswordAuth("test"), port=bastion.port),),
            )
            with pytest.raises(ChainConnectionError) as exc_info:
                await SshSessionFactory().connect(host, PasswordAuth("test"))
            assert exc_info.value.hop_index == 0
