"""
Testing utilities for nbs-tunnel.

Provides MockSSHServer, an in-process asyncssh server that accepts
direct-tcpip channels and remote listen requests.
"""
from nbs_tunnel.testing.mock_server import MockServerConfig, MockSSHServer

__all__ = ["MockSSHServer", "MockServerConfig"]
