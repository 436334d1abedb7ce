"""
Minimal SOCKS5 server side: no-auth CONNECT only.

Provides:
- read_greeting: Consume the client's method-selection message
- read_connect_request: Parse the CONNECT request into a SocksRequest
- build_reply: Encode a reply with a zero bind address
- Reply codes and the fixed greeting reply

Malformed input raises SocksProtocolError carrying the reply code to send
(None when the client never got as far as a request).
"""
from __future__ import annotations

import asyncio
import struct
from dataclasses import dataclass
from typing import Any, Final

from nbs_tunnel.errors import SocksProtocolError

SOCKS_VERSION: Final[int] = 0x05
METHOD_NO_AUTH: Final[int] = 0x00

CMD_CONNECT: Final[int] = 0x01

ATYP_IPV4: Final[int] = 0x01
ATYP_DOMAIN: Final[int] = 0x03
ATYP_IPV6: Final[int] = 0x04

REPLY_SUCCEEDED: Final[int] = 0x00
REPLY_GENERAL_FAILURE: Final[int] = 0x01
REPLY_COMMAND_NOT_SUPPORTED: Final[int] = 0x07
REPLY_ADDRESS_TYPE_NOT_SUPPORTED: Final[int] = 0x08

GREETING_REPLY: Final[bytes] = bytes([SOCKS_VERSION, METHOD_NO_AUTH])


@dataclass(frozen=True)
class SocksRequest:
    """Destination requested by a SOCKS5 CONNECT."""
    host: str
    port: int
    address_type: int


def build_reply(code: int) -> bytes:
    """VER REP RSV ATYP=IPv4 BND.ADDR=0.0.0.0 BND.PORT=0"""
    return bytes([SOCKS_VERSION, code, 0x00, ATYP_IPV4, 0, 0, 0, 0, 0, 0])


async def _read_exactly(reader: Any, count: int, what: str) -> bytes:
    try:
        return await reader.readexactly(count)
    except asyncio.IncompleteReadError as e:
        raise SocksProtocolError(
            f"Connection closed while reading {what} "
            f"({len(e.partial)} of {count} bytes)",
        ) from e


async def read_greeting(reader: Any) -> list[int]:
    """
    Read VER NMETHODS METHODS.

    Returns:
        The methods the client offered. The caller always answers with
        GREETING_REPLY regardless.
    """
    version, nmethods = await _read_exactly(reader, 2, "greeting")
    if version != SOCKS_VERSION:
        raise SocksProtocolError(f"Unsupported SOCKS version in greeting: {version:#04x}")
    methods = await _read_exactly(reader, nmethods, "greeting methods") if nmethods else b""
    return list(methods)


def _format_ipv6(raw: bytes) -> str:
    groups = struct.unpack("!8H", raw)
    return ":".join(f"{group:x}" for group in groups)


async def read_connect_request(reader: Any) -> SocksRequest:
    """
    Read VER CMD RSV ATYP DST.ADDR DST.PORT.

    Raises:
        SocksProtocolError: reply_code is COMMAND_NOT_SUPPORTED for a
            non-CONNECT command, ADDRESS_TYPE_NOT_SUPPORTED for an unknown
            ATYP, GENERAL_FAILURE for a bad version
    """
    version, command, _reserved, address_type = await _read_exactly(reader, 4, "request header")

    if version != SOCKS_VERSION:
        raise SocksProtocolError(
            f"Unsupported SOCKS version in request: {version:#04x}",
            reply_code=REPLY_GENERAL_FAILURE,
        )
    if command != CMD_CONNECT:
        raise SocksProtocolError(
            f"Unsupported SOCKS command: {command:#04x}",
            reply_code=REPLY_COMMAND_NOT_SUPPORTED,
        )

    if address_type == ATYP_IPV4:
        raw = await _read_exactly(reader, 4, "IPv4 address")
        host = ".".join(str(b) for b in raw)
    elif address_type == ATYP_DOMAIN:
        (length,) = await _read_exactly(reader, 1, "domain length")
        raw = await _read_exactly(reader, length, "domain name")
        try:
            host = raw.decode("ascii")
        except UnicodeDecodeError as e:
            raise SocksProtocolError(
                "Domain name is not ASCII", reply_code=REPLY_GENERAL_FAILURE,
            ) from e
    elif address_type == ATYP_IPV6:
        host = _format_ipv6(await _read_exactly(reader, 16, "IPv6 address"))
    else:
        raise SocksProtocolError(
            f"Unsupported address type: {address_type:#04x}",
            reply_code=REPLY_ADDRESS_TYPE_NOT_SUPPORTED,
        )

    (port,) = struct.unpack("!H", await _read_exactly(reader, 2, "port"))
    return SocksRequest(host=host, port=port, address_type=address_type)
