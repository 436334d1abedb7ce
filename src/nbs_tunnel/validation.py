"""
Input validation for host descriptors and forwarding addresses.

Hostnames, usernames and ports end up in asyncssh connect options and, for
the port scanner, in remote shell commands, so they are checked for shell
metacharacters, control characters and out-of-range values up front.
"""
from __future__ import annotations

import ipaddress
import re
from typing import Final

MAX_HOSTNAME_LENGTH: Final[int] = 253
MAX_LABEL_LENGTH: Final[int] = 63
MAX_USERNAME_LENGTH: Final[int] = 32

DANGEROUS_CHARS: Final[frozenset[str]] = frozenset(
    "\x00"
    "\n\r\t"
    "`$(){}|;&<>\\'\""
)

_LABEL_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[a-zA-Z0-9_]([a-zA-Z0-9_-]*[a-zA-Z0-9])?$"
)

_USERNAME_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[a-zA-Z_][a-zA-Z0-9_.-]*\$?$"
)

_CHAR_NAMES: Final[dict[str, str]] = {
    "\x00": "null byte",
    "\n": "newline",
    "\r": "carriage return",
    "\t": "tab",
}


def _check_dangerous_chars(value: str, field_name: str) -> None:
    for char in value:
        if char in DANGEROUS_CHARS:
            char_desc = _CHAR_NAMES.get(char, repr(char))
            raise ValueError(f"{field_name} contains forbidden character: {char_desc}")


def validate_hostname(hostname: str, allow_empty: bool = False) -> str:
    """
    Validate a hostname, IPv4 or IPv6 literal.

    Args:
        hostname: The hostname to validate
        allow_empty: Accept "" (bind to all interfaces)

    Returns:
        The hostname, lowercased unless it is an IP literal

    Raises:
        ValueError: If the hostname is invalid
    """
    if not isinstance(hostname, str):
        raise ValueError(f"hostname must be a string, got {type(hostname).__name__}")

    if not hostname:
        if allow_empty:
            return hostname
        raise ValueError("hostname must not be empty")

    _check_dangerous_chars(hostname, "hostname")

    candidate = hostname.strip("[]")
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        pass

    if len(hostname) > MAX_HOSTNAME_LENGTH:
        raise ValueError(
            f"hostname exceeds maximum length of {MAX_HOSTNAME_LENGTH} characters "
            f"(got {len(hostname)})"
        )

    labels = hostname.rstrip(".").split(".")
    for label in labels:
        if not label:
            raise ValueError(f"hostname has an empty label: {hostname!r}")
        if len(label) > MAX_LABEL_LENGTH:
            raise ValueError(
                f"hostname label exceeds {MAX_LABEL_LENGTH} characters: {label!r}"
            )
        if not _LABEL_PATTERN.match(label):
            raise ValueError(f"hostname label is invalid: {label!r}")

    return hostname.lower()


def validate_port(port: int, allow_zero: bool = False) -> int:
    """
    Validate a TCP port number.

    Args:
        port: The port to validate
        allow_zero: Accept 0 ("let the OS choose")

    Raises:
        ValueError: If the port is not an integer in range
    """
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValueError(f"port must be an integer, got {type(port).__name__}")

    low = 0 if allow_zero else 1
    if not low <= port <= 65535:
        raise ValueError(f"port must be between {low} and 65535, got {port}")
    return port


def validate_username(username: str) -> str:
    """
    Validate a POSIX-style username.

    Raises:
        ValueError: If the username is empty, too long or malformed
    """
    if not isinstance(username, str):
        raise ValueError(f"username must be a string, got {type(username).__name__}")
    if not username:
        raise ValueError("username must not be empty")

    _check_dangerous_chars(username, "username")

    if len(username) > MAX_USERNAME_LENGTH:
        raise ValueError(
            f"username exceeds maximum length of {MAX_USERNAME_LENGTH} characters"
        )
    if not _USERNAME_PATTERN.match(username):
        raise ValueError(f"username is invalid: {username!r}")
    return username
