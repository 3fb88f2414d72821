# src/socks5d/protocol.py
"""
SOCKS5 wire constants and message framing.

The parsers here find message boundaries from the length fields carried by
each message (RFC 1928 / RFC 1929). Every parser takes the bytes buffered so
far and returns ``None`` while the message is incomplete, or a
``(message, consumed)`` pair once it is complete. Surplus bytes after
``consumed`` belong to the next message.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING, Optional, Tuple

from .robustness import ErrorType, ProtocolViolation

if TYPE_CHECKING:
    from .address import Address

SOCKS_VERSION = 0x05
USER_PASS_VERSION = 0x01

USER_PASS_SUCCESS = 0x00
USER_PASS_FAILURE = 0x01


class AuthMethod(IntEnum):
    NO_AUTH = 0x00
    GSSAPI = 0x01
    USERNAME_PASSWORD = 0x02
    NO_ACCEPTABLE = 0xFF


class Command(IntEnum):
    CONNECT = 0x01
    BIND = 0x02
    UDP_ASSOCIATE = 0x03


class AddressType(IntEnum):
    IPV4 = 0x01
    DOMAIN = 0x03
    IPV6 = 0x04


class ReplyCode(IntEnum):
    SUCCEEDED = 0x00
    GENERAL_FAILURE = 0x01
    NOT_ALLOWED = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08


@dataclass(frozen=True)
class Greeting:
    version: int
    methods: Tuple[int, ...]


@dataclass(frozen=True)
class UserPassRequest:
    """UNAME and PASSWD exactly as sent; nothing is dropped or replaced."""

    version: int
    username: bytes
    password: bytes

    def credentials(self) -> Tuple[str, str]:
        """Strict UTF-8 decode; raises UnicodeDecodeError for anything else."""
        return self.username.decode("utf-8"), self.password.decode("utf-8")

    def __repr__(self) -> str:
        return f"UserPassRequest(version={self.version}, username={self.username!r}, password='***')"


@dataclass(frozen=True)
class Request:
    """A parsed request. ``address`` is None for commands whose payload is never read."""

    version: int
    command: int
    reserved: int
    address: Optional["Address"] = None


def _check_version(buf: bytes, expected: int, what: str) -> None:
    if buf and buf[0] != expected:
        raise ProtocolViolation(
            f"Unsupported {what} version: {buf[0]}",
            ErrorType.PROTOCOL,
            {"version": buf[0]},
        )


def parse_greeting(buf: bytes) -> Optional[Tuple[Greeting, int]]:
    """
    Parse the version identifier / method selection message.

    +----+----------+----------+
    |VER | NMETHODS | METHODS  |
    +----+----------+----------+
    | 1  |    1     | 1 to 255 |
    +----+----------+----------+
    """
    _check_version(buf, SOCKS_VERSION, "SOCKS")
    if len(buf) < 2:
        return None
    nmethods = buf[1]
    end = 2 + nmethods
    if len(buf) < end:
        return None
    return Greeting(buf[0], tuple(buf[2:end])), end


def parse_user_pass(buf: bytes) -> Optional[Tuple[UserPassRequest, int]]:
    """
    Parse the RFC 1929 username/password request.

    +----+------+----------+------+----------+
    |VER | ULEN |  UNAME   | PLEN |  PASSWD  |
    +----+------+----------+------+----------+
    | 1  |  1   | 1 to 255 |  1   | 1 to 255 |
    +----+------+----------+------+----------+
    """
    _check_version(buf, USER_PASS_VERSION, "auth")
    if len(buf) < 2:
        return None
    ulen = buf[1]
    if len(buf) < 2 + ulen + 1:
        return None
    plen = buf[2 + ulen]
    end = 2 + ulen + 1 + plen
    if len(buf) < end:
        return None
    username = bytes(buf[2:2 + ulen])
    password = bytes(buf[3 + ulen:end])
    return UserPassRequest(buf[0], username, password), end


def parse_request(buf: bytes) -> Optional[Tuple[Request, int]]:
    """
    Parse a SOCKS request.

    +----+-----+-------+------+----------+----------+
    |VER | CMD |  RSV  | ATYP | DST.ADDR | DST.PORT |
    +----+-----+-------+------+----------+----------+
    | 1  |  1  | X'00' |  1   | Variable |    2     |
    +----+-----+-------+------+----------+----------+

    Only CONNECT and UDP ASSOCIATE carry a destination the server uses; any
    other command completes after the fixed header and is rejected by the
    caller without looking at the rest of the payload.
    """
    from .address import decode_address

    _check_version(buf, SOCKS_VERSION, "SOCKS")
    if len(buf) < 3:
        return None
    version, command, reserved = struct.unpack_from("!BBB", buf)
    if command not in (Command.CONNECT, Command.UDP_ASSOCIATE):
        return Request(version, command, reserved), 3
    if len(buf) < 4:
        return None
    decoded = decode_address(buf[3], buf, 4)
    if decoded is None:
        return None
    address, consumed = decoded
    return Request(version, command, reserved, address), 4 + consumed


def encode_method_selection(method: int) -> bytes:
    return struct.pack("!BB", SOCKS_VERSION, method)


def encode_user_pass_status(status: int) -> bytes:
    return struct.pack("!BB", USER_PASS_VERSION, status)
