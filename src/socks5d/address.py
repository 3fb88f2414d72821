# src/socks5d/address.py
"""
Address codec for the SOCKS5 wire format.

Converts between ATYP-tagged wire encodings (IPv4, domain name, IPv6) and
host/port values, builds reply headers and wraps/unwraps the UDP relay header.
"""

from __future__ import annotations

import ipaddress
import struct
from dataclasses import dataclass
from typing import Optional, Tuple

from .protocol import SOCKS_VERSION, AddressType, ReplyCode
from .robustness import (
    AddressTypeNotSupported,
    ErrorType,
    InvalidDomainName,
    MalformedDatagram,
    ProtocolViolation,
)

UDP_HEADER_MIN = 10  # RSV(2) FRAG(1) ATYP(1) IPv4(4) PORT(2)


@dataclass(frozen=True)
class Address:
    atyp: AddressType
    host: str
    port: int

    def __post_init__(self):
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"Port out of range: {self.port}")

    @classmethod
    def from_host(cls, host: str, port: int) -> "Address":
        """Pick the ATYP for a textual host: IP literals keep their family, anything else is a domain."""
        try:
            ip = ipaddress.ip_address(host.split("%", 1)[0])
        except ValueError:
            return cls(AddressType.DOMAIN, host, port)
        if ip.version == 4:
            return cls(AddressType.IPV4, str(ip), port)
        return cls(AddressType.IPV6, format_ipv6(parse_ipv6_text(host)), port)

    def __str__(self) -> str:
        if self.atyp == AddressType.IPV6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class UdpDatagram:
    frag: int
    address: Address
    payload: bytes


def parse_ipv6_text(text: str) -> bytes:
    """
    Convert a textual IPv6 address to its 16-byte form.

    Groups are scanned left to right; ``::`` marks the expansion point and an
    embedded dotted-quad suffix is read as decimal octets. Once the scan is
    done the groups after the expansion point are moved to the end of the
    buffer and the gap is zero-filled.

    Text that is not an IPv6 literal yields 16 zero bytes instead of an
    error, so callers that care must validate the address themselves.
    """
    buf = bytearray(16)
    try:
        ipaddress.IPv6Address(text)
    except ValueError:
        return bytes(buf)
    text = text.split("%", 1)[0]

    index = 0
    expand_at = -1
    ipv4_at = -1
    group = ""
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == ":":
            if group:
                value = int(group, 16)
                buf[index] = value >> 8
                buf[index + 1] = value & 0xFF
                index += 2
                group = ""
            if text[i + 1:i + 2] == ":":
                expand_at = index
                i += 1
        elif ch == ".":
            if ipv4_at == -1:
                ipv4_at = index
            if group:
                buf[index] = int(group)
                index += 1
                group = ""
        else:
            group += ch
        i += 1

    if group:
        if ipv4_at > -1:
            buf[index] = int(group)
            index += 1
        else:
            value = int(group, 16)
            buf[index] = value >> 8
            buf[index + 1] = value & 0xFF
            index += 2

    if expand_at > -1 and index < 16:
        shift = 16 - index
        for j in range(index - 1, expand_at - 1, -1):
            buf[j + shift] = buf[j]
            buf[j] = 0

    return bytes(buf)


def format_ipv6(packed: bytes) -> str:
    """Eight lowercase hex groups, no zero compression."""
    if len(packed) != 16:
        raise ValueError(f"IPv6 address must be 16 bytes, got {len(packed)}")
    return ":".join(f"{(packed[i] << 8) | packed[i + 1]:x}" for i in range(0, 16, 2))


def decode_address(atyp: int, data: bytes, offset: int = 0) -> Optional[Tuple[Address, int]]:
    """
    Decode DST.ADDR and DST.PORT starting at ``offset``.

    Returns ``(address, consumed)`` where ``consumed`` counts the address and
    port bytes, or ``None`` if ``data`` is too short to hold them. A domain
    name that is not ASCII raises InvalidDomainName.
    """
    if atyp == AddressType.IPV4:
        end = offset + 4
        if len(data) < end + 2:
            return None
        host = str(ipaddress.IPv4Address(bytes(data[offset:end])))
    elif atyp == AddressType.IPV6:
        end = offset + 16
        if len(data) < end + 2:
            return None
        host = format_ipv6(bytes(data[offset:end]))
    elif atyp == AddressType.DOMAIN:
        if len(data) < offset + 1:
            return None
        end = offset + 1 + data[offset]
        if len(data) < end + 2:
            return None
        raw = bytes(data[offset + 1:end])
        try:
            host = raw.decode("ascii")
        except UnicodeDecodeError as e:
            raise InvalidDomainName(
                "Domain name is not ASCII",
                ErrorType.PROTOCOL,
                {"name": raw.decode("ascii", errors="replace")},
                reply_code=ReplyCode.HOST_UNREACHABLE,
            ) from e
    else:
        raise AddressTypeNotSupported(
            f"ATYP {atyp} not supported",
            ErrorType.PROTOCOL,
            {"atyp": atyp},
            reply_code=ReplyCode.ADDRESS_TYPE_NOT_SUPPORTED,
        )
    (port,) = struct.unpack_from("!H", data, end)
    return Address(AddressType(atyp), host, port), end + 2 - offset


def encode_address(address: Address) -> bytes:
    """ATYP, address bytes and big-endian port."""
    if address.atyp == AddressType.IPV4:
        raw = ipaddress.IPv4Address(address.host).packed
    elif address.atyp == AddressType.IPV6:
        raw = parse_ipv6_text(address.host)
    else:
        name = address.host.encode("ascii")
        if len(name) > 255:
            raise ValueError(f"Domain name too long: {len(name)} bytes")
        raw = bytes([len(name)]) + name
    return bytes([address.atyp]) + raw + struct.pack("!H", address.port)


def encode_reply(reply_code: int, address: Optional[Address] = None) -> bytes:
    """
    Build a reply header.

    +----+-----+-------+------+----------+----------+
    |VER | REP |  RSV  | ATYP | BND.ADDR | BND.PORT |
    +----+-----+-------+------+----------+----------+
    | 1  |  1  | X'00' |  1   | Variable |    2     |
    +----+-----+-------+------+----------+----------+

    Without an address the bound endpoint is 0.0.0.0:0.
    """
    if address is None:
        address = Address(AddressType.IPV4, "0.0.0.0", 0)
    return struct.pack("!BBB", SOCKS_VERSION, reply_code, 0x00) + encode_address(address)


def decode_udp_datagram(data: bytes) -> UdpDatagram:
    """Unwrap a client datagram; raises MalformedDatagram for anything that must be dropped."""
    if len(data) < UDP_HEADER_MIN:
        raise MalformedDatagram("Datagram too short", ErrorType.DATAGRAM, {"length": len(data)})
    if data[0] != 0x00 or data[1] != 0x00:
        raise MalformedDatagram("Reserved field should be 0x00", ErrorType.DATAGRAM)
    if data[2] != 0x00:
        raise MalformedDatagram("Fragment should be 0x00", ErrorType.DATAGRAM, {"frag": data[2]})
    try:
        decoded = decode_address(data[3], data, 4)
    except ProtocolViolation as e:
        raise MalformedDatagram(str(e), ErrorType.DATAGRAM, e.context) from e
    if decoded is None:
        raise MalformedDatagram("Truncated destination address", ErrorType.DATAGRAM)
    address, consumed = decoded
    return UdpDatagram(data[2], address, bytes(data[4 + consumed:]))


def encode_udp_datagram(address: Address, payload: bytes) -> bytes:
    """
    Wrap a payload in the UDP relay header.

    +----+------+------+----------+----------+----------+
    |RSV | FRAG | ATYP | DST.ADDR | DST.PORT |   DATA   |
    +----+------+------+----------+----------+----------+
    | 2  |  1   |  1   | Variable |    2     | Variable |
    +----+------+------+----------+----------+----------+
    """
    return b"\x00\x00\x00" + encode_address(address) + payload
