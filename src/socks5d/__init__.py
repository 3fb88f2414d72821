"""socks5d package namespace.

A SOCKS5 proxy server (RFC 1928 / RFC 1929) on asyncio: CONNECT and
UDP ASSOCIATE relays with optional username/password authentication.
"""

from .__about__ import __version__
from .address import Address, format_ipv6, parse_ipv6_text
from .config import Config, ServerConfig
from .protocol import AddressType, AuthMethod, Command, ReplyCode
from .server import Socks5Server

__all__ = [
    "__version__",
    "Address",
    "AddressType",
    "AuthMethod",
    "Command",
    "Config",
    "ReplyCode",
    "ServerConfig",
    "Socks5Server",
    "format_ipv6",
    "parse_ipv6_text",
]
