# src/socks5d/resolver.py
"""
A-record resolution for CONNECT and UDP destinations.

With configured DNS servers, queries are built with dnslib and sent over UDP
from the configured local address; otherwise the system resolver is used.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Iterable, List, Optional, Tuple

from dnslib import QTYPE, RCODE, DNSError, DNSRecord

from .robustness import ErrorType, ResolutionFailure

logger = logging.getLogger(__name__)

DNS_PORT = 53


def split_server(server: str) -> Tuple[str, int]:
    """Accept ``host``, ``host:port``, ``ipv6`` or ``[ipv6]:port``."""
    if server.startswith("["):
        host, _, rest = server[1:].partition("]")
        return host, int(rest[1:]) if rest.startswith(":") else DNS_PORT
    if server.count(":") == 1:
        host, port = server.split(":")
        return host, int(port)
    return server, DNS_PORT


class _QueryProtocol(asyncio.DatagramProtocol):
    def __init__(self, query_id: int):
        self.query_id = query_id
        self.response: asyncio.Future = asyncio.get_running_loop().create_future()

    def datagram_received(self, data, addr):
        if self.response.done():
            return
        try:
            record = DNSRecord.parse(data)
        except DNSError as e:
            logger.debug(f"Unparseable DNS response from {addr}: {e}")
            return
        if record.header.id != self.query_id:
            logger.debug(f"Ignoring DNS response with id {record.header.id} from {addr}")
            return
        self.response.set_result(record)

    def error_received(self, exc):
        if not self.response.done():
            self.response.set_exception(exc)

    def connection_lost(self, exc):
        if not self.response.done():
            self.response.cancel()


class Resolver:
    """Resolves names to IPv4 addresses."""

    def __init__(
        self,
        servers: Optional[Iterable[str]] = None,
        local_address: Optional[str] = None,
        timeout: float = 5.0,
    ):
        self.servers: Tuple[str, ...] = tuple(servers or ())
        self.local_address = local_address
        self.timeout = timeout

    async def resolve_a(self, name: str) -> List[str]:
        """Return the A records for ``name``; raises ResolutionFailure when there are none."""
        if not name:
            raise ResolutionFailure("Empty name", ErrorType.RESOLUTION)
        if self.servers:
            return await self._query_servers(name)
        return await self._query_system(name)

    async def _query_system(self, name: str) -> List[str]:
        loop = asyncio.get_running_loop()
        try:
            infos = await asyncio.wait_for(
                loop.getaddrinfo(name, None, family=socket.AF_INET, type=socket.SOCK_STREAM),
                self.timeout,
            )
        except (OSError, asyncio.TimeoutError, UnicodeError) as e:
            raise ResolutionFailure(
                f"Failed to resolve {name}: {e}", ErrorType.RESOLUTION, {"name": name}
            ) from e
        addresses = []
        for _family, _type, _proto, _canon, sockaddr in infos:
            if sockaddr[0] not in addresses:
                addresses.append(sockaddr[0])
        if not addresses:
            raise ResolutionFailure(f"No A records for {name}", ErrorType.RESOLUTION, {"name": name})
        return addresses

    async def _query_servers(self, name: str) -> List[str]:
        last_error: Optional[Exception] = None
        for server in self.servers:
            try:
                answers = await self._query(server, name)
            except (OSError, ValueError, asyncio.TimeoutError, ResolutionFailure) as e:
                logger.debug(f"DNS server {server} failed for {name}: {e}")
                last_error = e
                continue
            if answers:
                return answers
        raise ResolutionFailure(
            f"Failed to resolve {name}: {last_error or 'no A records'}",
            ErrorType.RESOLUTION,
            {"name": name, "servers": list(self.servers)},
        )

    async def _query(self, server: str, name: str) -> List[str]:
        try:
            query = DNSRecord.question(name, "A")
        except Exception as e:
            raise ResolutionFailure(f"Invalid name {name!r}: {e}", ErrorType.RESOLUTION) from e

        host, port = split_server(server)
        local_addr = (self.local_address, 0) if self.local_address else None
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.create_datagram_endpoint(
            lambda: _QueryProtocol(query.header.id),
            local_addr=local_addr,
            remote_addr=(host, port),
        )
        try:
            transport.sendto(query.pack())
            record = await asyncio.wait_for(protocol.response, self.timeout)
        finally:
            transport.close()

        if record.header.rcode != RCODE.NOERROR:
            raise ResolutionFailure(
                f"{server} answered rcode {record.header.rcode} for {name}",
                ErrorType.RESOLUTION,
                {"name": name, "rcode": record.header.rcode},
            )
        return [str(rr.rdata) for rr in record.rr if rr.rtype == QTYPE.A]
