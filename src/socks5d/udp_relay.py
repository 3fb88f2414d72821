# src/socks5d/udp_relay.py
"""
UDP ASSOCIATE relay.

One listener per server, bound to the TCP listener's port. Every client
datagram is relayed on its own: a fresh outbound socket sends the payload,
waits for a single answer (bounded by ``udp_timeout``), and the answer goes
back to the client wrapped in a SOCKS5 UDP header naming the responder.
There is no association table; replies may reach the client in any order.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import traceback
from typing import Any, Optional, Set, Tuple

from .address import Address, UdpDatagram, decode_udp_datagram, encode_udp_datagram
from .config import ServerConfig
from .protocol import AddressType
from .resolver import Resolver
from .robustness import MalformedDatagram, ResolutionFailure, log_with_context
from .session import is_ip_literal

logger = logging.getLogger(__name__)


class _UpstreamProtocol(asyncio.DatagramProtocol):
    """Outbound socket for one exchange; resolves ``reply`` with the first datagram."""

    def __init__(self):
        self.reply: asyncio.Future = asyncio.get_running_loop().create_future()

    def datagram_received(self, data, addr):
        if not self.reply.done():
            self.reply.set_result((data, addr))

    def error_received(self, exc):
        if not self.reply.done():
            self.reply.set_exception(exc)

    def connection_lost(self, exc):
        if not self.reply.done():
            self.reply.cancel()


class UdpRelay(asyncio.DatagramProtocol):
    """Server-wide UDP listener."""

    def __init__(self, config: ServerConfig, resolver: Optional[Resolver] = None, log: Any = None):
        self.config = config
        self.resolver = resolver or Resolver(config.dns, config.local_address)
        self.logger = log if log is not None else logger
        self.transport: Optional[asyncio.DatagramTransport] = None
        self._tasks: Set[asyncio.Task] = set()

    def connection_made(self, transport):
        self.transport = transport
        self.logger.debug(f"UDP listening {transport.get_extra_info('sockname')}")

    def datagram_received(self, data, addr):
        try:
            datagram = decode_udp_datagram(data)
        except MalformedDatagram as e:
            log_with_context(f"Dropping datagram from {addr}: {e}", "warning", e.context, log=self.logger)
            return

        if datagram.address.atyp == AddressType.IPV6:
            self.logger.error(f"IPv6 not supported yet, dropping datagram from {addr} for {datagram.address}")
            return

        self.logger.debug(f"INCOMING UDP message from {addr} FOR {datagram.address}")
        task = asyncio.get_running_loop().create_task(self.relay_datagram(datagram, addr))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            exc = task.exception()
            log_with_context(
                f"UDP relay task failed: {exc!r}",
                "error",
                {"traceback": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))},
                log=self.logger,
            )

    def error_received(self, exc):
        self.logger.error(f"UDP server error: {exc}")

    def connection_lost(self, exc):
        for task in list(self._tasks):
            task.cancel()
        self.transport = None
        self.logger.debug("UDP listener closed")

    async def relay_datagram(self, datagram: UdpDatagram, client_addr: Tuple[str, int]):
        """One send, one receive, then close the outbound socket."""
        destination = datagram.address
        host = destination.host
        if destination.atyp == AddressType.DOMAIN:
            try:
                host = (await self.resolver.resolve_a(host))[0]
            except ResolutionFailure as e:
                if not is_ip_literal(host):
                    log_with_context(str(e), "error", e.context, log=self.logger)
                    return

        loop = asyncio.get_running_loop()
        local_addr = (self.config.local_address, 0) if self.config.local_address else None
        try:
            transport, upstream = await loop.create_datagram_endpoint(
                _UpstreamProtocol, local_addr=local_addr, family=socket.AF_INET
            )
        except OSError as e:
            self.logger.error(f"Could not open outbound UDP socket: {e}")
            return

        try:
            transport.sendto(datagram.payload, (host, destination.port))
            payload, responder = await asyncio.wait_for(upstream.reply, self.config.udp_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"No UDP response from {host}:{destination.port} within {self.config.udp_timeout}s")
            return
        except OSError as e:
            self.logger.error(f"UDP relay to {host}:{destination.port} failed: {e}")
            return
        finally:
            transport.close()

        self.logger.debug(f"RESPONSE FROM HOST {responder} TO {client_addr}")
        if ":" in responder[0]:
            self.logger.error("IPv6 not supported yet")
            return

        packet = encode_udp_datagram(Address(AddressType.IPV4, responder[0], responder[1]), payload)
        if self.transport is None or self.transport.is_closing():
            self.logger.debug(f"Listener closed, dropping response for {client_addr}")
            return
        self.transport.sendto(packet, client_addr)
        self.logger.debug(f"UDP PACKET SENT TO INCOMING {client_addr}")
