# src/socks5d/tcp_relay.py
"""
CONNECT relay: open the outbound TCP connection, reply once, then splice.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .address import Address
from .protocol import ReplyCode
from .robustness import ErrorType, UpstreamConnectFailure, log_with_context

if TYPE_CHECKING:
    from .session import Session

logger = logging.getLogger(__name__)

BUFFER_SIZE = 65536


class TcpRelay:
    """Relays one CONNECT request for a session."""

    def __init__(self, session: "Session"):
        self.session = session

    async def connect(self, host: str, port: int):
        """Open the outbound connection, bound to the configured local address if any."""
        config = self.session.config
        local_addr = (config.local_address, 0) if config.local_address else None
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(host, port, local_addr=local_addr),
                config.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamConnectFailure(
                f"Proxy timeout connecting to {host}:{port}",
                ErrorType.UPSTREAM,
                {"host": host, "port": port, "timeout": config.connect_timeout},
                reply_code=ReplyCode.CONNECTION_REFUSED,
            ) from e
        except OSError as e:
            raise UpstreamConnectFailure(
                f"Failed to connect to {host}:{port}: {e}",
                ErrorType.UPSTREAM,
                {"host": host, "port": port},
                reply_code=ReplyCode.CONNECTION_REFUSED,
            ) from e

    async def relay(self, host: str, port: int):
        """
        Connect to ``host:port`` on behalf of the client.

        Every connect-phase failure (refused, unreachable, timeout) is
        reported as CONNECTION_REFUSED. On success the reply carries the
        outbound socket's local address and bytes are piped both ways until
        each side has finished or either fails.
        """
        session = self.session
        try:
            upstream_reader, upstream_writer = await self.connect(host, port)
        except UpstreamConnectFailure as e:
            level = "warning" if isinstance(e.__cause__, asyncio.TimeoutError) else "error"
            log_with_context(str(e), level, e.context, log=session.logger)
            await session.reply(e.reply_code)
            return

        try:
            sockname = upstream_writer.get_extra_info("sockname")
            bound = Address.from_host(sockname[0], sockname[1]) if sockname else None
            if not await session.reply(ReplyCode.SUCCEEDED, bound):
                return
            session.logger.debug(f"Connected {session.peer} to {host}:{port} via {bound}")

            pending = session.take_pending()
            if pending:
                upstream_writer.write(pending)
                await upstream_writer.drain()

            await self.splice(session.reader, session.writer, upstream_reader, upstream_writer, f"{host}:{port}")
        finally:
            upstream_writer.close()
            try:
                await upstream_writer.wait_closed()
            except (ConnectionError, OSError) as e:
                session.logger.debug(f"Error closing upstream {host}:{port}: {e}")

    async def splice(self, client_reader, client_writer, upstream_reader, upstream_writer, desc: str):
        session = self.session
        tasks = [
            asyncio.create_task(self._pipe(client_reader, upstream_writer)),
            asyncio.create_task(self._pipe(upstream_reader, client_writer)),
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if isinstance(exc, asyncio.TimeoutError):
                session.logger.warning(f"Socket timeout relaying {session.peer} <-> {desc}")
                break
            if isinstance(exc, (ConnectionError, OSError)):
                session.logger.debug(f"Relay {session.peer} <-> {desc} ended: {exc}")
                break
            if exc is not None:
                raise exc
        session.logger.info(f"Connection {session.peer} <-> {desc} closed")

    async def _pipe(self, src: asyncio.StreamReader, dst: asyncio.StreamWriter):
        """Copy until EOF, then half-close ``dst``. Times out only when the whole session is idle."""
        session = self.session
        idle_timeout = session.config.idle_timeout
        while True:
            try:
                data = await asyncio.wait_for(src.read(BUFFER_SIZE), idle_timeout)
            except asyncio.TimeoutError:
                if session.idle_for() < idle_timeout:
                    continue
                raise
            if not data:
                break
            session.touch()
            dst.write(data)
            await dst.drain()
        if dst.can_write_eof() and not dst.is_closing():
            dst.write_eof()
