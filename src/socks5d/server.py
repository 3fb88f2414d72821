# src/socks5d/server.py
"""
Server runtime: TCP listener, one Session per connection, shared UDP relay.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Set

from .auth import UserPassAuthFn, make_user_pass_auth
from .config import ServerConfig
from .resolver import Resolver
from .session import Session
from .udp_relay import UdpRelay

logger = logging.getLogger(__name__)


class Socks5Server:
    """
    A SOCKS5 server.

    ``config`` is read-only for the server's lifetime. ``user_pass_auth``
    enables the username/password method; when omitted it is built from
    ``config.users`` if any are configured. ``log`` is any object with
    debug/info/warning/error methods.
    """

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        user_pass_auth: Optional[UserPassAuthFn] = None,
        log: Any = None,
        resolver: Optional[Resolver] = None,
    ):
        self.config = config or ServerConfig()
        if user_pass_auth is None and self.config.users:
            user_pass_auth = make_user_pass_auth(self.config.users)
        if user_pass_auth is not None and not callable(user_pass_auth):
            raise TypeError("user_pass_auth should be callable")
        self.user_pass_auth = user_pass_auth
        self.logger = log if log is not None else logger
        self.resolver = resolver or Resolver(self.config.dns, self.config.local_address)

        self.port: Optional[int] = None
        self.udp_relay: Optional[UdpRelay] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._udp_transport: Optional[asyncio.DatagramTransport] = None
        self._sessions: Set[asyncio.Task] = set()

    async def start(self):
        if self._server is not None:
            raise RuntimeError("Server already started")
        self._server = await asyncio.start_server(self._handle_client, self.config.host, self.config.port)
        sockname = self._server.sockets[0].getsockname()
        self.port = sockname[1]
        self.logger.info(f"server listening {sockname[0]} {self.port}")

        loop = asyncio.get_running_loop()
        try:
            self._udp_transport, self.udp_relay = await loop.create_datagram_endpoint(
                lambda: UdpRelay(self.config, self.resolver, self.logger),
                local_addr=(sockname[0], self.port),
            )
        except OSError:
            self._server.close()
            self._server = None
            raise
        self.logger.debug(f"UDP listening {sockname[0]}:{self.port}")

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        task = asyncio.current_task()
        self._sessions.add(task)
        try:
            session = Session(
                reader,
                writer,
                self.config,
                user_pass_auth=self.user_pass_auth,
                resolver=self.resolver,
                log=self.logger,
                port=self.port,
            )
            await session.run()
        finally:
            self._sessions.discard(task)

    async def serve_forever(self):
        if self._server is None:
            await self.start()
        try:
            await self._server.serve_forever()
        finally:
            await self.close()

    async def close(self):
        if self._server is None:
            return
        server, self._server = self._server, None
        server.close()
        if self._udp_transport is not None:
            self._udp_transport.close()
            self._udp_transport = None
        for task in list(self._sessions):
            task.cancel()
        await asyncio.gather(*self._sessions, return_exceptions=True)
        await server.wait_closed()
        self.logger.info("SOCKS5 server closed")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.close()
