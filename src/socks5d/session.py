# src/socks5d/session.py
"""
Per-connection SOCKS5 negotiation.

A Session walks one client connection through the greeting, the optional
username/password sub-negotiation and the request, then hands the
connection to the matching relay. Messages are framed from their length
fields, so a message split over several reads or several messages in one
read are both handled.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import time
import traceback
from enum import Enum
from typing import Any, Callable, Optional, Tuple

from .address import Address, encode_reply
from .auth import UserPassAuthFn
from .config import ServerConfig
from .protocol import (
    USER_PASS_FAILURE,
    USER_PASS_SUCCESS,
    AddressType,
    AuthMethod,
    Command,
    ReplyCode,
    encode_method_selection,
    encode_user_pass_status,
    parse_greeting,
    parse_request,
    parse_user_pass,
)
from .resolver import Resolver
from .robustness import (
    AuthenticationFailure,
    ErrorType,
    ProtocolViolation,
    ResolutionFailure,
    Socks5Error,
    log_with_context,
)
from .tcp_relay import TcpRelay

logger = logging.getLogger(__name__)

READ_SIZE = 4096


class SessionState(Enum):
    AWAIT_GREETING = "AWAIT_GREETING"
    AWAIT_SUB_NEGOTIATION = "AWAIT_SUB_NEGOTIATION"
    AWAIT_REQUEST = "AWAIT_REQUEST"
    DISPATCHED = "DISPATCHED"
    CLOSED = "CLOSED"


def is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


class Session:
    """One accepted client connection."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        config: ServerConfig,
        user_pass_auth: Optional[UserPassAuthFn] = None,
        resolver: Optional[Resolver] = None,
        log: Any = None,
        port: Optional[int] = None,
    ):
        self.reader = reader
        self.writer = writer
        self.config = config
        self.user_pass_auth = user_pass_auth
        self.resolver = resolver or Resolver(config.dns, config.local_address)
        self.logger = log if log is not None else logger
        self.port = config.port if port is None else port
        self.peer = writer.get_extra_info("peername")

        self.state = SessionState.AWAIT_GREETING
        self.method: Optional[AuthMethod] = None
        self.username: Optional[str] = None
        self.replied = False
        self.last_activity = time.monotonic()
        self._buffer = bytearray()

    async def run(self):
        """Drive the connection from greeting to relay, then close it."""
        try:
            frame = await self._read_frame(parse_greeting)
            await self.handle_greeting(frame)
            if self.state == SessionState.AWAIT_SUB_NEGOTIATION:
                frame = await self._read_frame(parse_user_pass)
                await self.handle_user_pass(frame)
            frame = await self._read_frame(parse_request)
            await self.handle_request(frame)
        except asyncio.IncompleteReadError:
            self.logger.debug(f"Client {self.peer} disconnected during {self.state.value}")
        except asyncio.TimeoutError:
            self.logger.warning(f"Socket timeout for {self.peer} during {self.state.value}")
        except Socks5Error as e:
            log_with_context(
                f"SOCKS error with {self.peer}: {e}",
                "error",
                {**e.context, "error_type": e.error_type.value, "state": self.state.value},
                log=self.logger,
            )
            if e.reply_code is not None and self.state == SessionState.AWAIT_REQUEST:
                await self._best_effort_reply(e.reply_code)
        except ConnectionError as e:
            self.logger.debug(f"Connection error with {self.peer}: {e}")
        except Exception as e:
            log_with_context(
                f"Unhandled error in session for {self.peer}: {e!r}",
                "error",
                {"traceback": traceback.format_exc()},
                log=self.logger,
            )
        finally:
            await self.close()

    async def _read_frame(self, parser: Callable[[bytes], Optional[Tuple[Any, int]]]) -> bytes:
        """Buffer client bytes until ``parser`` recognises a complete message and return it."""
        while True:
            parsed = parser(self._buffer)
            if parsed is not None:
                _, consumed = parsed
                frame = bytes(self._buffer[:consumed])
                del self._buffer[:consumed]
                return frame
            chunk = await asyncio.wait_for(self.reader.read(READ_SIZE), self.config.idle_timeout)
            if not chunk:
                raise asyncio.IncompleteReadError(bytes(self._buffer), None)
            self.touch()
            self._buffer += chunk

    def take_pending(self) -> bytes:
        """Bytes the client sent after its request, not yet consumed."""
        data = bytes(self._buffer)
        self._buffer.clear()
        return data

    def touch(self):
        self.last_activity = time.monotonic()

    def idle_for(self) -> float:
        return time.monotonic() - self.last_activity

    async def _send(self, data: bytes):
        self.writer.write(data)
        await self.writer.drain()

    async def handle_greeting(self, data: bytes):
        """Select an authentication method; raises AuthenticationFailure after replying 0xFF."""
        parsed = parse_greeting(data)
        if parsed is None:
            raise ProtocolViolation("Incomplete greeting", ErrorType.PROTOCOL)
        greeting, _ = parsed
        self.logger.debug(f"Greeting from {self.peer}, methods: {list(greeting.methods)}")

        if AuthMethod.USERNAME_PASSWORD in greeting.methods and self.user_pass_auth is not None:
            self.method = AuthMethod.USERNAME_PASSWORD
            await self._send(encode_method_selection(self.method))
            self.state = SessionState.AWAIT_SUB_NEGOTIATION
            return
        if AuthMethod.NO_AUTH in greeting.methods:
            self.method = AuthMethod.NO_AUTH
            await self._send(encode_method_selection(self.method))
            self.state = SessionState.AWAIT_REQUEST
            return

        self.method = AuthMethod.NO_ACCEPTABLE
        await self._send(encode_method_selection(self.method))
        raise AuthenticationFailure(
            "Auth methods not supported", ErrorType.AUTH, {"methods": list(greeting.methods)}
        )

    async def handle_user_pass(self, data: bytes):
        """RFC 1929 sub-negotiation; raises AuthenticationFailure after replying 0x01."""
        parsed = parse_user_pass(data)
        if parsed is None:
            raise ProtocolViolation("Incomplete username/password request", ErrorType.PROTOCOL)
        request, _ = parsed
        shown = request.username.decode("utf-8", errors="replace")

        try:
            username, password = request.credentials()
        except UnicodeDecodeError:
            self.logger.warning(f"Credentials from {self.peer} are not valid UTF-8")
            accepted = False
        else:
            try:
                accepted = bool(self.user_pass_auth(username, password))
            except Exception as e:
                self.logger.error(f"Credential check raised for user {shown!r}: {e}")
                accepted = False

        if not accepted:
            await self._send(encode_user_pass_status(USER_PASS_FAILURE))
            raise AuthenticationFailure(
                "Authentication failed", ErrorType.AUTH, {"username": shown}
            )

        self.username = username
        self.logger.debug(f"User {username!r} authenticated from {self.peer}")
        await self._send(encode_user_pass_status(USER_PASS_SUCCESS))
        self.state = SessionState.AWAIT_REQUEST

    async def handle_request(self, data: bytes):
        """Dispatch CONNECT, UDP ASSOCIATE or reject the command."""
        parsed = parse_request(data)
        if parsed is None:
            raise ProtocolViolation("Incomplete request", ErrorType.PROTOCOL)
        request, _ = parsed
        if request.reserved != 0x00:
            self.logger.warning("RESERVED should be 0x00")

        self.state = SessionState.DISPATCHED

        if request.command == Command.CONNECT:
            destination = request.address
            self.logger.info(f"CONNECT request to {destination} from {self.peer}")
            host = destination.host
            if destination.atyp == AddressType.DOMAIN:
                host = await self.resolve_destination(destination.host)
                if host is None:
                    await self.reply(ReplyCode.HOST_UNREACHABLE)
                    return
            await TcpRelay(self).relay(host, destination.port)
        elif request.command == Command.BIND:
            self.logger.error("BIND method request not supported")
            await self.reply(ReplyCode.COMMAND_NOT_SUPPORTED)
        elif request.command == Command.UDP_ASSOCIATE:
            self.logger.info(f"UDP ASSOCIATE from {self.peer} for {request.address}")
            await self.reply(ReplyCode.SUCCEEDED, Address(AddressType.IPV4, "0.0.0.0", self.port))
        else:
            self.logger.error(f"Unsupported command: {request.command}")
            await self.reply(ReplyCode.COMMAND_NOT_SUPPORTED)

    async def resolve_destination(self, domain: str) -> Optional[str]:
        """First A record for ``domain``; a literal IP is used as-is when lookup fails."""
        try:
            answers = await self.resolver.resolve_a(domain)
            return answers[0]
        except ResolutionFailure as e:
            if is_ip_literal(domain):
                return domain
            log_with_context(str(e), "error", e.context, log=self.logger)
            return None

    async def reply(self, reply_code: int, address: Optional[Address] = None) -> bool:
        """Send the reply header. Only the first call per request writes anything."""
        if self.replied:
            self.logger.debug(f"Reply {reply_code} suppressed, already replied to {self.peer}")
            return False
        self.replied = True
        await self._send(encode_reply(reply_code, address))
        return True

    async def _best_effort_reply(self, reply_code: int):
        try:
            await self.reply(reply_code)
        except ConnectionError as e:
            self.logger.debug(f"Could not send reply to {self.peer}: {e}")

    async def close(self):
        if self.state == SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        if not self.writer.is_closing():
            self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            self.logger.debug(f"Error closing connection to {self.peer}: {e}")
