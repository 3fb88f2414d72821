"""
Logging and error types for socks5d.

Structured (JSON line) logging with optional rotation, plus the exception
hierarchy sessions use to map failures onto SOCKS reply codes.
"""

import json
import logging
import logging.handlers
from enum import Enum
from typing import Any, Optional

LOGGER_NAME = "socks5d"

logger = logging.getLogger(LOGGER_NAME)


class ContextFormatter(logging.Formatter):
    def format(self, record):
        if hasattr(record, "context") and not isinstance(record.context, str):
            record.context = json.dumps(record.context, default=str)
        elif not hasattr(record, "context"):
            record.context = "{}"
        return super().format(record)


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    Set up structured logging for the ``socks5d`` logger tree.

    Logs go to the console and, when ``log_file`` is given, to a rotating file.
    Calling it again replaces the handlers installed by a previous call.
    """
    root = logging.getLogger(LOGGER_NAME)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    formatter = ContextFormatter(
        json.dumps(
            {
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "component": "%(name)s",
                "message": "%(message)s",
                "context": "%(context)s",
            }
        )
    )

    for handler in list(root.handlers):
        if getattr(handler, "_socks5d_handler", False):
            root.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler._socks5d_handler = True
    root.addHandler(console_handler)

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5
        )
        file_handler.setFormatter(formatter)
        file_handler._socks5d_handler = True
        root.addHandler(file_handler)

    return root


class ErrorType(Enum):
    PROTOCOL = "protocol"
    AUTH = "auth"
    UPSTREAM = "upstream"
    RESOLUTION = "resolution"
    DATAGRAM = "datagram"
    CONFIG = "config"


class Socks5Error(Exception):
    """Base error. ``reply_code`` is the REP byte to send, when a reply is still meaningful."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType,
        context: dict[str, Any] = None,
        reply_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.context = context or {}
        self.reply_code = reply_code


class ProtocolViolation(Socks5Error):
    pass


class AddressTypeNotSupported(ProtocolViolation):
    pass


class InvalidDomainName(ProtocolViolation):
    pass


class AuthenticationFailure(Socks5Error):
    pass


class UpstreamConnectFailure(Socks5Error):
    pass


class ResolutionFailure(Socks5Error):
    pass


class MalformedDatagram(Socks5Error):
    pass


def log_with_context(
    message: str,
    level: str = "info",
    context: dict[str, Any] = None,
    log: Any = None,
):
    """
    Log with additional context.

    ``log`` is any object with debug/info/warning/error methods; it defaults
    to the package logger.
    """
    extra = {"context": context or {}}
    target = log if log is not None else logger
    method = getattr(target, level, None) or getattr(target, "info")
    if isinstance(target, (logging.Logger, logging.LoggerAdapter)):
        method(message, extra=extra)
    else:
        method(f"{message} {json.dumps(extra['context'], default=str)}")
