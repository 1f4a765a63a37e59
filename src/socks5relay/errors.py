# src/socks5relay/errors.py
"""
Error taxonomy for the SOCKS5 relay.

Every error here is fatal for the connection it was raised on and for
nothing else. Errors that map to a SOCKS5 reply code carry it in ``reply``
so the acceptor can tell the client before closing.
"""

import errno
from typing import Any, Optional

from .protocol import Reply


class Socks5Error(Exception):
    """Base class for all per-connection failures."""

    reply: Optional[Reply] = None
    default_message = "SOCKS5 error"

    def __init__(self, message: Optional[str] = None, context: Optional[dict[str, Any]] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.context = context or {}


# Handshake errors


class HandshakeError(Socks5Error):
    default_message = "SOCKS5 handshake failed"


class UnsupportedVersion(HandshakeError):
    default_message = "Unsupported socks5 protocol version"

    def __init__(self, version: int, context: Optional[dict[str, Any]] = None):
        super().__init__(f"Unsupported socks protocol version {version:#04x}", context)
        self.version = version


class UnexpectedEOF(HandshakeError):
    default_message = "Unexpected EOF"

    def __init__(self, expected: int, received: int, context: Optional[dict[str, Any]] = None):
        super().__init__(f"Unexpected EOF: expected {expected} bytes, got {received}", context)
        self.expected = expected
        self.received = received


class ExtraDataRead(HandshakeError):
    default_message = "Unexpected extra data"


class UnsupportedCommand(HandshakeError):
    reply = Reply.COMMAND_NOT_SUPPORTED
    default_message = "Unsupported command"

    def __init__(self, command: int, context: Optional[dict[str, Any]] = None):
        super().__init__(f"Unsupported command {command:#04x}", context)
        self.command = command


class UnrecognizedAddrType(HandshakeError):
    reply = Reply.ADDRESS_TYPE_NOT_SUPPORTED
    default_message = "Unrecognized target address type"

    def __init__(self, atyp: int, context: Optional[dict[str, Any]] = None):
        super().__init__(f"Unrecognized target address type {atyp:#04x}", context)
        self.atyp = atyp


class ParseAddrError(HandshakeError):
    default_message = "Parse address error"


class NoAcceptableMethods(HandshakeError):
    default_message = "No acceptable authentication method offered"

    def __init__(self, offered: bytes, context: Optional[dict[str, Any]] = None):
        super().__init__(f"No acceptable authentication method in {list(offered)}", context)
        self.offered = bytes(offered)


# Relay errors


class RelayError(Socks5Error):
    reply = Reply.GENERAL_FAILURE
    default_message = "Relay failed"


class ResolutionError(RelayError):
    reply = Reply.HOST_UNREACHABLE
    default_message = "Name resolution failed"


class ConnectError(RelayError):
    default_message = "Could not connect to any candidate address"

    def __init__(
        self,
        message: Optional[str] = None,
        cause: Optional[BaseException] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.cause = cause
        self.reply = reply_for_os_error(cause)


def reply_for_os_error(exc: Optional[BaseException]) -> Reply:
    """Map the last connect failure onto the closest SOCKS5 reply code."""
    if isinstance(exc, ConnectionRefusedError):
        return Reply.CONNECTION_REFUSED
    if isinstance(exc, TimeoutError):
        return Reply.TTL_EXPIRED
    if isinstance(exc, OSError):
        if exc.errno == errno.ENETUNREACH:
            return Reply.NETWORK_UNREACHABLE
        if exc.errno == errno.EHOSTUNREACH:
            return Reply.HOST_UNREACHABLE
    return Reply.GENERAL_FAILURE
