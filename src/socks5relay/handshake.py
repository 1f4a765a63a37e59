# src/socks5relay/handshake.py
"""
SOCKS5 handshake engine.

Drives one client connection through the negotiation and produces the
TargetDescriptor the relay should connect to:

    GREETING -> METHOD_SELECTION -> REQUEST -> ADDRESS -> PORT -> DONE

Any failure moves the handshake to FAILED and propagates; nothing is
retried. A TargetDescriptor is only returned once every field was read.
"""

from __future__ import annotations

import asyncio
import logging
import struct
from enum import Enum
from typing import Optional, Sequence

from .address import TargetDescriptor, parse_target
from .auth import Authenticator, default_authenticators, select_authenticator
from .errors import (
    NoAcceptableMethods,
    UnrecognizedAddrType,
    UnsupportedCommand,
    UnsupportedVersion,
)
from .ioutil import read_exact
from .protocol import ADDRESS_LENGTHS, SOCKS_VERSION, AddressType, AuthMethod, Command, encode_method_selection

logger = logging.getLogger(__name__)


class HandshakeState(Enum):
    GREETING = "GREETING"
    METHOD_SELECTION = "METHOD_SELECTION"
    REQUEST = "REQUEST"
    ADDRESS = "ADDRESS"
    PORT = "PORT"
    DONE = "DONE"
    FAILED = "FAILED"


class Handshake:
    """Negotiation state machine for a single client connection."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        authenticators: Optional[Sequence[Authenticator]] = None,
    ):
        self.reader = reader
        self.writer = writer
        self.authenticators = list(authenticators) if authenticators else default_authenticators()
        self.state = HandshakeState.GREETING
        self.offered_methods = b""
        self.atyp: Optional[int] = None
        self.raw_address = b""

    async def run(self) -> TargetDescriptor:
        try:
            await self._greeting()
            await self._select_method()
            await self._request()
            await self._address()
            target = await self._port()
        except Exception:
            self.state = HandshakeState.FAILED
            raise
        self.state = HandshakeState.DONE
        return target

    def _check_version(self, version: int) -> None:
        if version != SOCKS_VERSION:
            raise UnsupportedVersion(version, context={"state": self.state.value})

    async def _greeting(self) -> None:
        version, nmethods = await read_exact(self.reader, 2)
        self._check_version(version)
        self.offered_methods = await read_exact(self.reader, nmethods)
        self.state = HandshakeState.METHOD_SELECTION

    async def _select_method(self) -> None:
        authenticator = select_authenticator(self.offered_methods, self.authenticators)
        if authenticator is None:
            self.writer.write(encode_method_selection(AuthMethod.NO_ACCEPTABLE))
            await self.writer.drain()
            raise NoAcceptableMethods(self.offered_methods)

        self.writer.write(encode_method_selection(authenticator.method))
        await self.writer.drain()
        await authenticator.authenticate(self.reader, self.writer)
        self.state = HandshakeState.REQUEST

    async def _request(self) -> None:
        version, command, _rsv, atyp = await read_exact(self.reader, 4)
        self._check_version(version)
        if command != Command.CONNECT:
            raise UnsupportedCommand(command)
        self.atyp = atyp
        self.state = HandshakeState.ADDRESS

    async def _address(self) -> None:
        if self.atyp == AddressType.DOMAIN:
            (length,) = await read_exact(self.reader, 1)
            self.raw_address = await read_exact(self.reader, length)
        elif self.atyp in ADDRESS_LENGTHS:
            self.raw_address = await read_exact(self.reader, ADDRESS_LENGTHS[AddressType(self.atyp)])
        else:
            raise UnrecognizedAddrType(self.atyp)
        self.state = HandshakeState.PORT

    async def _port(self) -> TargetDescriptor:
        (port,) = struct.unpack("!H", await read_exact(self.reader, 2))
        return parse_target(self.atyp, self.raw_address, port)


async def negotiate(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    authenticators: Optional[Sequence[Authenticator]] = None,
) -> TargetDescriptor:
    """Run a full handshake and return the requested target."""
    target = await Handshake(reader, writer, authenticators).run()
    logger.debug(f"Handshake complete, target {target}")
    return target
