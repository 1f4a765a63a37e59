# src/socks5relay/address.py
"""
Target descriptors and the address resolver.

A TargetDescriptor is built from the wire request once the handshake has
read every field. IP targets convert to a connectable address without any
I/O; domain targets are looked up through the event loop's resolver at
connect time.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Union

from .errors import ParseAddrError, ResolutionError, UnrecognizedAddrType
from .protocol import ADDRESS_LENGTHS, AddressType

logger = logging.getLogger(__name__)

Host = Union[ipaddress.IPv4Address, ipaddress.IPv6Address, str]


@dataclass(frozen=True)
class TargetDescriptor:
    atyp: AddressType
    host: Host
    port: int

    @property
    def is_domain(self) -> bool:
        return self.atyp == AddressType.DOMAIN

    def __str__(self) -> str:
        if self.atyp == AddressType.IPV6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def parse_target(atyp: int, raw_address: bytes, port: int) -> TargetDescriptor:
    """Build a TargetDescriptor from the raw address field of a request."""
    try:
        kind = AddressType(atyp)
    except ValueError:
        raise UnrecognizedAddrType(atyp) from None

    if not 0 <= port <= 0xFFFF:
        raise ParseAddrError(f"Port out of range: {port}")

    if kind == AddressType.DOMAIN:
        try:
            domain = raw_address.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseAddrError("Domain name is not valid UTF-8") from e
        if not domain:
            raise ParseAddrError("Empty domain name")
        return TargetDescriptor(kind, domain, port)

    if len(raw_address) != ADDRESS_LENGTHS[kind]:
        raise ParseAddrError(
            f"Expected {ADDRESS_LENGTHS[kind]} address bytes for {kind.name}, got {len(raw_address)}"
        )
    if kind == AddressType.IPV4:
        return TargetDescriptor(kind, ipaddress.IPv4Address(raw_address), port)
    return TargetDescriptor(kind, ipaddress.IPv6Address(raw_address), port)


async def resolve(target: TargetDescriptor) -> list[tuple[str, int]]:
    """
    Turn a target into an ordered list of (host, port) candidates.

    The list may be empty for a domain that resolves to nothing; the caller
    decides what that means.
    """
    if not target.is_domain:
        return [(str(target.host), target.port)]

    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(target.host, target.port, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as e:
        raise ResolutionError(
            f"Failed to resolve {target.host}: {e}", context={"target": str(target)}
        ) from e

    candidates: list[tuple[str, int]] = []
    for _family, _type, _proto, _canonname, sockaddr in infos:
        candidate = (sockaddr[0], sockaddr[1])
        if candidate not in candidates:
            candidates.append(candidate)

    logger.debug(f"Resolved {target} to {len(candidates)} candidate(s)")
    return candidates
