# src/socks5relay/protocol.py
"""
SOCKS5 wire constants and reply encoders (RFC 1928).

All multi-byte integers on the wire are big-endian.
"""

import ipaddress
import struct
from enum import IntEnum
from typing import Optional, Tuple, Union

SOCKS_VERSION = 0x05
RSV = 0x00


class AuthMethod(IntEnum):
    NO_AUTH = 0x00
    GSSAPI = 0x01
    USERNAME_PASSWORD = 0x02
    NO_ACCEPTABLE = 0xFF


class Command(IntEnum):
    CONNECT = 0x01
    BIND = 0x02
    UDP_ASSOCIATE = 0x03


class AddressType(IntEnum):
    IPV4 = 0x01
    DOMAIN = 0x03
    IPV6 = 0x04


class Reply(IntEnum):
    SUCCEEDED = 0x00
    GENERAL_FAILURE = 0x01
    NOT_ALLOWED = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08


# Address field sizes per address type
ADDRESS_LENGTHS = {
    AddressType.IPV4: 4,
    AddressType.IPV6: 16,
}

IPV4_REPLY_SIZE = 10
IPV6_REPLY_SIZE = 22

_IPV4_REPLY = struct.Struct("!BBBB4sH")
_IPV6_REPLY = struct.Struct("!BBBB16sH")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def encode_method_selection(method: int) -> bytes:
    """Method selection message: VER, METHOD."""
    return struct.pack("!BB", SOCKS_VERSION, method)


def encode_ipv4_reply(reply: int, address: Union[str, ipaddress.IPv4Address], port: int) -> bytes:
    """Encode a 10-byte reply carrying an IPv4 bound address."""
    addr = ipaddress.IPv4Address(address)
    return _IPV4_REPLY.pack(SOCKS_VERSION, reply, RSV, AddressType.IPV4, addr.packed, port)


def encode_ipv6_reply(reply: int, address: Union[str, ipaddress.IPv6Address], port: int) -> bytes:
    """Encode a 22-byte reply carrying an IPv6 bound address."""
    addr = ipaddress.IPv6Address(address)
    return _IPV6_REPLY.pack(SOCKS_VERSION, reply, RSV, AddressType.IPV6, addr.packed, port)


def encode_reply(reply: int, sockaddr: Optional[Tuple] = None) -> bytes:
    """
    Encode a reply for a socket address as returned by getpeername().

    The address family of the socket address picks the encoding, so IPv6
    peers (4-tuples) get the 22-byte form. ``None`` encodes 0.0.0.0:0, which
    is what failure replies carry.
    """
    if sockaddr is None:
        return encode_ipv4_reply(reply, "0.0.0.0", 0)

    host, port = sockaddr[0], sockaddr[1]
    # Scoped link-local addresses come back as "fe80::1%eth0"
    addr = ipaddress.ip_address(host.split("%", 1)[0])
    if addr.version == 4:
        return encode_ipv4_reply(reply, addr, port)
    return encode_ipv6_reply(reply, addr, port)
