"""socks5relay package namespace.

A SOCKS5 (RFC 1928) CONNECT relay built on asyncio streams.
"""

from .__about__ import __version__
from . import address
from . import auth
from . import config
from . import errors
from . import handshake
from . import protocol
from . import relay
from . import server

__all__ = ["__version__", "address", "auth", "config", "errors", "handshake", "protocol", "relay", "server"]
