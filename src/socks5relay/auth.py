"""
Authentication method negotiation.

The server holds an ordered list of authenticators. During the greeting the
first one whose method the client offered wins. Only "no authentication
required" is implemented; other methods plug in by subclassing
Authenticator.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from .protocol import AuthMethod


class Authenticator(ABC):
    """Base interface for SOCKS5 authentication methods."""

    @property
    @abstractmethod
    def method(self) -> AuthMethod:
        """Method code announced in the method selection message."""
        pass

    @abstractmethod
    async def authenticate(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Run the method-specific sub-negotiation. Raise on failure."""
        pass


class NoAuthAuthenticator(Authenticator):
    @property
    def method(self) -> AuthMethod:
        return AuthMethod.NO_AUTH

    async def authenticate(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        return None


def default_authenticators() -> list[Authenticator]:
    return [NoAuthAuthenticator()]


def select_authenticator(offered: bytes, authenticators: Iterable[Authenticator]) -> Optional[Authenticator]:
    """Pick the first configured authenticator whose method was offered."""
    offered_set = set(offered)
    for authenticator in authenticators:
        if authenticator.method in offered_set:
            return authenticator
    return None
