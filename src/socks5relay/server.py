# src/socks5relay/server.py
"""
Connection acceptor for the SOCKS5 relay.

Every accepted connection runs handshake and relay in its own task. A
failure on one connection is logged and dropped; it never reaches the
listener or any other connection.

With ``max_connections`` set, the accept loop takes a slot before it
accepts. A saturated server stops accepting, so waiting clients stay in
the kernel's listen backlog instead of piling up as tasks.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Optional, Sequence

from .auth import Authenticator, default_authenticators
from .config import parse_bind
from .errors import Socks5Error
from .handshake import negotiate
from .logs import log_with_context
from .relay import relay, send_reply, shutdown_stream

logger = logging.getLogger(__name__)

LISTEN_BACKLOG = 128
ACCEPT_RETRY_DELAY = 0.1


class Socks5Server:
    """asyncio SOCKS5 CONNECT server."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 1080,
        max_connections: int = 0,
        authenticators: Optional[Sequence[Authenticator]] = None,
    ):
        if max_connections < 0:
            raise ValueError("max_connections must be >= 0")
        self.host = host
        self.port = port
        self.max_connections = max_connections
        self.authenticators = list(authenticators) if authenticators else default_authenticators()
        self.active_connections = 0
        self._limiter = asyncio.Semaphore(max_connections) if max_connections else None
        self._listener: Optional[socket.socket] = None
        self._accept_task: Optional[asyncio.Task] = None
        self._connections: set[asyncio.Task] = set()

    @property
    def sockets(self):
        if self._listener is None or self._listener.fileno() == -1:
            return ()
        return (self._listener,)

    @property
    def bound_address(self) -> Optional[tuple[str, int]]:
        if not self.sockets:
            return None
        sockname = self.sockets[0].getsockname()
        return sockname[0], sockname[1]

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(
            self.host, self.port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
        )
        family, socktype, proto, _canonname, sockaddr = infos[0]
        sock = socket.socket(family, socktype, proto)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(sockaddr)
            sock.listen(LISTEN_BACKLOG)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        self._listener = sock
        self._accept_task = asyncio.create_task(self._accept_loop())
        self._accept_task.add_done_callback(self._close_listener)
        limit = self.max_connections or "unbounded"
        logger.info(f"SOCKS5 server listening on {sock.getsockname()} (max connections: {limit})")

    async def serve_forever(self) -> None:
        if self._accept_task is None:
            await self.start()
        try:
            await self._accept_task
        finally:
            self.close()

    def close(self) -> None:
        if self._accept_task is not None:
            self._accept_task.cancel()
        elif self._listener is not None:
            self._listener.close()

    async def wait_closed(self) -> None:
        if self._accept_task is not None:
            await asyncio.gather(self._accept_task, return_exceptions=True)
        if self._connections:
            await asyncio.gather(*self._connections, return_exceptions=True)

    def _close_listener(self, _task: asyncio.Task) -> None:
        if self._listener is not None:
            self._listener.close()

    def _release_slot(self) -> None:
        if self._limiter is not None:
            self._limiter.release()

    async def _accept_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            if self._limiter is not None:
                await self._limiter.acquire()
            try:
                conn, _addr = await loop.sock_accept(self._listener)
            except asyncio.CancelledError:
                self._release_slot()
                raise
            except OSError as e:
                self._release_slot()
                logger.error(f"Accept failed: {e}")
                await asyncio.sleep(ACCEPT_RETRY_DELAY)
                continue
            task = asyncio.create_task(self._handle_accepted(conn))
            self._connections.add(task)
            task.add_done_callback(self._connection_done)

    def _connection_done(self, task: asyncio.Task) -> None:
        self._connections.discard(task)
        self._release_slot()

    async def _handle_accepted(self, conn: socket.socket) -> None:
        try:
            reader, writer = await asyncio.open_connection(sock=conn)
        except OSError as e:
            logger.debug(f"Could not set up accepted connection: {e}")
            conn.close()
            return
        await self.handle_client(reader, writer)

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        self.active_connections += 1
        try:
            target = await negotiate(reader, writer, self.authenticators)
            log_with_context(logger, f"CONNECT {target} from {peer}", "info", {"peer": peer})
            await relay(reader, writer, target)
        except Socks5Error as e:
            log_with_context(
                logger,
                f"Connection from {peer} failed: {e}",
                "info",
                {**e.context, "peer": peer, "error_type": type(e).__name__},
            )
            if e.reply is not None:
                await self._send_failure(writer, e.reply)
        except OSError as e:
            logger.debug(f"I/O error on connection from {peer}: {e}")
        except Exception:
            logger.exception(f"Unhandled error on connection from {peer}")
        finally:
            self.active_connections -= 1
            await shutdown_stream(writer)

    async def _send_failure(self, writer: asyncio.StreamWriter, reply: int) -> None:
        try:
            await send_reply(writer, reply)
        except OSError as e:
            logger.debug(f"Could not send failure reply {reply:#04x}: {e}")


async def serve(bind: str, max_connections: int = 0) -> None:
    """Run a server on a ``host:port`` bind address until cancelled."""
    host, port = parse_bind(bind)
    server = Socks5Server(host, port, max_connections)
    await server.start()
    await server.serve_forever()
