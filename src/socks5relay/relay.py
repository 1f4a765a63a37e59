# src/socks5relay/relay.py
"""
Relay engine: connect to the target, reply to the client, splice bytes.

Once relaying starts the two directions run as sibling tasks. Whichever
finishes first (EOF or I/O error) shuts down both connections, which
unblocks the other direction so it runs to completion as well.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from .address import TargetDescriptor, resolve
from .errors import ConnectError
from .logs import log_with_context
from .protocol import Reply, encode_reply

logger = logging.getLogger(__name__)

PIPE_CHUNK_SIZE = 64 * 1024
# Time a closing stream gets to flush buffered bytes before it is aborted
SHUTDOWN_GRACE = 5.0


async def open_remote(
    candidates: Sequence[tuple[str, int]],
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Connect to the first candidate that accepts, in order."""
    last_error: Optional[OSError] = None
    for host, port in candidates:
        try:
            return await asyncio.open_connection(host, port)
        except OSError as e:
            last_error = e
            logger.debug(f"Connect to {host}:{port} failed: {e}")

    if last_error is None:
        raise ConnectError("No candidate addresses to connect to")
    raise ConnectError(
        f"All {len(candidates)} candidate(s) failed, last error: {last_error}",
        cause=last_error,
        context={"candidates": [f"{h}:{p}" for h, p in candidates]},
    )


async def send_reply(writer: asyncio.StreamWriter, reply: int, sockaddr=None) -> None:
    writer.write(encode_reply(reply, sockaddr))
    await writer.drain()


async def pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, direction: str = "") -> None:
    """Copy bytes from reader to writer until EOF or an I/O error."""
    try:
        while True:
            data = await reader.read(PIPE_CHUNK_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except OSError as e:
        logger.debug(f"Relay {direction} ended with error: {e}")


async def shutdown_stream(writer: asyncio.StreamWriter) -> None:
    """
    Close both directions of a stream.

    Pending output is flushed for up to SHUTDOWN_GRACE seconds, then the
    transport is aborted. Calling this on an already closed stream is a no-op.
    """
    writer.close()
    try:
        await asyncio.wait_for(writer.wait_closed(), SHUTDOWN_GRACE)
    except asyncio.TimeoutError:
        writer.transport.abort()
    except OSError:
        pass


async def splice(
    client_reader: asyncio.StreamReader,
    client_writer: asyncio.StreamWriter,
    remote_reader: asyncio.StreamReader,
    remote_writer: asyncio.StreamWriter,
    label: str = "",
) -> None:
    upstream = asyncio.create_task(pipe(client_reader, remote_writer, f"c2r {label}"))
    downstream = asyncio.create_task(pipe(remote_reader, client_writer, f"r2c {label}"))
    tasks = {upstream, downstream}
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        await asyncio.gather(shutdown_stream(client_writer), shutdown_stream(remote_writer))
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()


async def relay(
    client_reader: asyncio.StreamReader,
    client_writer: asyncio.StreamWriter,
    target: TargetDescriptor,
) -> None:
    """
    Connect to ``target``, send the success reply and relay until either side closes.

    Resolution and connect failures raise RelayError subclasses; the caller
    owns the client stream and reports the failure to the client.
    """
    candidates = await resolve(target)
    remote_reader, remote_writer = await open_remote(candidates)
    try:
        peer = remote_writer.get_extra_info("peername")
        await send_reply(client_writer, Reply.SUCCEEDED, peer)
        log_with_context(logger, f"Relaying to {target}", "debug", {"target": str(target), "peer": peer})
        await splice(client_reader, client_writer, remote_reader, remote_writer, str(target))
    finally:
        await shutdown_stream(remote_writer)
    logger.debug(f"Relay to {target} finished")
