"""Exact-length reads over asyncio streams."""

import asyncio

from .errors import ExtraDataRead, UnexpectedEOF


async def read_exact(reader: asyncio.StreamReader, count: int) -> bytes:
    """
    Read exactly ``count`` bytes from ``reader``.

    Raises UnexpectedEOF if the peer closes first and ExtraDataRead if the
    stream somehow hands back more than was asked for.
    """
    if count <= 0:
        return b""

    try:
        data = await reader.readexactly(count)
    except asyncio.IncompleteReadError as e:
        raise UnexpectedEOF(count, len(e.partial)) from e

    if len(data) > count:
        raise ExtraDataRead(f"Unexpected extra data: asked for {count} bytes, got {len(data)}")
    return data
