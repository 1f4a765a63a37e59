# tests/test_server.py
"""
End-to-end tests for the SOCKS5 server.

Every test runs a real proxy and real target servers on loopback.
"""

import asyncio
import contextlib
import ipaddress
import socket
import struct

import pytest

from socks5relay.protocol import Reply, encode_reply
from socks5relay.server import Socks5Server

TIMEOUT = 5


def unused_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


class Target:
    """Loopback TCP server that runs ``behaviour`` per connection and counts connections."""

    def __init__(self, behaviour=None, host="127.0.0.1"):
        self.behaviour = behaviour or self.echo
        self.host = host
        self.connections = 0
        self.server = None
        self.port = None

    @staticmethod
    async def echo(reader, writer):
        while True:
            data = await reader.read(4096)
            if not data:
                break
            writer.write(data)
            await writer.drain()

    async def _handle(self, reader, writer):
        self.connections += 1
        try:
            await self.behaviour(reader, writer)
        except OSError:
            pass
        finally:
            writer.close()

    async def __aenter__(self):
        self.server = await asyncio.start_server(self._handle, self.host, 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *exc):
        self.server.close()
        await self.server.wait_closed()


@contextlib.asynccontextmanager
async def running_proxy(max_connections=0):
    proxy = Socks5Server("127.0.0.1", 0, max_connections=max_connections)
    await proxy.start()
    try:
        yield proxy
    finally:
        proxy.close()
        await proxy.wait_closed()


async def greet(proxy):
    host, port = proxy.bound_address
    reader, writer = await asyncio.open_connection(host, port)
    writer.write(b"\x05\x01\x00")
    await writer.drain()
    assert await asyncio.wait_for(reader.readexactly(2), TIMEOUT) == b"\x05\x00"
    return reader, writer


def connect_request(atyp, address, port):
    return bytes([0x05, 0x01, 0x00, atyp]) + address + struct.pack("!H", port)


async def read_reply(reader):
    head = await asyncio.wait_for(reader.readexactly(4), TIMEOUT)
    size = 4 if head[3] == 0x01 else 16
    rest = await asyncio.wait_for(reader.readexactly(size + 2), TIMEOUT)
    return head + rest


async def open_tunnel(proxy, port, host="127.0.0.1"):
    reader, writer = await greet(proxy)
    writer.write(connect_request(0x01, ipaddress.IPv4Address(host).packed, port))
    await writer.drain()
    reply = await read_reply(reader)
    return reader, writer, reply


async def assert_closed(reader):
    """The proxy closed the connection: no more bytes, just EOF."""
    assert await asyncio.wait_for(reader.read(), TIMEOUT) == b""


@pytest.mark.asyncio
async def test_ipv4_round_trip():
    async with Target() as target, running_proxy() as proxy:
        reader, writer, reply = await open_tunnel(proxy, target.port)
        assert reply == encode_reply(Reply.SUCCEEDED, ("127.0.0.1", target.port))

        payload = bytes(range(256)) * 64
        writer.write(payload)
        await writer.drain()
        assert await asyncio.wait_for(reader.readexactly(len(payload)), TIMEOUT) == payload

        writer.close()
        await writer.wait_closed()


@pytest.mark.asyncio
async def test_bytes_sent_with_request_are_forwarded():
    async with Target() as target, running_proxy() as proxy:
        host, port = proxy.bound_address
        reader, writer = await asyncio.open_connection(host, port)
        writer.write(b"\x05\x01\x00" + connect_request(0x01, bytes([127, 0, 0, 1]), target.port) + b"early")
        await writer.drain()

        assert await asyncio.wait_for(reader.readexactly(2), TIMEOUT) == b"\x05\x00"
        assert (await read_reply(reader))[1] == Reply.SUCCEEDED
        assert await asyncio.wait_for(reader.readexactly(5), TIMEOUT) == b"early"

        writer.close()
        await writer.wait_closed()


@pytest.mark.asyncio
async def test_domain_target():
    async with Target() as target, running_proxy() as proxy:
        reader, writer = await greet(proxy)
        name = b"localhost"
        writer.write(connect_request(0x03, bytes([len(name)]) + name, target.port))
        await writer.drain()

        # localhost may resolve to ::1 first; only 127.0.0.1 is listening
        reply = await read_reply(reader)
        assert reply == encode_reply(Reply.SUCCEEDED, ("127.0.0.1", target.port))

        writer.write(b"via name")
        await writer.drain()
        assert await asyncio.wait_for(reader.readexactly(8), TIMEOUT) == b"via name"

        writer.close()
        await writer.wait_closed()


@pytest.mark.asyncio
async def test_ipv6_target():
    try:
        target_cm = Target(host="::1")
        await target_cm.__aenter__()
    except OSError:
        pytest.skip("IPv6 loopback not available")

    try:
        async with running_proxy() as proxy:
            reader, writer = await greet(proxy)
            writer.write(connect_request(0x04, ipaddress.IPv6Address("::1").packed, target_cm.port))
            await writer.drain()

            reply = await read_reply(reader)
            assert len(reply) == 22
            assert reply == encode_reply(Reply.SUCCEEDED, ("::1", target_cm.port, 0, 0))

            writer.write(b"six")
            await writer.drain()
            assert await asyncio.wait_for(reader.readexactly(3), TIMEOUT) == b"six"

            writer.close()
            await writer.wait_closed()
    finally:
        await target_cm.__aexit__(None, None, None)


@pytest.mark.asyncio
async def test_unreachable_target_gets_failure_reply():
    async with running_proxy() as proxy:
        reader, writer, reply = await open_tunnel(proxy, unused_port())
        assert reply == encode_reply(Reply.CONNECTION_REFUSED)
        await assert_closed(reader)
        writer.close()


@pytest.mark.asyncio
async def test_unsupported_command():
    async with Target() as target, running_proxy() as proxy:
        reader, writer = await greet(proxy)
        # BIND
        writer.write(bytes([0x05, 0x02, 0x00, 0x01, 127, 0, 0, 1]) + struct.pack("!H", target.port))
        await writer.drain()
        assert await read_reply(reader) == encode_reply(Reply.COMMAND_NOT_SUPPORTED)
        await assert_closed(reader)
        writer.close()
        assert target.connections == 0


@pytest.mark.asyncio
async def test_unrecognized_address_type_never_connects():
    async with Target() as target, running_proxy() as proxy:
        reader, writer = await greet(proxy)
        writer.write(bytes([0x05, 0x01, 0x00, 0x02, 127, 0, 0, 1]) + struct.pack("!H", target.port))
        await writer.drain()
        assert await read_reply(reader) == encode_reply(Reply.ADDRESS_TYPE_NOT_SUPPORTED)
        await assert_closed(reader)
        writer.close()
        assert target.connections == 0


@pytest.mark.asyncio
async def test_bad_version_is_dropped_silently():
    async with running_proxy() as proxy:
        host, port = proxy.bound_address
        reader, writer = await asyncio.open_connection(host, port)
        writer.write(b"\x04\x01\x00\x50\x7f\x00\x00\x01\x00")
        await writer.drain()
        await assert_closed(reader)
        writer.close()


@pytest.mark.asyncio
async def test_client_closing_mid_field():
    async with Target() as target, running_proxy() as proxy:
        reader, writer = await greet(proxy)
        writer.write(b"\x05\x01\x00\x01" + bytes([127, 0, 0]))
        writer.write_eof()
        await writer.drain()
        await assert_closed(reader)
        writer.close()
        assert target.connections == 0


@pytest.mark.asyncio
async def test_remote_close_reaches_client():
    async def say_bye(reader, writer):
        writer.write(b"bye")
        await writer.drain()

    async with Target(say_bye) as target, running_proxy() as proxy:
        reader, writer, reply = await open_tunnel(proxy, target.port)
        assert reply[1] == Reply.SUCCEEDED
        assert await asyncio.wait_for(reader.read(), TIMEOUT) == b"bye"
        writer.close()


@pytest.mark.asyncio
async def test_client_close_reaches_remote():
    remote_eof = asyncio.Event()

    async def wait_for_eof(reader, writer):
        while await reader.read(4096):
            pass
        remote_eof.set()

    async with Target(wait_for_eof) as target, running_proxy() as proxy:
        reader, writer, reply = await open_tunnel(proxy, target.port)
        assert reply[1] == Reply.SUCCEEDED
        writer.close()
        await writer.wait_closed()
        await asyncio.wait_for(remote_eof.wait(), TIMEOUT)


@pytest.mark.asyncio
async def test_stalled_client_does_not_block_others():
    async with Target() as target, running_proxy() as proxy:
        host, port = proxy.bound_address
        stalled_reader, stalled_writer = await asyncio.open_connection(host, port)
        stalled_writer.write(b"\x05")
        await stalled_writer.drain()

        reader, writer, reply = await open_tunnel(proxy, target.port)
        assert reply[1] == Reply.SUCCEEDED
        writer.write(b"still flowing")
        await writer.drain()
        assert await asyncio.wait_for(reader.readexactly(13), TIMEOUT) == b"still flowing"

        writer.close()
        stalled_writer.close()
        await assert_closed(stalled_reader)


@pytest.mark.asyncio
async def test_failed_connection_does_not_affect_listener():
    async with Target() as target, running_proxy() as proxy:
        host, port = proxy.bound_address
        for _ in range(3):
            bad_reader, bad_writer = await asyncio.open_connection(host, port)
            bad_writer.write(b"garbage!")
            await bad_writer.drain()
            await assert_closed(bad_reader)
            bad_writer.close()

        reader, writer, reply = await open_tunnel(proxy, target.port)
        assert reply[1] == Reply.SUCCEEDED
        writer.close()


@pytest.mark.asyncio
async def test_max_connections_applies_backpressure():
    async with Target() as target, running_proxy(max_connections=1) as proxy:
        first_reader, first_writer, reply = await open_tunnel(proxy, target.port)
        assert reply[1] == Reply.SUCCEEDED

        host, port = proxy.bound_address
        second_reader, second_writer = await asyncio.open_connection(host, port)
        second_writer.write(b"\x05\x01\x00")
        await second_writer.drain()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(second_reader.readexactly(2), 0.3)

        first_writer.close()
        await first_writer.wait_closed()

        assert await asyncio.wait_for(second_reader.readexactly(2), TIMEOUT) == b"\x05\x00"
        second_writer.close()


@pytest.mark.asyncio
async def test_saturated_server_stops_accepting():
    async with Target() as target, running_proxy(max_connections=1) as proxy:
        first_reader, first_writer, reply = await open_tunnel(proxy, target.port)
        assert reply[1] == Reply.SUCCEEDED
        assert proxy.active_connections == 1
        tasks_before = len(asyncio.all_tasks())

        host, port = proxy.bound_address
        waiting = [await asyncio.open_connection(host, port) for _ in range(50)]
        await asyncio.sleep(0.2)

        # Waiting clients sit in the listen backlog, not in tasks
        assert len(asyncio.all_tasks()) - tasks_before < 5
        assert proxy.active_connections == 1

        for _reader, writer in waiting:
            writer.close()
        first_writer.close()
        await first_writer.wait_closed()


def test_negative_max_connections_rejected():
    with pytest.raises(ValueError):
        Socks5Server("127.0.0.1", 0, max_connections=-1)
