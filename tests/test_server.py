import asyncio
import contextlib

import pytest

from asciicall.protocol import Command, receive_command, send_command
from asciicall.server import Call, SFUServer

TIMEOUT = 3


@contextlib.asynccontextmanager
async def running_server():
    server = SFUServer("127.0.0.1", 0, "127.0.0.1", 0)
    await server.start()
    try:
        yield server
    finally:
        await server.close()


async def recv(reader):
    return await asyncio.wait_for(receive_command(reader), TIMEOUT)


async def connect(server, username):
    reader, writer = await asyncio.open_connection(*server.tcp_address)
    await send_command(writer, Command.HELLO_FROM_CLIENT, username)
    return reader, writer


async def close(writer):
    writer.close()
    with contextlib.suppress(Exception):
        await writer.wait_closed()


def test_call_other_sid():
    call = Call({"alice": b"AAAA", "bob": b"BBBB"})
    assert call.other_sid(b"AAAA") == b"BBBB"
    assert call.other_sid(b"BBBB") == b"AAAA"
    assert call.other_sid(b"CCCC") is None
    assert call.sids_requested == 0


def test_datagram_registers_then_forwards():
    server = SFUServer("127.0.0.1", 0, "127.0.0.1", 0)
    server.active_calls.append(Call({"alice": b"AAAA", "bob": b"BBBB"}))
    alice_addr = ("127.0.0.1", 5001)
    bob_addr = ("127.0.0.1", 5002)

    assert server.handle_datagram(b"AAAAhello", alice_addr) is None
    assert server.sids_to_udp_addrs[b"AAAA"] == alice_addr
    assert server.handle_datagram(b"BBBBhi", bob_addr) is None

    assert server.handle_datagram(b"AAAAframe", alice_addr) == (b"frame", bob_addr)
    assert server.handle_datagram(b"BBBBback", bob_addr) == (b"back", alice_addr)


def test_datagram_without_peer_is_dropped():
    server = SFUServer("127.0.0.1", 0, "127.0.0.1", 0)
    server.active_calls.append(Call({"alice": b"AAAA", "bob": b"BBBB"}))
    server.handle_datagram(b"AAAAx", ("127.0.0.1", 5001))
    assert server.handle_datagram(b"AAAAx", ("127.0.0.1", 5001)) is None

    server.handle_datagram(b"ZZZZx", ("127.0.0.1", 5003))
    assert server.handle_datagram(b"ZZZZx", ("127.0.0.1", 5003)) is None


def test_short_datagram_ignored():
    server = SFUServer("127.0.0.1", 0, "127.0.0.1", 0)
    assert server.handle_datagram(b"AB", ("127.0.0.1", 5001)) is None
    assert server.sids_to_udp_addrs == {}


@pytest.mark.asyncio
async def test_hello_and_user_directory():
    async with running_server() as server:
        a_reader, a_writer = await connect(server, "alice")
        assert await recv(a_reader) == (Command.HELLO_FROM_SERVER, None)

        b_reader, b_writer = await connect(server, "bob")
        assert await recv(b_reader) == (Command.HELLO_FROM_SERVER, None)
        assert await recv(b_reader) == (Command.ADD_USER_TO_CLIENT, "alice")
        assert await recv(a_reader) == (Command.ADD_USER_TO_CLIENT, "bob")
        assert set(server.users) == {"alice", "bob"}

        await close(b_writer)
        assert await recv(a_reader) == (Command.REMOVE_USER_FROM_CLIENT, "bob")
        await close(a_writer)


@pytest.mark.asyncio
async def test_username_already_taken():
    async with running_server() as server:
        a_reader, a_writer = await connect(server, "alice")
        assert await recv(a_reader) == (Command.HELLO_FROM_SERVER, None)

        d_reader, d_writer = await connect(server, "alice")
        assert await recv(d_reader) == (Command.USERNAME_ALREADY_TAKEN, None)
        await close(d_writer)
        await close(a_writer)


@pytest.mark.asyncio
async def test_call_to_unknown_user_closes_connection():
    async with running_server() as server:
        reader, writer = await connect(server, "alice")
        assert await recv(reader) == (Command.HELLO_FROM_SERVER, None)
        await send_command(writer, Command.REQUEST_CALL, "nobody")
        assert await recv(reader) is None
        await close(writer)
        await asyncio.sleep(0.05)
        assert "alice" not in server.users


@pytest.mark.asyncio
async def test_deny_call_is_relayed():
    async with running_server() as server:
        a_reader, a_writer = await connect(server, "alice")
        await recv(a_reader)
        b_reader, b_writer = await connect(server, "bob")
        await recv(b_reader)
        await recv(b_reader)
        await recv(a_reader)

        await send_command(a_writer, Command.REQUEST_CALL, "bob")
        assert await recv(b_reader) == (Command.REQUEST_CALL, "alice")
        await send_command(b_writer, Command.DENY_CALL, "alice")
        assert await recv(a_reader) == (Command.DENY_CALL, "bob")
        assert server.active_calls == []

        await close(a_writer)
        await close(b_writer)


@pytest.mark.asyncio
async def test_full_call_lifecycle():
    async with running_server() as server:
        a_reader, a_writer = await connect(server, "alice")
        await recv(a_reader)
        b_reader, b_writer = await connect(server, "bob")
        await recv(b_reader)
        await recv(b_reader)
        await recv(a_reader)
        c_reader, c_writer = await connect(server, "carol")
        assert await recv(c_reader) == (Command.HELLO_FROM_SERVER, None)
        added = {await recv(c_reader), await recv(c_reader)}
        assert added == {
            (Command.ADD_USER_TO_CLIENT, "alice"),
            (Command.ADD_USER_TO_CLIENT, "bob"),
        }
        await recv(a_reader)
        await recv(b_reader)

        await send_command(a_writer, Command.REQUEST_CALL, "bob")
        assert await recv(b_reader) == (Command.REQUEST_CALL, "alice")
        await send_command(b_writer, Command.START_CALL, "alice")
        assert await recv(a_reader) == (Command.START_CALL, "bob")

        removed = {await recv(c_reader), await recv(c_reader)}
        assert removed == {
            (Command.REMOVE_USER_FROM_CLIENT, "alice"),
            (Command.REMOVE_USER_FROM_CLIENT, "bob"),
        }

        assert len(server.active_calls) == 1
        call = server.active_calls[0]
        assert set(call.usernames_to_sids) == {"alice", "bob"}

        await send_command(a_writer, Command.REQUEST_CALL_STREAM_ID, "bob")
        reply = await asyncio.wait_for(a_reader.readexactly(5), TIMEOUT)
        assert reply[0] == Command.SEND_CALL_STREAM_ID
        assert reply[1:] == call.usernames_to_sids["alice"]

        await send_command(b_writer, Command.REQUEST_CALL_STREAM_ID, "alice")
        reply = await asyncio.wait_for(b_reader.readexactly(5), TIMEOUT)
        assert reply[1:] == call.usernames_to_sids["bob"]
        assert call.sids_requested == 2

        await close(a_writer)
        assert await recv(b_reader) == (Command.REMOVE_USER_FROM_CLIENT, "alice")
        assert await recv(b_reader) == (Command.END_CALL, None)
        assert server.active_calls == []

        await close(b_writer)
        await close(c_writer)


@pytest.mark.asyncio
async def test_stream_id_without_call_closes_connection():
    async with running_server() as server:
        reader, writer = await connect(server, "alice")
        await recv(reader)
        await send_command(writer, Command.REQUEST_CALL_STREAM_ID, "bob")
        assert await recv(reader) is None
        await close(writer)


@pytest.mark.asyncio
async def test_udp_relay_between_participants():
    async with running_server() as server:
        server.active_calls.append(Call({"alice": b"AAAA", "bob": b"BBBB"}))
        loop = asyncio.get_running_loop()
        received = asyncio.Queue()

        class Receiver(asyncio.DatagramProtocol):
            def datagram_received(self, data, addr):
                received.put_nowait(data)

        a_tr, _ = await loop.create_datagram_endpoint(
            asyncio.DatagramProtocol, local_addr=("127.0.0.1", 0)
        )
        b_tr, _ = await loop.create_datagram_endpoint(
            Receiver, local_addr=("127.0.0.1", 0)
        )
        try:
            target = server.udp_address
            a_tr.sendto(b"AAAAreg", target)
            b_tr.sendto(b"BBBBreg", target)
            for _ in range(100):
                if len(server.sids_to_udp_addrs) == 2:
                    break
                await asyncio.sleep(0.01)
            a_addr = a_tr.get_extra_info("sockname")[:2]
            b_addr = b_tr.get_extra_info("sockname")[:2]
            assert tuple(server.sids_to_udp_addrs[b"AAAA"]) == tuple(a_addr)
            assert tuple(server.sids_to_udp_addrs[b"BBBB"]) == tuple(b_addr)
            a_tr.sendto(b"AAAApayload", target)
            data = await asyncio.wait_for(received.get(), TIMEOUT)
            assert data == b"payload"
        finally:
            a_tr.close()
            b_tr.close()