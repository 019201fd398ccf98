"""Selective forwarding server: TCP control channel plus UDP frame relay."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from asciicall.protocol import (
    TCP_PORT,
    UDP_PORT,
    Command,
    ProtocolError,
    receive_command,
    send_command,
)

log = logging.getLogger(__name__)

TCP_BIND_HOST = "0.0.0.0"
UDP_BIND_HOST = "fly-global-services"

SID_LENGTH = 4
MAX_DATAGRAM = 4844

Address = Tuple[str, int]
Message = Tuple[int, Optional[str]]


@dataclass
class Call:
    """An active call between two users, each with its own stream id."""

    usernames_to_sids: Dict[str, bytes]
    sids_requested: int = 0

    def other_sid(self, sid: bytes) -> Optional[bytes]:
        """Return the stream id of the other participant, or None if sid is not in this call."""
        if sid not in self.usernames_to_sids.values():
            return None
        return next((s for s in self.usernames_to_sids.values() if s != sid), None)

    def __contains__(self, username: object) -> bool:
        return username in self.usernames_to_sids


class _UdpRelay(asyncio.DatagramProtocol):
    def __init__(self, server: "SFUServer") -> None:
        self._server = server

    def datagram_received(self, data: bytes, addr: Address) -> None:
        self._server.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        log.error("UDP Error: %s", exc)


@dataclass
class _Session:
    queue: "asyncio.Queue[Message]" = field(default_factory=asyncio.Queue)
    username: Optional[str] = None


class SFUServer:
    """Keeps the user directory, brokers calls and relays video datagrams."""

    def __init__(
        self,
        tcp_host: str = TCP_BIND_HOST,
        tcp_port: int = TCP_PORT,
        udp_host: str = UDP_BIND_HOST,
        udp_port: int = UDP_PORT,
    ) -> None:
        self.tcp_host = tcp_host
        self.tcp_port = tcp_port
        self.udp_host = udp_host
        self.udp_port = udp_port
        self.users: Dict[str, "asyncio.Queue[Message]"] = {}
        self.active_calls: List[Call] = []
        self.sids_to_udp_addrs: Dict[bytes, Address] = {}
        self._tcp_server: Optional[asyncio.base_events.Server] = None
        self._udp_transport: Optional[asyncio.DatagramTransport] = None
        self._writers: Set[asyncio.StreamWriter] = set()

    @property
    def tcp_address(self) -> Address:
        if self._tcp_server is None:
            raise RuntimeError("server not started")
        return self._tcp_server.sockets[0].getsockname()[:2]

    @property
    def udp_address(self) -> Address:
        if self._udp_transport is None:
            raise RuntimeError("server not started")
        return self._udp_transport.get_extra_info("sockname")[:2]

    async def start(self) -> None:
        """Bind the TCP listener and the UDP relay socket."""
        log.info("WeSFU listening on tcp: %s, udp: %s", self.tcp_port, self.udp_port)
        self._tcp_server = await asyncio.start_server(
            self.handle_connection, self.tcp_host, self.tcp_port
        )
        loop = asyncio.get_running_loop()
        self._udp_transport, _ = await loop.create_datagram_endpoint(
            lambda: _UdpRelay(self), local_addr=(self.udp_host, self.udp_port)
        )

    async def serve_forever(self) -> None:
        """Start if needed and accept connections until cancelled."""
        if self._tcp_server is None:
            await self.start()
        assert self._tcp_server is not None
        try:
            await self._tcp_server.serve_forever()
        finally:
            await self.close()

    async def close(self) -> None:
        """Stop listening and drop every open connection."""
        if self._udp_transport is not None:
            self._udp_transport.close()
            self._udp_transport = None
        for writer in list(self._writers):
            writer.close()
        if self._tcp_server is not None:
            server, self._tcp_server = self._tcp_server, None
            server.close()
            with contextlib.suppress(Exception):
                await server.wait_closed()

    # --- UDP relay -------------------------------------------------------

    def handle_datagram(self, data: bytes, addr: Address) -> Optional[Tuple[bytes, Address]]:
        """Register or forward one datagram; return what was forwarded and where."""
        data = data[:MAX_DATAGRAM]
        if len(data) < SID_LENGTH:
            return None
        sid, message = data[:SID_LENGTH], data[SID_LENGTH:]

        if sid not in self.sids_to_udp_addrs:
            self.sids_to_udp_addrs[sid] = addr
            return None

        other = next(
            (c.other_sid(sid) for c in self.active_calls if sid in c.usernames_to_sids.values()),
            None,
        )
        if other is None:
            return None
        target = self.sids_to_udp_addrs.get(other)
        if target is None:
            return None
        if self._udp_transport is not None:
            self._udp_transport.sendto(message, target)
        return message, target

    # --- TCP control -----------------------------------------------------

    async def handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Serve one client connection, then clean up after it."""
        addr = writer.get_extra_info("peername")
        log.info("Opened connection from %s", addr)
        self._writers.add(writer)
        session = _Session()
        try:
            await self._serve_session(session, reader, writer)
        except Exception as exc:  # any failure ends this connection only
            log.error("Connection error: %s", exc)
        finally:
            if session.username is not None:
                self._disconnect(session.username)
            self._writers.discard(writer)
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()
            log.info("Closed connection from %s", addr)

    def _disconnect(self, username: str) -> None:
        self.users.pop(username, None)
        for queue in self.users.values():
            queue.put_nowait((Command.REMOVE_USER_FROM_CLIENT, username))

        for call in self.active_calls:
            if username not in call:
                continue
            names = list(call.usernames_to_sids)
            log.info("Call ended between %s and %s", names[0], names[-1])
            for participant in names:
                queue = self.users.get(participant)
                if queue is not None:
                    queue.put_nowait((Command.END_CALL, None))

        self.active_calls = [c for c in self.active_calls if username not in c]
        log.info("%s has disconnected!", username)

    async def _serve_session(
        self,
        session: _Session,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        read_task = asyncio.ensure_future(receive_command(reader))
        queue_task = asyncio.ensure_future(session.queue.get())
        try:
            while True:
                done, _ = await asyncio.wait(
                    {read_task, queue_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if queue_task in done:
                    cmd, subject = queue_task.result()
                    await send_command(writer, cmd, subject)
                    queue_task = asyncio.ensure_future(session.queue.get())
                if read_task in done:
                    received = read_task.result()
                    if received is None:
                        return
                    await self._dispatch(session, writer, *received)
                    read_task = asyncio.ensure_future(receive_command(reader))
        finally:
            for task in (read_task, queue_task):
                task.cancel()
            await asyncio.gather(read_task, queue_task, return_exceptions=True)

    async def _dispatch(
        self,
        session: _Session,
        writer: asyncio.StreamWriter,
        cmd: int,
        subject: Optional[str],
    ) -> None:
        if cmd == Command.HELLO_FROM_CLIENT:
            await self._hello(session, writer, subject)
        elif cmd in (Command.REQUEST_CALL, Command.DENY_CALL, Command.START_CALL):
            self._relay_call_command(session, cmd, subject)
        elif cmd == Command.REQUEST_CALL_STREAM_ID:
            await self._send_stream_id(session, writer, cmd, subject)
        else:
            raise ProtocolError("Invalid command")

    async def _hello(
        self, session: _Session, writer: asyncio.StreamWriter, username: Optional[str]
    ) -> None:
        if username is None:
            raise ProtocolError("Missing username")
        if username in self.users:
            log.info("Username: %s was already taken", username)
            await send_command(writer, Command.USERNAME_ALREADY_TAKEN)
            return

        session.username = username
        self.users[username] = session.queue
        log.info("%s has connected!", username)
        await send_command(writer, Command.HELLO_FROM_SERVER)

        for user, queue in list(self.users.items()):
            if user == username:
                continue
            if any(user in call for call in self.active_calls):
                continue
            queue.put_nowait((Command.ADD_USER_TO_CLIENT, username))
            await send_command(writer, Command.ADD_USER_TO_CLIENT, user)

    def _relay_call_command(
        self, session: _Session, cmd: int, username: Optional[str]
    ) -> None:
        current = session.username
        if current is None:
            return
        if username is None:
            raise ProtocolError(f"Missing username {int(cmd)}")
        target = self.users.get(username)
        if target is None:
            raise ProtocolError("Invalid username")

        if cmd == Command.START_CALL:
            self.active_calls.append(
                Call({current: os.urandom(SID_LENGTH), username: os.urandom(SID_LENGTH)})
            )
            for user, queue in self.users.items():
                if user in (current, username):
                    continue
                queue.put_nowait((Command.REMOVE_USER_FROM_CLIENT, current))
                queue.put_nowait((Command.REMOVE_USER_FROM_CLIENT, username))
            log.info("Call started between %s and %s", current, username)

        target.put_nowait((cmd, current))

    async def _send_stream_id(
        self,
        session: _Session,
        writer: asyncio.StreamWriter,
        cmd: int,
        username: Optional[str],
    ) -> None:
        current = session.username
        if current is None:
            return
        if username is None:
            raise ProtocolError(f"Missing username {int(cmd)}")
        call = next((c for c in self.active_calls if current in c), None)
        if call is None or username not in call:
            raise ProtocolError("Call does not exist")
        call.sids_requested += 1
        writer.write(bytes([Command.SEND_CALL_STREAM_ID]) + call.usernames_to_sids[current])
        await writer.drain()


def main(argv: Optional[List[str]] = None) -> int:
    """Run the server until interrupted."""
    parser = argparse.ArgumentParser(prog="asciicall-server")
    parser.add_argument("--tcp-host", default=TCP_BIND_HOST)
    parser.add_argument("--tcp-port", type=int, default=TCP_PORT)
    parser.add_argument("--udp-host", default=UDP_BIND_HOST)
    parser.add_argument("--udp-port", type=int, default=UDP_PORT)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="[%(asctime)s %(levelname)s %(name)s] %(message)s",
    )
    server = SFUServer(args.tcp_host, args.tcp_port, args.udp_host, args.udp_port)
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(server.serve_forever())
    return 0