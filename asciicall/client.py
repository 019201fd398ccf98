"""Interactive call client: lobby on the TCP control channel, ASCII video over UDP."""

from __future__ import annotations

import asyncio
import contextlib
import queue
import socket
import sys
import threading
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import List, Optional, Tuple

import imageio.v2 as iio
import numpy as np

from asciicall.ascii_art import AsciiConverter
from asciicall.protocol import Command, ProtocolError, receive_command, send_command

PROMPT_STRING = "> "
WIDTH = 90
HEIGHT = 28
MAX_FRAME_BYTES = 4840
STREAM_ID_REPLY_LENGTH = 5
CAPTURE_INTERVAL = 0.003
CLEAR_SCREEN = "\x1b[2J\x1b[H"


class Action(Enum):
    """What the client should do after a server command has been applied."""

    CONTINUE = auto()
    PROMPT_ACCEPT = auto()
    ACCEPT_CALL = auto()
    DENIED = auto()
    CALL_STARTED = auto()


class LineOutcome(Enum):
    """What the lobby should do after a line of user input."""

    PROMPT = auto()
    CALLING = auto()
    QUIT = auto()


def _require_subject(subject: Optional[str]) -> str:
    if subject is None:
        raise ProtocolError("Invalid data")
    return subject


@dataclass
class ClientState:
    """Lobby state kept by the client: known users and call progress."""

    auto_accept_calls: bool = False
    available_users: List[str] = field(default_factory=list)
    requesting_call_recipient: Optional[str] = None
    call_recipient: Optional[str] = None

    def handle_server_command(self, cmd: int, subject: Optional[str]) -> Action:
        """Apply one command from the server and say what should follow."""
        if cmd == Command.ADD_USER_TO_CLIENT:
            self.available_users.append(_require_subject(subject))
            return Action.CONTINUE
        if cmd == Command.REMOVE_USER_FROM_CLIENT:
            username = _require_subject(subject)
            self.available_users = [u for u in self.available_users if u != username]
            return Action.CONTINUE
        if cmd == Command.REQUEST_CALL:
            caller = _require_subject(subject)
            if self.auto_accept_calls:
                self.call_recipient = caller
                return Action.ACCEPT_CALL
            return Action.PROMPT_ACCEPT
        if cmd == Command.DENY_CALL:
            username = _require_subject(subject)
            pending, self.requesting_call_recipient = self.requesting_call_recipient, None
            return Action.DENIED if pending == username else Action.CONTINUE
        if cmd == Command.START_CALL:
            self.call_recipient = _require_subject(subject)
            return Action.CALL_STARTED
        raise ProtocolError("Unknown command")


class _StdinLines:
    """Reads standard input one line at a time without blocking the event loop."""

    def __init__(self) -> None:
        self._lines: "queue.Queue[Optional[str]]" = queue.Queue()
        self._lock = threading.Lock()
        self._reading = False

    def _read_one(self) -> None:
        line = sys.stdin.readline()
        self._lines.put(line.rstrip("\r\n") if line else None)
        with self._lock:
            self._reading = False

    async def next_line(self) -> Optional[str]:
        """Return the next line without its newline, or None at end of input."""
        with self._lock:
            if self._lines.empty() and not self._reading:
                self._reading = True
                threading.Thread(target=self._read_one, daemon=True).start()
        while True:
            try:
                return self._lines.get_nowait()
            except queue.Empty:
                await asyncio.sleep(0.02)


_STDIN = _StdinLines()


def _split_address(address: str) -> Tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"address must be host:port, got {address!r}")
    return host.strip("[]"), int(port)


def _open_camera():
    try:
        return iio.get_reader("<video0>")
    except Exception:
        return None


def _grab(camera) -> Optional[np.ndarray]:
    try:
        return np.asarray(camera.get_next_data())
    except (IndexError, StopIteration, RuntimeError, OSError):
        return None


class _FrameReceiver(asyncio.DatagramProtocol):
    def __init__(self, frames: "asyncio.Queue[bytes]") -> None:
        self._frames = frames

    def datagram_received(self, data: bytes, addr) -> None:
        self._frames.put_nowait(data[:MAX_FRAME_BYTES])

    def error_received(self, exc: Exception) -> None:
        print(f"UDP error: {exc}", file=sys.stderr)


def _write(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def _prompt() -> None:
    _write(PROMPT_STRING)


def _print_startup_message(username: str) -> None:
    _write(CLEAR_SCREEN)
    print(f"Connected as: {username}")
    print()
    print("Commands available:")
    print("  l - List all active users")
    print("  c - Connect to a user")
    print("  q - Quit the program")
    print()


class CallClient:
    """One session with the server: sign in, pick a peer, stream ASCII video."""

    def __init__(
        self,
        tcp_addr: str,
        udp_addr: str,
        username: str,
        auto_accept_calls: bool = False,
        border: bool = False,
    ) -> None:
        self.tcp_addr = tcp_addr
        self.udp_addr = udp_addr
        self.username = username
        self.border = border
        self.state = ClientState(auto_accept_calls=auto_accept_calls)
        self.converter = AsciiConverter(WIDTH, HEIGHT)
        self.lines = _STDIN  # source of user input lines
        self.writer: Optional[asyncio.StreamWriter] = None
        self._pending_line: Optional[asyncio.Future] = None
        self._stdin_open = True

    async def run(self) -> bool:
        """Run one session; True means a call took place and a new session may follow."""
        host, port = _split_address(self.tcp_addr)
        reader, writer = await asyncio.open_connection(host, port)
        self.writer = writer
        try:
            if not await self._greet(reader):
                return False
            if not await self._lobby(reader):
                return False
            return await self._call(reader)
        finally:
            self.writer = None
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    async def _send(self, cmd: int, subject: Optional[str] = None) -> None:
        if self.writer is None:
            raise RuntimeError("not connected")
        await send_command(self.writer, cmd, subject)

    async def _greet(self, reader: asyncio.StreamReader) -> bool:
        await self._send(Command.HELLO_FROM_CLIENT, self.username)
        received = await receive_command(reader)
        if received is None:
            return False
        cmd, _ = received
        if cmd == Command.HELLO_FROM_SERVER:
            _print_startup_message(self.username)
            return True
        if cmd == Command.USERNAME_ALREADY_TAKEN:
            print(f"Username {self.username} already taken!")
            return False
        raise ProtocolError(f"Invalid Response from server: {int(cmd)}")

    async def handle_user_line(self, line: str) -> LineOutcome:
        """Act on one lobby command typed by the user."""
        trimmed = line.strip()
        if trimmed == "l":
            if not self.state.available_users:
                print("No available users")
            else:
                print("Available users:")
                for user in self.state.available_users:
                    print(f"  * {user}")
        elif trimmed == "c":
            print("Usage: c <username>")
        elif trimmed.startswith("c "):
            parts = trimmed.split()
            if len(parts) < 2:
                print("Usage: c <username>")
            elif parts[1] in self.state.available_users:
                username = parts[1]
                print(f"Calling {username}...")
                await self._send(Command.REQUEST_CALL, username)
                self.state.requesting_call_recipient = username
                return LineOutcome.CALLING
            elif parts[1] != self.username:
                print(f"{parts[1]} is not available.")
            else:
                print("You can't call yourself. Idiot.")
        elif trimmed == "q":
            print("Quitting...")
            return LineOutcome.QUIT
        else:
            print("Unknown command")
        return LineOutcome.PROMPT

    async def _next_line(self) -> Optional[str]:
        task, self._pending_line = self._pending_line, None
        if task is None:
            return await self.lines.next_line()
        return await task

    async def _lobby(self, reader: asyncio.StreamReader) -> bool:
        """Serve the lobby; True when a call is to start."""
        _prompt()
        recv_task: Optional[asyncio.Future] = None
        try:
            while True:
                if recv_task is None:
                    recv_task = asyncio.ensure_future(receive_command(reader))
                waiting = {recv_task}
                if self._stdin_open and self.state.requesting_call_recipient is None:
                    if self._pending_line is None:
                        self._pending_line = asyncio.ensure_future(self.lines.next_line())
                    waiting.add(self._pending_line)
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

                if self._pending_line is not None and self._pending_line in done:
                    text = self._pending_line.result()
                    self._pending_line = None
                    if text is None:
                        print("No input", file=sys.stderr)
                        self._stdin_open = False
                        _prompt()
                    else:
                        outcome = await self.handle_user_line(text)
                        if outcome is LineOutcome.QUIT:
                            return False
                        if outcome is LineOutcome.PROMPT:
                            _prompt()

                if recv_task in done:
                    received = recv_task.result()
                    recv_task = None
                    if received is None:
                        return False
                    if await self._on_server_command(*received):
                        return True
        finally:
            for task in (recv_task, self._pending_line):
                if task is not None:
                    task.cancel()
            self._pending_line = None

    async def _on_server_command(self, cmd: int, subject: Optional[str]) -> bool:
        try:
            action = self.state.handle_server_command(cmd, subject)
        except ProtocolError as exc:
            print(f"Error handling command: {exc}", file=sys.stderr)
            return False
        if action is Action.CONTINUE:
            return False
        if action is Action.DENIED:
            print(f"{subject} denied the call.")
            _prompt()
            return False
        if action is Action.CALL_STARTED:
            return True
        assert subject is not None
        print(f"\nIncoming call from {subject}")
        if action is Action.ACCEPT_CALL:
            await self._send(Command.START_CALL, subject)
            return True
        return await self._ask_accept(subject)

    async def _ask_accept(self, caller: str) -> bool:
        while True:
            _write("Would you like to accept? (y/n): ")
            line = await self._next_line() if self._stdin_open else None
            if line is None:
                print("No input received.")
                self._stdin_open = False
                await self._send(Command.DENY_CALL, caller)
                _prompt()
                return False
            answer = line.strip().lower()
            if answer in ("yes", "y"):
                await self._send(Command.START_CALL, caller)
                self.state.call_recipient = caller
                return True
            if answer in ("no", "n"):
                await self._send(Command.DENY_CALL, caller)
                print("You answered NO.")
                _prompt()
                return False
            print("Invalid response.")

    async def _resolve_udp(self) -> Tuple[str, int]:
        host, port = _split_address(self.udp_addr)
        infos = await asyncio.get_running_loop().getaddrinfo(
            host, port, family=socket.AF_INET, type=socket.SOCK_DGRAM
        )
        if not infos:
            raise OSError(f"cannot resolve {self.udp_addr}")
        return infos[0][4][:2]

    async def _call(self, reader: asyncio.StreamReader) -> bool:
        recipient = self.state.call_recipient
        if recipient is None:
            raise ProtocolError("call_recipient not found")
        print(f"Connecting to {recipient}...")
        await self._send(Command.REQUEST_CALL_STREAM_ID, recipient)

        try:
            header = await reader.readexactly(STREAM_ID_REPLY_LENGTH)
        except asyncio.IncompleteReadError as exc:
            raise ProtocolError("stream ended before stream id") from exc
        if header[0] != Command.SEND_CALL_STREAM_ID:
            raise ProtocolError(f"Invalid command {header[0]}")
        sid = bytes(header[1:])

        frames: "asyncio.Queue[bytes]" = asyncio.Queue()
        transport, _ = await asyncio.get_running_loop().create_datagram_endpoint(
            lambda: _FrameReceiver(frames), local_addr=("0.0.0.0", 0)
        )
        try:
            target = await self._resolve_udp()
            camera = _open_camera()
            if camera is None:
                print("Error: Could not open camera", file=sys.stderr)
                return False
            try:
                print("Starting camera ASCII feed... Press Ctrl+C to exit")
                print("Camera initialized successfully!")
                await self._stream_call(reader, transport, target, sid, frames, camera)
            finally:
                with contextlib.suppress(Exception):
                    camera.close()
        finally:
            transport.close()
        return True

    async def _stream_call(self, reader, transport, target, sid, frames, camera) -> None:
        own_frame: Optional[str] = None

        async def watch_control() -> None:
            while True:
                data = await reader.read(1)
                if not data or data[0] == Command.END_CALL:
                    return

        async def show_remote() -> None:
            while True:
                remote = AsciiConverter.unpack_frame(await frames.get())
                _write(CLEAR_SCREEN)
                if own_frame is None:
                    print(remote)
                else:
                    print(self.converter.merge_side_by_side(remote, own_frame, self.border))

        async def send_own() -> None:
            nonlocal own_frame
            while True:
                await asyncio.sleep(CAPTURE_INTERVAL)
                frame = await asyncio.to_thread(_grab, camera)
                if frame is None or frame.size == 0:
                    print("Warning: Empty frame captured", file=sys.stderr)
                    continue
                if frame.ndim == 3:
                    frame = frame[:, :, 2::-1]  # camera delivers RGB
                own_frame = self.converter.frame_to_ascii(frame)
                transport.sendto(sid + AsciiConverter.pack_frame(own_frame), target)

        tasks = [asyncio.ensure_future(c) for c in (watch_control(), show_remote(), send_own())]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        for task in done:
            if not task.cancelled():
                task.result()