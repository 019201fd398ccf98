"""Command framing used on the TCP control channel between clients and the server."""

from __future__ import annotations

import asyncio
from enum import IntEnum
from typing import Optional, Tuple, Union

TCP_PORT = 8080
UDP_PORT = 8081

MAX_SUBJECT_LENGTH = 255


class Command(IntEnum):
    """One-byte command codes of the control protocol."""

    HELLO_FROM_CLIENT = 69
    HELLO_FROM_SERVER = 70
    USERNAME_ALREADY_TAKEN = 71
    ADD_USER_TO_CLIENT = 72
    REMOVE_USER_FROM_CLIENT = 73
    REQUEST_CALL = 74
    START_CALL = 75
    DENY_CALL = 76
    END_CALL = 77
    REQUEST_CALL_STREAM_ID = 78
    SEND_CALL_STREAM_ID = 79


# Commands that are always followed by a length byte and a UTF-8 subject.
SUBJECT_COMMANDS = frozenset(
    {
        Command.ADD_USER_TO_CLIENT,
        Command.REMOVE_USER_FROM_CLIENT,
        Command.HELLO_FROM_CLIENT,
        Command.REQUEST_CALL,
        Command.START_CALL,
        Command.DENY_CALL,
        Command.REQUEST_CALL_STREAM_ID,
    }
)


class ProtocolError(Exception):
    """Raised when a command cannot be encoded or a received one is malformed."""


def _as_command(value: int) -> Union[Command, int]:
    try:
        return Command(value)
    except ValueError:
        return value


def encode_command(cmd: int, subject: Optional[str] = None) -> bytes:
    """Return the wire form of a command with an optional subject."""
    if not 0 <= int(cmd) <= 255:
        raise ProtocolError(f"command byte out of range: {cmd}")
    if subject is None:
        return bytes([int(cmd)])
    payload = subject.encode("utf-8")
    if len(payload) > MAX_SUBJECT_LENGTH:
        raise ProtocolError("subject too long")
    return bytes([int(cmd), len(payload)]) + payload


async def send_command(
    writer: asyncio.StreamWriter, cmd: int, subject: Optional[str] = None
) -> None:
    """Write one command to the stream and flush it."""
    writer.write(encode_command(cmd, subject))
    await writer.drain()


async def receive_command(
    reader: asyncio.StreamReader,
) -> Optional[Tuple[Union[Command, int], Optional[str]]]:
    """Read one command; return None when the stream has ended."""
    try:
        header = await reader.readexactly(1)
    except (asyncio.IncompleteReadError, ConnectionError):
        return None
    cmd = _as_command(header[0])

    if cmd not in SUBJECT_COMMANDS:
        return cmd, None

    try:
        length = (await reader.readexactly(1))[0]
        payload = await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise ProtocolError("stream ended inside a command") from exc

    try:
        subject = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ProtocolError("subject is not valid UTF-8") from exc
    return cmd, subject