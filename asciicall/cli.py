"""Command-line entry point of the call client."""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import List, Optional

from asciicall.client import CallClient
from asciicall.protocol import TCP_PORT, UDP_PORT, ProtocolError

DEFAULT_SERVER_ADDRESS = "facetime-v3.fly.dev"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse the client's command-line options."""
    parser = argparse.ArgumentParser(prog="asciicall")
    parser.add_argument("-u", "--username")
    parser.add_argument("-s", "--server-address", default=DEFAULT_SERVER_ADDRESS)
    parser.add_argument("-a", "--auto-accept-calls", action="store_true")
    parser.add_argument("-b", "--border", action="store_true")
    return parser.parse_args(argv)


def get_username(cli_username: Optional[str]) -> str:
    """Return the username given on the command line, or ask for one."""
    if cli_username is not None:
        return cli_username
    try:
        name = input("Enter username: ")
    except EOFError:
        name = ""
    if not name.strip():
        raise ValueError("No username provided")
    return name


def main(argv: Optional[List[str]] = None) -> int:
    """Connect, and reconnect after every finished call, until the user quits."""
    args = parse_args(argv)
    try:
        while True:
            username = get_username(args.username)
            client = CallClient(
                f"{args.server_address}:{TCP_PORT}",
                f"{args.server_address}:{UDP_PORT}",
                username,
                args.auto_accept_calls,
                args.border,
            )
            if not asyncio.run(client.run()):
                return 0
    except KeyboardInterrupt:
        return 130
    except (ValueError, ProtocolError, OSError, EOFError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1