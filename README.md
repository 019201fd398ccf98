# asciicall

Video calls in the terminal. Each side's camera picture is turned into ASCII
art, packed two characters per byte and sent over UDP through a small
selective forwarding server, which passes each frame on to the other party.
A TCP connection to the same server carries the lobby: who is online, who is
calling whom, and when a call ends.

## Installation

```
pip install .
```

Tests need the `test` extra:

```
pip install ".[test]"
pytest
```

## Running the server

```
asciicall-server --udp-host 0.0.0.0
```

Options:

- `--tcp-host HOST` (default `0.0.0.0`) and `--tcp-port PORT` (default 8080):
  where control connections are accepted.
- `--udp-host HOST` (default `fly-global-services`) and `--udp-port PORT`
  (default 8081): where video datagrams are received. Pass `--udp-host 0.0.0.0`
  wherever the default name does not resolve.

The log level is read from the `LOG_LEVEL` environment variable (default
`INFO`). The server runs until interrupted.

The server keeps the list of connected users and the calls in progress.
Usernames must be unique; a second client asking for a name in use is told it
is taken. Users in a call are removed from everyone else's list. When a
participant disconnects, the other participant is sent an end-of-call message
and the call is dropped.

Each participant of a call is given a random 4-byte stream id. The first
datagram seen with a stream id records the sender's address; later datagrams
with that id have the id stripped and are forwarded to the other participant's
recorded address.

## Running the client

```
asciicall --server-address HOST --username alice
```

Options:

- `-u`, `--username NAME`: the name to connect as. If left out, you are asked for it.
- `-s`, `--server-address HOST`: the host running `asciicall-server`. The
  client always uses TCP port 8080 and UDP port 8081 on that host.
- `-a`, `--auto-accept-calls`: accept incoming calls without asking.
- `-b`, `--border`: draw a frame around the two pictures during a call.

If the name is already taken, the client says so and exits.

Once connected, type one of these commands at the `> ` prompt:

- `l` lists the users available to call.
- `c NAME` calls a user. Typing is paused until the user answers.
- `q` quits.

An incoming call asks `Would you like to accept? (y/n)`. Once a call is
accepted, each client opens its first camera through imageio (`<video0>`),
renders it as 90×28 characters mirrored left to right, and shows the other
person's picture with its own beside it. If the camera cannot be opened, the
client reports it and exits. When the call ends, the client connects again
(asking for a name again if none was given on the command line), ready for
the next call.

## Using the pieces as a library

- `asciicall.protocol` holds the `Command` codes, the default ports
  `TCP_PORT` and `UDP_PORT`, and the framing used on the control connection:
  `encode_command`, `send_command` and `receive_command`. A command is one
  byte, optionally followed by a length byte and a UTF-8 subject of at most
  255 bytes; `ProtocolError` is raised for subjects that are too long and for
  malformed messages. `receive_command` returns `None` when the stream ends.
- `asciicall.ascii_art.AsciiConverter(width, height)` turns a BGR or grayscale
  numpy frame into ASCII art (`frame_to_ascii`), packs art into bytes and back
  (`pack_frame`, `unpack_frame`) and places two pictures side by side, with or
  without a border (`merge_side_by_side`).
- `asciicall.server.SFUServer` is the forwarding server, with `start`,
  `serve_forever` and `close`; `Call` describes one call in progress.
- `asciicall.client.CallClient` runs one client session; `ClientState` holds
  the lobby state and applies commands from the server.
- `asciicall.cli.main` and `asciicall.server.main` are the two commands above.

## What it does not do

- There is no audio; calls carry pictures only.
- Calls are between exactly two people.
- Traffic is neither encrypted nor authenticated, and video datagrams that are
  lost are not resent.
- The client has no option for ports other than 8080 and 8081.