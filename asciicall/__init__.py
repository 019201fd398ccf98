"""Terminal ASCII-art video calls: wire protocol, frame conversion, client and forwarding server."""

__version__ = "0.1.0"