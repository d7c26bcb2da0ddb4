"""tftpd: a TFTP (RFC 1350) server engine over UDP.

The package keeps packet framing, the per-session state machines and the
listener apart:
- ``packet`` encodes and decodes the five datagram types
- ``sender`` / ``receiver`` run one read or write session each
- ``server`` owns the well-known port and starts a thread per session

Only binary ("octet") transfers are supported.
"""

from .client import TftpClient
from .config import ServerConfig
from .server import Server

__all__ = ["Server", "ServerConfig", "TftpClient"]
