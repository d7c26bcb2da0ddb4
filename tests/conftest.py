from __future__ import annotations

import socket
import time
from typing import Tuple

import pytest

from tftpd.config import ServerConfig
from tftpd.packet import Ack, Data, Opcode, Packet, Request, decode
from tftpd.server import Server

TIMEOUT_MS = 100
MAX_RETRIES = 10


class RawPeer:
    """A bare UDP socket for driving the server one datagram at a time."""

    def __init__(self, timeout_s: float = 2.0):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(timeout_s)

    def send(self, pkt: Packet | bytes, addr: Tuple[str, int]) -> None:
        raw = pkt if isinstance(pkt, bytes) else pkt.to_bytes()
        self.sock.sendto(raw, addr)

    def recv(self) -> Tuple[Packet, Tuple[str, int]]:
        raw, addr = self.sock.recvfrom(65535)
        return decode(raw), addr

    def expect_silence(self, seconds: float) -> None:
        self.sock.settimeout(seconds)
        with pytest.raises(TimeoutError):
            self.sock.recvfrom(65535)

    def read_all(self, server_addr: Tuple[str, int], filename: str) -> list:
        """Run a well-behaved read transfer and return the DATA packets in order."""
        self.send(Request(Opcode.RRQ, filename, "octet"), server_addr)
        blocks = []
        while True:
            pkt, tid = self.recv()
            if not isinstance(pkt, Data):
                blocks.append(pkt)
                return blocks
            # a retransmission of the block we just acknowledged
            if not blocks or blocks[-1].block != pkt.block:
                blocks.append(pkt)
            self.send(Ack(pkt.block), tid)
            if pkt.final:
                return blocks

    def close(self) -> None:
        self.sock.close()


def wait_until(predicate, timeout_s: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def roots(tmp_path):
    read_root = tmp_path / "read"
    write_root = tmp_path / "write"
    read_root.mkdir()
    write_root.mkdir()
    return read_root, write_root


@pytest.fixture
def make_server(roots):
    started = []

    def factory(**overrides) -> Server:
        read_root, write_root = roots
        params = dict(
            host="127.0.0.1",
            port=0,
            read_root=str(read_root),
            write_root=str(write_root),
            timeout_ms=TIMEOUT_MS,
            max_retries=MAX_RETRIES,
            dally_ms=TIMEOUT_MS,
        )
        params.update(overrides)
        server = Server(ServerConfig(**params))
        server.start()
        started.append(server)
        return server

    yield factory
    for server in started:
        server.stop(timeout=5.0)


@pytest.fixture
def server(make_server):
    return make_server()


@pytest.fixture
def peer():
    p = RawPeer()
    yield p
    p.close()
