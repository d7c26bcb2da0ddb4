from __future__ import annotations

import random
import socket
import time
from dataclasses import dataclass
from typing import Tuple

from .constants import MAX_DATAGRAM

Address = Tuple[str, int]


@dataclass(frozen=True, slots=True)
class Impairment:
    """Simulated loss and latency for one endpoint's traffic, in both directions."""

    loss_rate: float = 0.0
    delay_ms: int = 0

    def admit(self) -> bool:
        """Roll for loss; a surviving datagram is held back for ``delay_ms``."""
        if self.loss_rate > 0 and random.random() < self.loss_rate:
            return False
        if self.delay_ms > 0:
            time.sleep(self.delay_ms / 1000.0)
        return True


class UdpEndpoint:
    """A bound UDP socket whose receives are bounded by a monotonic deadline.

    Port 0 asks the OS for a fresh port, which is how every transfer gets its
    own transfer identifier.
    """

    def __init__(self, sock: socket.socket, impairment: Impairment | None = None):
        self._sock = sock
        self.impairment = impairment or Impairment()

    @classmethod
    def bind(cls, host: str = "0.0.0.0", port: int = 0, impairment: Impairment | None = None) -> "UdpEndpoint":
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((host, port))
        except OSError:
            sock.close()
            raise
        return cls(sock, impairment)

    @property
    def address(self) -> Address:
        return self._sock.getsockname()

    def send(self, data: bytes, addr: Address) -> None:
        if self.impairment.admit():
            self._sock.sendto(data, addr)

    def receive(self, deadline: float, bufsize: int = MAX_DATAGRAM + 1) -> Tuple[bytes, Address]:
        """One datagram, or TimeoutError once ``deadline`` passes.

        Datagrams lost to the impairment do not extend the deadline.
        """
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("deadline passed")
            self._sock.settimeout(remaining)
            data, addr = self._sock.recvfrom(bufsize)
            if self.impairment.admit():
                return data, addr

    def close(self) -> None:
        self._sock.close()
