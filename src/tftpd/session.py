from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Tuple

from .errors import PeerAborted, report_error
from .net import UdpEndpoint
from .packet import Error, ErrorCode, MalformedPacket, Packet, decode


@dataclass(slots=True)
class Metrics:
    packets_sent: int = 0
    bytes_sent: int = 0
    blocks: int = 0
    timeouts: int = 0
    retransmits: int = 0
    start_ts: float = field(default_factory=time.monotonic)
    end_ts: float | None = None

    @property
    def duration_s(self) -> float:
        if self.end_ts is None:
            return 0.0
        return max(0.0, self.end_ts - self.start_ts)

    @property
    def throughput_mbps(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return (self.bytes_sent * 8 / 1_000_000) / self.duration_s


class Direction(enum.Enum):
    READ = "read"
    WRITE = "write"


@dataclass(slots=True)
class Session:
    """State of one transfer, owned by exactly one worker thread.

    ``peer`` is fixed from the request datagram and, together with the
    port of ``udp``, forms the session's transfer identifier.
    """

    peer: Tuple[str, int]
    direction: Direction
    filename: str
    mode: str
    udp: UdpEndpoint
    path: str | None = None
    block: int = 0
    retries: int = 0
    metrics: Metrics = field(default_factory=Metrics)

    def is_peer(self, addr: Tuple[str, int]) -> bool:
        return tuple(addr[:2]) == tuple(self.peer[:2])

    def describe(self) -> str:
        return f"{self.direction.value} {self.filename!r} {self.peer[0]}:{self.peer[1]}"

    def receive(self, deadline: float) -> Packet:
        """Next decodable packet from the peer, or TimeoutError at ``deadline``.

        Datagrams from any other source get an unknown-transfer-ID error and
        do not disturb the session. An ERROR from the peer raises PeerAborted.
        """
        while True:
            raw, addr = self.udp.receive(deadline)
            if not self.is_peer(addr):
                logging.info("%s: datagram from foreign TID %s:%d", self.describe(), addr[0], addr[1])
                report_error(self.udp, addr, ErrorCode.UNKNOWN_TRANSFER_ID)
                continue
            try:
                pkt = decode(raw)
            except MalformedPacket as exc:
                logging.debug("%s: ignoring malformed datagram: %s", self.describe(), exc)
                continue
            if isinstance(pkt, Error):
                raise PeerAborted(pkt)
            return pkt

    def close(self) -> None:
        self.metrics.end_ts = time.monotonic()
        self.udp.close()
