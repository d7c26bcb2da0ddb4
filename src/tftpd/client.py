from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import BinaryIO, Tuple

from .constants import BLOCK_SIZE, DEFAULT_MAX_RETRIES, DEFAULT_PORT, DEFAULT_TIMEOUT_MS, MODE_OCTET
from .errors import RetriesExceeded, TftpError, report_error
from .net import Impairment, UdpEndpoint
from .packet import Ack, Data, Error, ErrorCode, MalformedPacket, Opcode, Packet, Request, decode, next_block
from .session import Metrics


@dataclass(slots=True)
class _Exchange:
    """One client transfer: the socket, the server's TID once known, and counters."""

    udp: UdpEndpoint
    server: Tuple[str, int]
    timeout_ms: int
    max_retries: int
    tid: Tuple[str, int] | None = None
    retries: int = 0

    @property
    def dest(self) -> Tuple[str, int]:
        return self.tid or self.server

    def send(self, raw: bytes, metrics: Metrics) -> None:
        self.udp.send(raw, self.dest)
        metrics.packets_sent += 1

    def deadline(self) -> float:
        return time.monotonic() + self.timeout_ms / 1000.0

    def receive(self, deadline: float) -> Packet:
        while True:
            raw, addr = self.udp.receive(deadline)
            if self.tid is None:
                self.tid = addr
            elif addr != self.tid:
                report_error(self.udp, addr, ErrorCode.UNKNOWN_TRANSFER_ID)
                continue
            try:
                pkt = decode(raw)
            except MalformedPacket as exc:
                logging.debug("ignoring malformed datagram from %s:%d: %s", addr[0], addr[1], exc)
                continue
            if isinstance(pkt, Error):
                raise TftpError(pkt.code, pkt.message)
            return pkt

    def timed_out(self, metrics: Metrics, what: str) -> None:
        metrics.timeouts += 1
        self.retries += 1
        if self.retries >= self.max_retries:
            raise RetriesExceeded(f"no {what} after {self.retries} attempts")
        metrics.retransmits += 1


@dataclass(slots=True)
class TftpClient:
    host: str
    port: int = DEFAULT_PORT
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    impairment: Impairment | None = None

    def _open(self) -> _Exchange:
        # a fresh local port per transfer, so every transfer has its own TID
        udp = UdpEndpoint.bind(impairment=self.impairment)
        return _Exchange(udp, (self.host, self.port), self.timeout_ms, self.max_retries)

    def get(self, filename: str, out: BinaryIO) -> Metrics:
        """Download ``filename`` into ``out``."""
        metrics = Metrics()
        ex = self._open()
        try:
            last = Request(Opcode.RRQ, filename, MODE_OCTET).to_bytes()
            expected = 1
            ex.send(last, metrics)
            deadline = ex.deadline()
            while True:
                try:
                    pkt = ex.receive(deadline)
                except TimeoutError:
                    ex.timed_out(metrics, f"DATA {expected}")
                    ex.send(last, metrics)
                    deadline = ex.deadline()
                    continue
                if not isinstance(pkt, Data):
                    continue
                if pkt.block != expected:
                    # duplicate of a block we already have; our ACK was probably lost
                    ex.send(last, metrics)
                    continue
                out.write(pkt.payload)
                metrics.blocks += 1
                metrics.bytes_sent += len(pkt.payload)
                last = Ack(pkt.block).to_bytes()
                ex.send(last, metrics)
                ex.retries = 0
                deadline = ex.deadline()
                expected = next_block(expected)
                if pkt.final:
                    break
        finally:
            ex.udp.close()
        out.flush()
        metrics.end_ts = time.monotonic()
        return metrics

    def put(self, filename: str, src: BinaryIO) -> Metrics:
        """Upload the contents of ``src`` as ``filename``."""
        metrics = Metrics()
        ex = self._open()
        try:
            frame: Request | Data = Request(Opcode.WRQ, filename, MODE_OCTET)
            awaiting = 0
            while True:
                raw = frame.to_bytes()
                ex.retries = 0
                ex.send(raw, metrics)
                deadline = ex.deadline()
                while True:
                    try:
                        pkt = ex.receive(deadline)
                    except TimeoutError:
                        ex.timed_out(metrics, f"ACK {awaiting}")
                        ex.send(raw, metrics)
                        deadline = ex.deadline()
                        continue
                    if isinstance(pkt, Ack) and pkt.block == awaiting:
                        break
                if isinstance(frame, Data):
                    metrics.blocks += 1
                    metrics.bytes_sent += len(frame.payload)
                    if frame.final:
                        break
                awaiting = next_block(awaiting)
                frame = Data(awaiting, src.read(BLOCK_SIZE))
        finally:
            ex.udp.close()
        metrics.end_ts = time.monotonic()
        return metrics
