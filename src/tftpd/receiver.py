from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass

from .constants import DEFAULT_MAX_RETRIES, DEFAULT_TIMEOUT_MS
from .errors import PeerAborted, TransferError, report_error
from .guard import QuotaGuard, resolve_path
from .packet import Ack, Data, ErrorCode, next_block
from .session import Session


def ensure_creatable(path: str) -> None:
    """Fail unless ``path`` is new and can be created (and removed) right now."""
    if os.path.lexists(path):
        raise TransferError(ErrorCode.FILE_ALREADY_EXISTS)
    try:
        with open(path, "xb"):
            pass
    except FileExistsError:
        raise TransferError(ErrorCode.FILE_ALREADY_EXISTS) from None
    except OSError:
        raise TransferError(ErrorCode.ACCESS_VIOLATION) from None
    try:
        os.remove(path)
    except OSError:
        raise TransferError(ErrorCode.ACCESS_VIOLATION) from None


@dataclass(slots=True)
class WriteWorker:
    """Accepts one write request: ACK out, DATA in, commit once complete."""

    session: Session
    quota: QuotaGuard
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    dally_ms: int = DEFAULT_TIMEOUT_MS

    def run(self) -> bool:
        s = self.session
        logging.info("session start: %s", s.describe())
        try:
            s.path = resolve_path(self.quota.root, s.filename)
            ensure_creatable(s.path)
            data = self._receive()
            self.quota.commit(s.path, data)
            logging.info("%s: stored %d bytes at %s", s.describe(), len(data), s.path)
            self._dally()
        except PeerAborted as exc:
            logging.info("%s: aborted by peer (%d: %s)", s.describe(), exc.error.code, exc.error.message)
            return False
        except TransferError as exc:
            logging.warning("%s: failed: %s", s.describe(), exc)
            report_error(s.udp, s.peer, exc.code, exc.message)
            return False
        except OSError as exc:
            logging.error("%s: I/O error: %s", s.describe(), exc)
            report_error(s.udp, s.peer, ErrorCode.NOT_DEFINED, "I/O error.")
            return False
        finally:
            s.close()
        logging.info(
            "session done: %s; %d bytes in %d blocks, %d retransmits",
            s.describe(),
            s.metrics.bytes_sent,
            s.metrics.blocks,
            s.metrics.retransmits,
        )
        return True

    def _send_ack(self, raw: bytes) -> None:
        self.session.udp.send(raw, self.session.peer)
        self.session.metrics.packets_sent += 1

    def _receive(self) -> bytes:
        s = self.session
        buf = bytearray()
        s.block = 0
        s.retries = 0
        last_ack = Ack(s.block).to_bytes()
        self._send_ack(last_ack)
        deadline: float | None = None

        while True:
            if deadline is None:
                deadline = time.monotonic() + self.timeout_ms / 1000.0
            try:
                frame = self._next_data(deadline)
            except TimeoutError:
                deadline = None
                s.metrics.timeouts += 1
                s.retries += 1
                if s.retries >= self.max_retries:
                    raise TransferError(ErrorCode.NOT_DEFINED, "Retransmission limit exceeded.") from None
                s.metrics.retransmits += 1
                logging.debug("%s: timeout, re-ack block=%d retry=%d", s.describe(), s.block, s.retries)
                self._send_ack(last_ack)
                continue

            if frame.block != next_block(s.block):
                logging.debug("%s: stale DATA %d (at %d), re-ack", s.describe(), frame.block, s.block)
                self._send_ack(last_ack)
                continue

            buf += frame.payload
            s.block = frame.block
            s.retries = 0
            s.metrics.blocks += 1
            s.metrics.bytes_sent += len(frame.payload)
            last_ack = Ack(s.block).to_bytes()
            self._send_ack(last_ack)
            deadline = None
            if frame.final:
                return bytes(buf)

    def _next_data(self, deadline: float) -> Data:
        s = self.session
        while True:
            pkt = s.receive(deadline)
            if isinstance(pkt, Data):
                return pkt
            logging.debug("%s: ignoring %r while waiting for DATA", s.describe(), pkt)

    def _dally(self) -> None:
        # the final ACK may be lost; answer retransmissions of the last block for a while
        if self.dally_ms <= 0:
            return
        s = self.session
        final_ack = Ack(s.block).to_bytes()
        deadline = time.monotonic() + self.dally_ms / 1000.0
        while True:
            try:
                pkt = s.receive(deadline)
            except (TimeoutError, PeerAborted):
                return
            if isinstance(pkt, Data) and pkt.block == s.block:
                self._send_ack(final_ack)
