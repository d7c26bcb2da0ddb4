from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import BinaryIO

from .constants import BLOCK_SIZE, DEFAULT_MAX_RETRIES, DEFAULT_TIMEOUT_MS
from .errors import PeerAborted, TransferError, report_error
from .guard import resolve_path
from .packet import Ack, Data, ErrorCode, next_block
from .session import Session


def open_source(path: str) -> BinaryIO:
    try:
        return open(path, "rb")
    except (FileNotFoundError, NotADirectoryError):
        raise TransferError(ErrorCode.FILE_NOT_FOUND) from None
    except (IsADirectoryError, PermissionError):
        raise TransferError(ErrorCode.ACCESS_VIOLATION) from None
    except OSError as exc:
        raise TransferError(ErrorCode.NOT_DEFINED, f"Cannot open file: {exc.strerror}") from None


@dataclass(slots=True)
class ReadWorker:
    """Serves one read request: DATA out, ACK in, one block at a time."""

    session: Session
    root: str
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES

    def run(self) -> bool:
        s = self.session
        logging.info("session start: %s", s.describe())
        try:
            s.path = resolve_path(self.root, s.filename)
            with open_source(s.path) as f:
                self._stream(f)
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

    def _stream(self, f: BinaryIO) -> None:
        s = self.session
        while True:
            s.block = next_block(s.block)
            frame = Data(s.block, f.read(BLOCK_SIZE))
            self._send_block(frame)
            s.metrics.blocks += 1
            s.metrics.bytes_sent += len(frame.payload)
            # a short payload (possibly empty) is the only way the transfer ends
            if frame.final:
                return

    def _send_block(self, frame: Data) -> None:
        s = self.session
        raw = frame.to_bytes()
        s.retries = 0
        while True:
            s.udp.send(raw, s.peer)
            s.metrics.packets_sent += 1
            if self._wait_for_ack(frame.block):
                return
            s.retries += 1
            if s.retries >= self.max_retries:
                raise TransferError(ErrorCode.NOT_DEFINED, "Maximum number of retransmissions reached.")
            s.metrics.retransmits += 1
            logging.debug("%s: retransmit block=%d retry=%d", s.describe(), frame.block, s.retries)

    def _wait_for_ack(self, block: int) -> bool:
        s = self.session
        deadline = time.monotonic() + self.timeout_ms / 1000.0
        try:
            pkt = s.receive(deadline)
        except TimeoutError:
            s.metrics.timeouts += 1
            return False
        if isinstance(pkt, Ack) and pkt.block == block:
            return True
        logging.debug("%s: expected ACK %d, got %r", s.describe(), block, pkt)
        return False
