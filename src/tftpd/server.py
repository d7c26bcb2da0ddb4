from __future__ import annotations

import logging
import os
import threading
import time
from typing import Tuple, Union

from .config import ServerConfig
from .constants import MODE_OCTET
from .errors import report_error
from .guard import QuotaGuard
from .net import Impairment, UdpEndpoint
from .packet import ErrorCode, MalformedPacket, Opcode, Request, parse_request, peek_opcode
from .receiver import WriteWorker
from .sender import ReadWorker
from .session import Direction, Session

# how long the listener blocks before re-checking for shutdown
POLL_INTERVAL_MS = 100


class Server:
    """Listens on the well-known port and hands each transfer to its own thread.

    The listener itself only classifies first packets; every accepted
    request gets a fresh ephemeral endpoint, and all further traffic for
    that transfer goes through it.
    """

    def __init__(self, config: ServerConfig, impairment: Impairment | None = None):
        self.config = config
        self.impairment = impairment
        self.quota = QuotaGuard(config.write_dir, config.quota_bytes)
        self._udp: UdpEndpoint | None = None
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._workers: set[threading.Thread] = set()
        self._active_peers: set[Tuple[str, int]] = set()

    def __enter__(self) -> "Server":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()

    @property
    def address(self) -> Tuple[str, int]:
        if self._udp is None:
            raise RuntimeError("server is not bound")
        return self._udp.address

    def bind(self) -> None:
        if self._udp is not None:
            return
        for root in (self.config.read_dir, self.config.write_dir):
            os.makedirs(root, exist_ok=True)
        self._udp = UdpEndpoint.bind(self.config.host, self.config.port)
        host, port = self._udp.address
        logging.info("listening on %s:%d (read=%s write=%s)", host, port, self.config.read_dir, self.config.write_dir)

    def start(self) -> None:
        """Bind and run the listener on a daemon thread."""
        self.bind()
        self._stop.clear()
        self._thread = threading.Thread(target=self.serve_forever, name="tftpd-listener", daemon=True)
        self._thread.start()

    def serve_forever(self) -> None:
        self.bind()
        assert self._udp is not None
        while not self._stop.is_set():
            try:
                raw, peer = self._udp.receive(time.monotonic() + POLL_INTERVAL_MS / 1000.0, bufsize=65535)
            except TimeoutError:
                continue
            except OSError as exc:
                if self._stop.is_set():
                    break
                logging.error("listener receive failed: %s", exc)
                continue
            self.dispatch(raw, peer)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None
        with self._lock:
            workers = list(self._workers)
        for t in workers:
            t.join(timeout)
        if self._udp is not None:
            self._udp.close()
            self._udp = None
            logging.info("server stopped")

    @property
    def active_sessions(self) -> int:
        with self._lock:
            return len(self._workers)

    def dispatch(self, raw: bytes, peer: Tuple[str, int]) -> threading.Thread | None:
        """Classify the first packet from ``peer``; start a worker if it is a valid request."""
        assert self._udp is not None
        try:
            opcode = peek_opcode(raw)
        except MalformedPacket:
            logging.warning("runt datagram from %s:%d", peer[0], peer[1])
            report_error(self._udp, peer, ErrorCode.ILLEGAL_OPERATION, "Malformed request.")
            return None

        if opcode in (Opcode.DATA, Opcode.ACK):
            logging.info("%s from %s:%d without a session", Opcode(opcode).name, peer[0], peer[1])
            report_error(self._udp, peer, ErrorCode.UNKNOWN_TRANSFER_ID)
            return None
        if opcode == Opcode.ERROR:
            logging.debug("discarding ERROR from unconnected peer %s:%d", peer[0], peer[1])
            return None
        if opcode not in (Opcode.RRQ, Opcode.WRQ):
            logging.warning("illegal opcode %d from %s:%d", opcode, peer[0], peer[1])
            report_error(self._udp, peer, ErrorCode.ILLEGAL_OPERATION)
            return None

        try:
            request = parse_request(raw)
        except MalformedPacket as exc:
            logging.warning("malformed request from %s:%d: %s", peer[0], peer[1], exc)
            report_error(self._udp, peer, ErrorCode.ILLEGAL_OPERATION, "Malformed request.")
            return None

        if request.mode != MODE_OCTET:
            logging.warning("unsupported mode %r from %s:%d", request.mode, peer[0], peer[1])
            report_error(self._udp, peer, ErrorCode.NOT_DEFINED, f"Unsupported transfer mode: {request.mode}.")
            return None

        return self._start_session(request, peer)

    def _start_session(self, request: Request, peer: Tuple[str, int]) -> threading.Thread | None:
        with self._lock:
            if peer in self._active_peers:
                # the client retransmitted its request before seeing our first reply
                logging.info("duplicate request from %s:%d ignored", peer[0], peer[1])
                return None
            self._active_peers.add(peer)

        try:
            udp = UdpEndpoint.bind(self.config.host, impairment=self.impairment)
        except OSError as exc:
            logging.error("cannot open session endpoint for %s:%d: %s", peer[0], peer[1], exc)
            self._release(peer)
            return None

        direction = Direction.READ if request.opcode == Opcode.RRQ else Direction.WRITE
        session = Session(peer=peer, direction=direction, filename=request.filename, mode=request.mode, udp=udp)
        worker = self._make_worker(session)

        t = threading.Thread(
            target=self._run_worker,
            args=(worker, peer),
            name=f"tftpd-{direction.value}-{peer[0]}:{peer[1]}",
            daemon=True,
        )
        with self._lock:
            self._workers.add(t)
        t.start()
        return t

    def _make_worker(self, session: Session) -> Union[ReadWorker, WriteWorker]:
        cfg = self.config
        if session.direction is Direction.READ:
            return ReadWorker(session, cfg.read_dir, timeout_ms=cfg.timeout_ms, max_retries=cfg.max_retries)
        return WriteWorker(
            session,
            self.quota,
            timeout_ms=cfg.timeout_ms,
            max_retries=cfg.max_retries,
            dally_ms=cfg.dally_ms,
        )

    def _run_worker(self, worker: Union[ReadWorker, WriteWorker], peer: Tuple[str, int]) -> None:
        try:
            worker.run()
        except Exception:
            logging.exception("worker for %s:%d crashed", peer[0], peer[1])
        finally:
            self._release(peer)
            with self._lock:
                self._workers.discard(threading.current_thread())

    def _release(self, peer: Tuple[str, int]) -> None:
        with self._lock:
            self._active_peers.discard(peer)
