from __future__ import annotations

import logging
from typing import Tuple

from .net import UdpEndpoint
from .packet import Error, ErrorCode


class TransferError(Exception):
    """A session-ending condition that is reported to the peer once."""

    def __init__(self, code: ErrorCode, message: str | None = None):
        self.code = code
        self.message = code.message if message is None else message
        super().__init__(f"{int(code)}: {self.message}")


class PeerAborted(Exception):
    """The peer sent an ERROR packet; the session ends without a reply."""

    def __init__(self, error: Error):
        self.error = error
        super().__init__(f"peer aborted with error {error.code}: {error.message}")


class TftpError(Exception):
    """Raised by the client when the server answers with an ERROR packet."""

    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"TFTP error {code}: {message}")


class RetriesExceeded(Exception):
    pass


def report_error(
    udp: UdpEndpoint,
    peer: Tuple[str, int],
    code: ErrorCode,
    message: str | None = None,
) -> bool:
    pkt = Error.of(code, message)
    try:
        udp.send(pkt.to_bytes(), peer)
    except OSError as exc:
        logging.warning("could not send error %d to %s:%d: %s", pkt.code, peer[0], peer[1], exc)
        return False
    logging.debug("sent error %d (%s) to %s:%d", pkt.code, pkt.message, peer[0], peer[1])
    return True
