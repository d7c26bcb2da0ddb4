from __future__ import annotations

import logging
import os
import tempfile
import threading

from .errors import TransferError
from .packet import ErrorCode


class PathEscape(TransferError):
    def __init__(self, filename: str):
        super().__init__(ErrorCode.ACCESS_VIOLATION)
        self.filename = filename


def resolve_path(root: str, filename: str) -> str:
    """Resolve ``filename`` under ``root``, refusing anything outside it.

    Symlinks are followed before the check, so a link pointing out of the
    root is rejected as well. The root itself is not a valid target.
    """
    base = os.path.realpath(root)
    candidate = os.path.realpath(os.path.join(base, filename))
    if candidate == base or os.path.commonpath([base, candidate]) != base:
        raise PathEscape(filename)
    return candidate


def directory_size(root: str) -> int:
    total = 0
    for dirpath, _, filenames in os.walk(root):
        for name in filenames:
            try:
                total += os.path.getsize(os.path.join(dirpath, name))
            except OSError:
                # removed between listing and stat
                continue
    return total


def has_space(root: str, size: int, limit: int) -> bool:
    return directory_size(root) + size <= limit


class QuotaGuard:
    """Serialises the quota check and the commit for one write root."""

    def __init__(self, root: str, limit: int):
        self.root = root
        self.limit = limit
        self._lock = threading.Lock()

    def commit(self, path: str, data: bytes) -> None:
        with self._lock:
            if os.path.exists(path):
                raise TransferError(ErrorCode.FILE_ALREADY_EXISTS)
            if not has_space(self.root, len(data), self.limit):
                logging.info(
                    "quota refused %d bytes for %s (limit %d)", len(data), path, self.limit
                )
                raise TransferError(ErrorCode.DISK_FULL)
            self._write_atomic(path, data)

    @staticmethod
    def _write_atomic(path: str, data: bytes) -> None:
        directory, name = os.path.split(path)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(prefix=f".{name}.", suffix=".part", dir=directory)
            with os.fdopen(fd, "wb") as out:
                out.write(data)
                out.flush()
                os.fsync(out.fileno())
            os.replace(tmp_path, path)
            tmp_path = None
        except OSError as exc:
            logging.error("commit of %s failed: %s", path, exc)
            raise TransferError(ErrorCode.NO_SUCH_USER, "Could not store file.") from exc
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
