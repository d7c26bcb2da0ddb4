from __future__ import annotations

import os
from dataclasses import dataclass

from .constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PORT,
    DEFAULT_QUOTA_BYTES,
    DEFAULT_READ_ROOT,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_WRITE_ROOT,
)


@dataclass(frozen=True, slots=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    read_root: str = DEFAULT_READ_ROOT
    write_root: str = DEFAULT_WRITE_ROOT
    quota_bytes: int = DEFAULT_QUOTA_BYTES
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    dally_ms: int = DEFAULT_TIMEOUT_MS

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        if self.quota_bytes < 0:
            raise ValueError(f"quota_bytes must be >= 0, got {self.quota_bytes}")
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be > 0, got {self.timeout_ms}")
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {self.max_retries}")
        if self.dally_ms < 0:
            raise ValueError(f"dally_ms must be >= 0, got {self.dally_ms}")

    @property
    def read_dir(self) -> str:
        return os.path.realpath(self.read_root)

    @property
    def write_dir(self) -> str:
        return os.path.realpath(self.write_root)
