from __future__ import annotations

import io
import os
import tempfile
import time
from dataclasses import dataclass

from .client import TftpClient
from .config import ServerConfig
from .constants import DEFAULT_MAX_RETRIES, DEFAULT_QUOTA_BYTES, DEFAULT_TIMEOUT_MS
from .net import Impairment
from .server import Server


@dataclass(frozen=True, slots=True)
class BenchmarkResult:
    bytes_transferred: int
    duration_s: float
    throughput_mbps: float
    retransmits: int
    timeouts: int


def _wait_for_commit(path: str, timeout_s: float = 5.0) -> None:
    # the server commits after acknowledging the last block
    deadline = time.monotonic() + timeout_s
    while not os.path.exists(path):
        if time.monotonic() > deadline:
            raise RuntimeError(f"upload was not committed: {path}")
        time.sleep(0.01)


def run_benchmark(
    *,
    size_bytes: int,
    loss_rate: float = 0.0,
    delay_ms: int = 0,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> BenchmarkResult:
    """Upload then download ``size_bytes`` over loopback through an impaired client."""
    payload = os.urandom(size_bytes)
    impair = Impairment(loss_rate=loss_rate, delay_ms=delay_ms)

    with tempfile.TemporaryDirectory() as tmp:
        # reads are served from the write root so the uploaded file comes straight back
        root = os.path.join(tmp, "root")
        config = ServerConfig(
            host="127.0.0.1",
            port=0,
            read_root=root,
            write_root=root,
            quota_bytes=max(DEFAULT_QUOTA_BYTES, size_bytes),
            timeout_ms=timeout_ms,
            max_retries=max_retries,
        )
        with Server(config) as server:
            host, port = server.address
            client = TftpClient(host, port, timeout_ms=timeout_ms, max_retries=max_retries, impairment=impair)
            up = client.put("bench.bin", io.BytesIO(payload))
            _wait_for_commit(os.path.join(server.config.write_dir, "bench.bin"))
            out = io.BytesIO()
            down = client.get("bench.bin", out)

    if out.getvalue() != payload:
        raise RuntimeError("downloaded bytes differ from the uploaded payload")

    duration_s = max(0.001, up.duration_s + down.duration_s)
    throughput_mbps = (2 * size_bytes * 8 / 1_000_000) / duration_s

    return BenchmarkResult(
        bytes_transferred=2 * size_bytes,
        duration_s=duration_s,
        throughput_mbps=throughput_mbps,
        retransmits=up.retransmits + down.retransmits,
        timeouts=up.timeouts + down.timeouts,
    )
