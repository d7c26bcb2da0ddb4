from __future__ import annotations

import argparse
import json
import logging
import os
from dataclasses import asdict

from .bench import run_benchmark
from .client import TftpClient
from .config import ServerConfig
from .constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PORT,
    DEFAULT_QUOTA_BYTES,
    DEFAULT_READ_ROOT,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_WRITE_ROOT,
)
from .errors import RetriesExceeded, TftpError
from .net import Impairment
from .server import Server
from .session import Metrics


def _emit(args: argparse.Namespace, payload: dict) -> None:
    print(json.dumps(payload, indent=2) if args.json else payload)


def _transfer_payload(role: str, metrics: Metrics) -> dict:
    return {
        "role": role,
        "bytes": metrics.bytes_sent,
        "blocks": metrics.blocks,
        "seconds": metrics.duration_s,
        "mbps": metrics.throughput_mbps,
        "timeouts": metrics.timeouts,
        "retransmits": metrics.retransmits,
    }


def cmd_serve(args: argparse.Namespace) -> int:
    config = ServerConfig(
        host=args.host,
        port=args.port,
        read_root=args.read_root,
        write_root=args.write_root,
        quota_bytes=args.quota_bytes,
        timeout_ms=args.timeout_ms,
        max_retries=args.max_retries,
        dally_ms=args.dally_ms,
    )
    server = Server(config, Impairment(args.loss_rate, args.delay_ms))
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logging.info("interrupted; waiting for running transfers")
    finally:
        server.stop()
    return 0


def _client(args: argparse.Namespace) -> TftpClient:
    return TftpClient(
        args.host,
        args.port,
        timeout_ms=args.timeout_ms,
        max_retries=args.max_retries,
        impairment=Impairment(args.loss_rate, args.delay_ms),
    )


def cmd_get(args: argparse.Namespace) -> int:
    try:
        with open(args.file, "wb") as out:
            metrics = _client(args).get(args.remote or os.path.basename(args.file), out)
    except (TftpError, RetriesExceeded) as exc:
        logging.error("get failed: %s", exc)
        return 1
    _emit(args, _transfer_payload("get", metrics))
    return 0


def cmd_put(args: argparse.Namespace) -> int:
    try:
        with open(args.file, "rb") as src:
            metrics = _client(args).put(args.remote or os.path.basename(args.file), src)
    except (TftpError, RetriesExceeded) as exc:
        logging.error("put failed: %s", exc)
        return 1
    _emit(args, _transfer_payload("put", metrics))
    return 0


def cmd_bench(args: argparse.Namespace) -> int:
    r = run_benchmark(
        size_bytes=args.size_bytes,
        loss_rate=args.loss_rate,
        delay_ms=args.delay_ms,
        timeout_ms=args.timeout_ms,
        max_retries=args.max_retries,
    )
    _emit(args, {"role": "bench", **asdict(r)})
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tftpd", description="TFTP (RFC 1350, octet mode) server and client.")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_common(x: argparse.ArgumentParser) -> None:
        x.add_argument("--timeout-ms", type=int, default=DEFAULT_TIMEOUT_MS)
        x.add_argument("--max-retries", type=int, default=DEFAULT_MAX_RETRIES)
        x.add_argument("--loss-rate", type=float, default=0.0, help="simulate packet loss")
        x.add_argument("--delay-ms", type=int, default=0, help="simulate per-packet delay")
        x.add_argument("--json", action="store_true")

    serve = sub.add_parser("serve", help="run the server")
    add_common(serve)
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=DEFAULT_PORT)
    serve.add_argument("--read-root", default=DEFAULT_READ_ROOT)
    serve.add_argument("--write-root", default=DEFAULT_WRITE_ROOT)
    serve.add_argument("--quota-bytes", type=int, default=DEFAULT_QUOTA_BYTES)
    serve.add_argument("--dally-ms", type=int, default=DEFAULT_TIMEOUT_MS)
    serve.set_defaults(func=cmd_serve)

    for name, func, help_text in (
        ("get", cmd_get, "download a file"),
        ("put", cmd_put, "upload a file"),
    ):
        x = sub.add_parser(name, help=help_text)
        add_common(x)
        x.add_argument("--host", default="127.0.0.1")
        x.add_argument("--port", type=int, default=DEFAULT_PORT)
        x.add_argument("--file", required=True, help="local file")
        x.add_argument("--remote", default=None, help="remote name (defaults to --file)")
        x.set_defaults(func=func)

    bench = sub.add_parser("bench", help="loopback upload+download benchmark")
    add_common(bench)
    bench.add_argument("--size-bytes", type=int, default=1_000_000)
    bench.set_defaults(func=cmd_bench)

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s [%(levelname)s] %(message)s")
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
