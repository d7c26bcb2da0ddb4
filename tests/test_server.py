from __future__ import annotations

import io
import os
import threading

import pytest

from conftest import MAX_RETRIES, RawPeer, wait_until
from tftpd.client import TftpClient
from tftpd.packet import Ack, Data, Error, ErrorCode, Opcode, Request


def rrq(name: str, mode: str = "octet") -> Request:
    return Request(Opcode.RRQ, name, mode)


def wrq(name: str, mode: str = "octet") -> Request:
    return Request(Opcode.WRQ, name, mode)


def expect_error(peer: RawPeer, code: ErrorCode) -> Error:
    pkt, _ = peer.recv()
    assert isinstance(pkt, Error), pkt
    assert pkt.code == code
    return pkt


@pytest.mark.parametrize("size", [0, 1, 511, 512, 513, 1024, 1025])
def test_read_block_count(server, roots, peer, size):
    read_root, _ = roots
    content = os.urandom(size)
    (read_root / "f.bin").write_bytes(content)

    blocks = peer.read_all(server.address, "f.bin")

    assert all(isinstance(b, Data) for b in blocks)
    assert [b.block for b in blocks] == list(range(1, size // 512 + 2))
    assert b"".join(b.payload for b in blocks) == content
    assert blocks[-1].final
    assert all(not b.final for b in blocks[:-1])
    if size % 512 == 0:
        assert blocks[-1].payload == b""


@pytest.mark.parametrize("size", [0, 1, 511, 512, 513, 1024, 1025])
def test_write_then_read_round_trip(make_server, roots, size):
    _, write_root = roots
    server = make_server(read_root=str(write_root))
    host, port = server.address
    client = TftpClient(host, port, timeout_ms=100)
    content = os.urandom(size)

    client.put("rt.bin", io.BytesIO(content))
    assert wait_until(lambda: (write_root / "rt.bin").exists())
    out = io.BytesIO()
    client.get("rt.bin", out)

    assert out.getvalue() == content
    assert (write_root / "rt.bin").read_bytes() == content


def test_read_survives_one_less_than_retry_cap(server, roots, peer):
    read_root, _ = roots
    (read_root / "small.txt").write_bytes(b"hello")
    peer.send(rrq("small.txt"), server.address)

    # let MAX_RETRIES - 1 copies of block 1 go unacknowledged
    for _ in range(MAX_RETRIES):
        pkt, tid = peer.recv()
        assert pkt == Data(1, b"hello")
    peer.send(Ack(1), tid)

    peer.expect_silence(0.5)
    assert wait_until(lambda: server.active_sessions == 0)


def test_read_aborts_at_retry_cap(server, roots, peer):
    read_root, _ = roots
    (read_root / "small.txt").write_bytes(b"hello")
    peer.send(rrq("small.txt"), server.address)

    for _ in range(MAX_RETRIES):
        pkt, _ = peer.recv()
        assert pkt == Data(1, b"hello")
    err = expect_error(peer, ErrorCode.NOT_DEFINED)
    assert "retransmissions" in err.message


def test_read_wrong_ack_triggers_retransmit(server, roots, peer):
    read_root, _ = roots
    (read_root / "two.bin").write_bytes(b"a" * 512 + b"b")
    peer.send(rrq("two.bin"), server.address)
    pkt, tid = peer.recv()
    assert pkt.block == 1
    peer.send(Ack(7), tid)
    pkt, _ = peer.recv()
    assert pkt == Data(1, b"a" * 512)
    peer.send(Ack(1), tid)
    pkt, _ = peer.recv()
    assert pkt == Data(2, b"b")
    peer.send(Ack(2), tid)


def test_read_missing_file(server, peer):
    peer.send(rrq("nope.txt"), server.address)
    expect_error(peer, ErrorCode.FILE_NOT_FOUND)


def test_read_directory_is_access_violation(server, roots, peer):
    read_root, _ = roots
    (read_root / "sub").mkdir()
    peer.send(rrq("sub"), server.address)
    expect_error(peer, ErrorCode.ACCESS_VIOLATION)


def test_read_traversal_is_refused(server, roots, peer, tmp_path):
    (tmp_path / "secret.txt").write_bytes(b"secret")
    peer.send(rrq("../secret.txt"), server.address)
    expect_error(peer, ErrorCode.ACCESS_VIOLATION)


def test_write_traversal_is_refused(server, peer, tmp_path):
    peer.send(wrq("../../evil.bin"), server.address)
    expect_error(peer, ErrorCode.ACCESS_VIOLATION)
    assert not (tmp_path / "evil.bin").exists()
    assert not (tmp_path.parent / "evil.bin").exists()


def test_write_into_missing_directory_is_access_violation(server, roots, peer):
    _, write_root = roots
    peer.send(wrq("nodir/f.bin"), server.address)
    expect_error(peer, ErrorCode.ACCESS_VIOLATION)
    assert os.listdir(write_root) == []


def test_unsupported_mode_is_refused(server, roots, peer):
    read_root, write_root = roots
    (read_root / "text.txt").write_bytes(b"line\n")

    peer.send(rrq("text.txt", "netascii"), server.address)
    pkt, addr = peer.recv()
    assert pkt.code == ErrorCode.NOT_DEFINED
    assert addr == server.address

    peer.send(wrq("upload.txt", "netascii"), server.address)
    expect_error(peer, ErrorCode.NOT_DEFINED)
    peer.expect_silence(0.3)
    assert os.listdir(write_root) == []


def test_write_existing_file_is_untouched(server, roots, peer):
    _, write_root = roots
    (write_root / "taken.bin").write_bytes(b"original")
    peer.send(wrq("taken.bin"), server.address)
    expect_error(peer, ErrorCode.FILE_ALREADY_EXISTS)
    assert (write_root / "taken.bin").read_bytes() == b"original"


def test_write_duplicates_and_out_of_order(make_server, roots, peer):
    _, write_root = roots
    server = make_server(timeout_ms=2000)
    peer.send(wrq("dup.bin"), server.address)
    pkt, tid = peer.recv()
    assert pkt == Ack(0)

    peer.send(Data(1, b"a" * 512), tid)
    assert peer.recv()[0] == Ack(1)
    peer.send(Data(1, b"z" * 512), tid)
    assert peer.recv()[0] == Ack(1)
    peer.send(Data(3, b"z" * 10), tid)
    assert peer.recv()[0] == Ack(1)
    peer.send(Data(2, b"b" * 512), tid)
    assert peer.recv()[0] == Ack(2)
    peer.send(Data(3, b"c" * 10), tid)
    assert peer.recv()[0] == Ack(3)

    target = write_root / "dup.bin"
    assert wait_until(target.exists)
    assert target.read_bytes() == b"a" * 512 + b"b" * 512 + b"c" * 10


def test_write_exact_multiple_needs_empty_block(make_server, roots, peer):
    _, write_root = roots
    server = make_server(timeout_ms=2000)
    peer.send(wrq("even.bin"), server.address)
    _, tid = peer.recv()
    peer.send(Data(1, b"e" * 512), tid)
    assert peer.recv()[0] == Ack(1)
    assert not (write_root / "even.bin").exists()
    peer.send(Data(2, b""), tid)
    assert peer.recv()[0] == Ack(2)
    assert wait_until((write_root / "even.bin").exists)
    assert (write_root / "even.bin").read_bytes() == b"e" * 512


def test_write_aborts_when_client_goes_silent(server, roots, peer):
    _, write_root = roots
    peer.send(wrq("silent.bin"), server.address)
    for _ in range(MAX_RETRIES):
        pkt, _ = peer.recv()
        assert pkt == Ack(0)
    err = expect_error(peer, ErrorCode.NOT_DEFINED)
    assert "limit" in err.message
    assert os.listdir(write_root) == []


def test_write_survives_one_less_than_retry_cap(server, roots, peer):
    _, write_root = roots
    peer.send(wrq("survive.bin"), server.address)
    for _ in range(MAX_RETRIES - 1):
        pkt, tid = peer.recv()
        assert pkt == Ack(0)
    peer.send(Data(1, b"hi"), tid)
    assert peer.recv()[0] == Ack(1)
    target = write_root / "survive.bin"
    assert wait_until(lambda: target.exists() and target.read_bytes() == b"hi")


def test_write_over_quota_is_disk_full(make_server, roots, peer):
    _, write_root = roots
    (write_root / "existing.bin").write_bytes(b"x" * 600)
    server = make_server(quota_bytes=1000, timeout_ms=2000)
    peer.send(wrq("big.bin"), server.address)
    _, tid = peer.recv()
    peer.send(Data(1, b"y" * 500), tid)
    assert peer.recv()[0] == Ack(1)
    expect_error(peer, ErrorCode.DISK_FULL)
    assert sorted(os.listdir(write_root)) == ["existing.bin"]


def test_write_dally_reacks_final_block(make_server, roots, peer):
    _, write_root = roots
    server = make_server(timeout_ms=2000, dally_ms=1000)
    peer.send(wrq("last.bin"), server.address)
    _, tid = peer.recv()
    peer.send(Data(1, b"end"), tid)
    assert peer.recv()[0] == Ack(1)
    # pretend our ACK was lost
    peer.send(Data(1, b"end"), tid)
    assert peer.recv()[0] == Ack(1)
    assert (write_root / "last.bin").read_bytes() == b"end"


def test_peer_error_aborts_silently(server, roots, peer):
    read_root, _ = roots
    (read_root / "big.bin").write_bytes(b"q" * 4096)
    peer.send(rrq("big.bin"), server.address)
    pkt, tid = peer.recv()
    assert pkt.block == 1
    peer.send(Error.of(ErrorCode.NOT_DEFINED, "cancelled"), tid)
    peer.expect_silence(0.5)
    assert wait_until(lambda: server.active_sessions == 0)


def test_foreign_tid_gets_unknown_transfer_id(server, roots, peer):
    read_root, _ = roots
    (read_root / "a.txt").write_bytes(b"abc")
    peer.send(rrq("a.txt"), server.address)
    pkt, tid = peer.recv()
    assert pkt == Data(1, b"abc")

    stranger = RawPeer()
    try:
        stranger.send(Ack(1), tid)
        expect_error(stranger, ErrorCode.UNKNOWN_TRANSFER_ID)
    finally:
        stranger.close()

    peer.send(Ack(1), tid)
    assert wait_until(lambda: server.active_sessions == 0)


def test_duplicate_request_starts_one_session(server, roots, peer):
    read_root, _ = roots
    (read_root / "a.txt").write_bytes(b"abc")
    peer.send(rrq("a.txt"), server.address)
    peer.send(rrq("a.txt"), server.address)
    tids = set()
    for _ in range(3):
        pkt, tid = peer.recv()
        assert pkt == Data(1, b"abc")
        tids.add(tid)
    assert len(tids) == 1
    peer.send(Ack(1), tid)


def test_session_port_differs_from_listener(server, roots, peer):
    read_root, _ = roots
    (read_root / "a.txt").write_bytes(b"abc")
    peer.send(rrq("a.txt"), server.address)
    _, tid = peer.recv()
    assert tid[1] != server.address[1]
    peer.send(Ack(1), tid)


@pytest.mark.parametrize(
    "raw, code",
    [
        (Ack(1).to_bytes(), ErrorCode.UNKNOWN_TRANSFER_ID),
        (Data(1, b"x").to_bytes(), ErrorCode.UNKNOWN_TRANSFER_ID),
        (b"\x00\x09whatever", ErrorCode.ILLEGAL_OPERATION),
        (b"\x07", ErrorCode.ILLEGAL_OPERATION),
        (b"\x00\x01unterminated", ErrorCode.ILLEGAL_OPERATION),
    ],
)
def test_listener_rejects_non_requests(server, peer, raw, code):
    peer.send(raw, server.address)
    pkt, addr = peer.recv()
    assert isinstance(pkt, Error)
    assert pkt.code == code
    assert addr == server.address


def test_listener_ignores_error_packets(server, peer):
    peer.send(Error.of(ErrorCode.DISK_FULL), server.address)
    peer.expect_silence(0.3)


def test_interleaved_sessions_are_independent(server, roots):
    read_root, _ = roots
    (read_root / "a.bin").write_bytes(b"A" * 1200)
    (read_root / "b.bin").write_bytes(b"B" * 1200)
    pa, pb = RawPeer(), RawPeer()
    try:
        pa.send(rrq("a.bin"), server.address)
        pb.send(rrq("b.bin"), server.address)
        got = {"a": b"", "b": b""}
        tids = {}
        done = set()
        block = 1
        while len(done) < 2:
            for key, p in (("a", pa), ("b", pb)):
                if key in done:
                    continue
                while True:
                    pkt, tid = p.recv()
                    tids.setdefault(key, tid)
                    assert tid == tids[key]
                    # skip retransmissions of the block acknowledged last round
                    if pkt.block == block:
                        break
                got[key] += pkt.payload
                p.send(Ack(pkt.block), tid)
                if pkt.final:
                    done.add(key)
            block += 1
        assert tids["a"] != tids["b"]
        assert got == {"a": b"A" * 1200, "b": b"B" * 1200}
    finally:
        pa.close()
        pb.close()


def test_concurrent_clients(make_server, roots):
    read_root, write_root = roots
    server = make_server()
    host, port = server.address
    files = {f"f{i}.bin": os.urandom(700 * (i + 1)) for i in range(4)}
    for name, content in files.items():
        (read_root / name).write_bytes(content)
    results: dict = {}
    errors: list = []

    def download(name):
        try:
            out = io.BytesIO()
            TftpClient(host, port, timeout_ms=100).get(name, out)
            results[name] = out.getvalue()
        except Exception as exc:
            errors.append(exc)

    def upload(name):
        try:
            TftpClient(host, port, timeout_ms=100).put("up-" + name, io.BytesIO(files[name]))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=download, args=(n,)) for n in files]
    threads += [threading.Thread(target=upload, args=(n,)) for n in files]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert errors == []
    assert results == files
    for name, content in files.items():
        target = write_root / ("up-" + name)
        assert wait_until(target.exists)
        assert target.read_bytes() == content
