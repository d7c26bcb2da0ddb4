from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Union

from .constants import (
    BLOCK_MODULUS,
    BLOCK_SIZE,
    ERR_ACCESS_VIOLATION,
    ERR_DISK_FULL,
    ERR_FILE_ALREADY_EXISTS,
    ERR_FILE_NOT_FOUND,
    ERR_ILLEGAL_OPERATION,
    ERR_NO_SUCH_USER,
    ERR_NOT_DEFINED,
    ERR_UNKNOWN_TRANSFER_ID,
    HEADER_FORMAT,
    OP_ACK,
    OP_DATA,
    OP_ERROR,
    OP_RRQ,
    OP_WRQ,
)

OPCODE = struct.Struct("!H")
HEADER = struct.Struct(HEADER_FORMAT)


class MalformedPacket(ValueError):
    pass


class Opcode(enum.IntEnum):
    RRQ = OP_RRQ
    WRQ = OP_WRQ
    DATA = OP_DATA
    ACK = OP_ACK
    ERROR = OP_ERROR


class ErrorCode(enum.IntEnum):
    NOT_DEFINED = ERR_NOT_DEFINED
    FILE_NOT_FOUND = ERR_FILE_NOT_FOUND
    ACCESS_VIOLATION = ERR_ACCESS_VIOLATION
    DISK_FULL = ERR_DISK_FULL
    ILLEGAL_OPERATION = ERR_ILLEGAL_OPERATION
    UNKNOWN_TRANSFER_ID = ERR_UNKNOWN_TRANSFER_ID
    FILE_ALREADY_EXISTS = ERR_FILE_ALREADY_EXISTS
    NO_SUCH_USER = ERR_NO_SUCH_USER

    @property
    def message(self) -> str:
        return ERROR_MESSAGES[self]


ERROR_MESSAGES = {
    ErrorCode.NOT_DEFINED: "",
    ErrorCode.FILE_NOT_FOUND: "File not found.",
    ErrorCode.ACCESS_VIOLATION: "Access violation.",
    ErrorCode.DISK_FULL: "Disk full or allocation exceeded.",
    ErrorCode.ILLEGAL_OPERATION: "Illegal TFTP operation.",
    ErrorCode.UNKNOWN_TRANSFER_ID: "Unknown transfer ID.",
    ErrorCode.FILE_ALREADY_EXISTS: "File already exists.",
    ErrorCode.NO_SUCH_USER: "No such user.",
}


def next_block(block: int) -> int:
    return (block + 1) % BLOCK_MODULUS


def _read_cstring(raw: bytes, start: int, what: str) -> tuple[str, int]:
    """Decode a NUL-terminated ASCII string starting at ``start``.

    The scan never looks past the end of ``raw``; returns the text and the
    offset just after its terminator.
    """
    end = raw.find(b"\x00", start)
    if end < 0:
        raise MalformedPacket(f"{what} is not NUL-terminated")
    try:
        text = raw[start:end].decode("ascii")
    except UnicodeDecodeError:
        raise MalformedPacket(f"{what} is not ASCII") from None
    return text, end + 1


@dataclass(frozen=True, slots=True)
class Request:
    opcode: Opcode
    filename: str
    mode: str

    def to_bytes(self) -> bytes:
        return (
            OPCODE.pack(int(self.opcode))
            + self.filename.encode("ascii")
            + b"\x00"
            + self.mode.encode("ascii")
            + b"\x00"
        )

    @staticmethod
    def from_bytes(raw: bytes) -> "Request":
        opcode = peek_opcode(raw)
        if opcode not in (OP_RRQ, OP_WRQ):
            raise MalformedPacket(f"opcode {opcode} is not a request")
        filename, offset = _read_cstring(raw, OPCODE.size, "filename")
        mode, _ = _read_cstring(raw, offset, "mode")
        return Request(Opcode(opcode), filename, mode.lower())


@dataclass(frozen=True, slots=True)
class Data:
    block: int
    payload: bytes = b""

    @property
    def final(self) -> bool:
        return len(self.payload) < BLOCK_SIZE

    def to_bytes(self) -> bytes:
        if len(self.payload) > BLOCK_SIZE:
            raise ValueError(f"payload too large: {len(self.payload)}")
        return HEADER.pack(OP_DATA, self.block) + self.payload

    @staticmethod
    def from_bytes(raw: bytes) -> "Data":
        if len(raw) < HEADER.size:
            raise MalformedPacket("datagram too small to be a DATA packet")
        _, block = HEADER.unpack_from(raw)
        payload = raw[HEADER.size :]
        if len(payload) > BLOCK_SIZE:
            raise MalformedPacket(f"DATA payload of {len(payload)} bytes")
        return Data(block, payload)


@dataclass(frozen=True, slots=True)
class Ack:
    block: int

    def to_bytes(self) -> bytes:
        return HEADER.pack(OP_ACK, self.block)

    @staticmethod
    def from_bytes(raw: bytes) -> "Ack":
        if len(raw) < HEADER.size:
            raise MalformedPacket("datagram too small to be an ACK packet")
        _, block = HEADER.unpack_from(raw)
        return Ack(block)


@dataclass(frozen=True, slots=True)
class Error:
    code: int
    message: str = ""

    def to_bytes(self) -> bytes:
        return HEADER.pack(OP_ERROR, self.code) + self.message.encode("ascii", "replace") + b"\x00"

    @staticmethod
    def from_bytes(raw: bytes) -> "Error":
        if len(raw) < HEADER.size:
            raise MalformedPacket("datagram too small to be an ERROR packet")
        _, code = HEADER.unpack_from(raw)
        # peers are sloppy about the terminator; take whatever text is there
        text = raw[HEADER.size :].split(b"\x00", 1)[0]
        return Error(code, text.decode("ascii", "replace"))

    @staticmethod
    def of(code: ErrorCode, message: str | None = None) -> "Error":
        return Error(int(code), code.message if message is None else message)


Packet = Union[Request, Data, Ack, Error]


def peek_opcode(raw: bytes) -> int:
    if len(raw) < OPCODE.size:
        raise MalformedPacket("datagram too small to carry an opcode")
    return OPCODE.unpack_from(raw)[0]


def parse_request(raw: bytes) -> Request:
    return Request.from_bytes(raw)


def decode(raw: bytes) -> Packet:
    opcode = peek_opcode(raw)
    if opcode in (OP_RRQ, OP_WRQ):
        return Request.from_bytes(raw)
    if opcode == OP_DATA:
        return Data.from_bytes(raw)
    if opcode == OP_ACK:
        return Ack.from_bytes(raw)
    if opcode == OP_ERROR:
        return Error.from_bytes(raw)
    raise MalformedPacket(f"unknown opcode {opcode}")
