from __future__ import annotations

OP_RRQ = 1
OP_WRQ = 2
OP_DATA = 3
OP_ACK = 4
OP_ERROR = 5

ERR_NOT_DEFINED = 0
ERR_FILE_NOT_FOUND = 1
ERR_ACCESS_VIOLATION = 2
ERR_DISK_FULL = 3
ERR_ILLEGAL_OPERATION = 4
ERR_UNKNOWN_TRANSFER_ID = 5
ERR_FILE_ALREADY_EXISTS = 6
ERR_NO_SUCH_USER = 7

MODE_OCTET = "octet"

BLOCK_SIZE = 512
HEADER_FORMAT = "!HH"  # opcode, block number / error code
MAX_DATAGRAM = 516
BLOCK_MODULUS = 1 << 16

DEFAULT_PORT = 4970
DEFAULT_TIMEOUT_MS = 200
DEFAULT_MAX_RETRIES = 10
DEFAULT_QUOTA_BYTES = 10 * 1024 * 1024
DEFAULT_READ_ROOT = "TFTP/read"
DEFAULT_WRITE_ROOT = "TFTP/write"
