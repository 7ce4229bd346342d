"""
TFTP wire format (RFC 1350).

All fields are big-endian. Strings are NUL-terminated.

  RRQ/WRQ  | opcode:2 | filename | 0 | mode | 0 |
  DATA     | opcode:2 | block:2  | payload (0..512) |
  ACK      | opcode:2 | block:2  |
  ERROR    | opcode:2 | code:2   | message | 0 |
"""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Tuple, Union

BLOCK_SIZE = 512
MAX_PACKET_SIZE = 516  # 4 bytes header + 512 bytes data
MAX_BLOCK_NUMBER = 65535
MAX_MESSAGE_LENGTH = 507  # error packet still fits in MAX_PACKET_SIZE
MAX_REQUEST_LENGTH = 512

MODES = ("netascii", "octet", "mail")

_HEADER = struct.Struct("!HH")
_OPCODE = struct.Struct("!H")


class Opcode(enum.IntEnum):
    RRQ = 1
    WRQ = 2
    DATA = 3
    ACK = 4
    ERROR = 5


class ErrorCode(enum.IntEnum):
    NOT_DEFINED = 0
    FILE_NOT_FOUND = 1
    ACCESS_VIOLATION = 2
    DISK_FULL = 3
    ILLEGAL_OPERATION = 4
    UNKNOWN_TID = 5
    FILE_EXISTS = 6
    NO_SUCH_USER = 7


class PacketError(ValueError):
    pass


class MalformedPacket(PacketError):
    """Raised when a datagram cannot be decoded as a TFTP packet."""


class EncodeError(PacketError):
    """Raised when an in-memory packet cannot be put on the wire."""


@dataclass(frozen=True)
class RequestPacket:
    opcode: Opcode
    filename: str
    mode: str = "octet"

    @property
    def is_write(self) -> bool:
        return self.opcode == Opcode.WRQ


@dataclass(frozen=True)
class DataPacket:
    block: int
    payload: bytes = b""

    @property
    def is_final(self) -> bool:
        return len(self.payload) < BLOCK_SIZE


@dataclass(frozen=True)
class AckPacket:
    block: int


@dataclass(frozen=True)
class ErrorPacket:
    code: Union[ErrorCode, int]
    message: str = ""


Packet = Union[RequestPacket, DataPacket, AckPacket, ErrorPacket]


# ---------- Decoding ----------

def peek_op(data: bytes) -> Opcode:
    if len(data) < 2:
        raise MalformedPacket("datagram shorter than an opcode")
    raw = _OPCODE.unpack_from(data)[0]
    try:
        return Opcode(raw)
    except ValueError:
        raise MalformedPacket(f"unknown opcode {raw}") from None


def _split_cstr(data: bytes, start: int, what: str) -> Tuple[bytes, int]:
    end = data.find(b"\x00", start)
    if end == -1:
        raise MalformedPacket(f"{what} is not NUL-terminated")
    return data[start:end], end + 1


def _parse_request(opcode: Opcode, data: bytes) -> RequestPacket:
    raw_name, pos = _split_cstr(data, 2, "filename")
    raw_mode, _ = _split_cstr(data, pos, "mode")
    if not raw_name:
        raise MalformedPacket("empty filename")
    try:
        filename = raw_name.decode("utf-8")
        mode = raw_mode.decode("ascii")
    except UnicodeDecodeError as exc:
        raise MalformedPacket(f"undecodable request field: {exc}") from None
    if mode.lower() not in MODES:
        raise MalformedPacket(f"unknown transfer mode {mode!r}")
    # Anything after the mode is RFC 2347 options, which are not negotiated.
    return RequestPacket(opcode=opcode, filename=filename, mode=mode)


def _parse_data(data: bytes) -> DataPacket:
    if len(data) < 4:
        raise MalformedPacket("DATA packet shorter than its header")
    payload = data[4:]
    if len(payload) > BLOCK_SIZE:
        raise MalformedPacket(f"DATA payload of {len(payload)} bytes exceeds {BLOCK_SIZE}")
    _, block = _HEADER.unpack_from(data)
    return DataPacket(block=block, payload=bytes(payload))


def _parse_ack(data: bytes) -> AckPacket:
    if len(data) < 4:
        raise MalformedPacket("ACK packet shorter than 4 bytes")
    _, block = _HEADER.unpack_from(data)
    return AckPacket(block=block)


def _parse_error(data: bytes) -> ErrorPacket:
    if len(data) < 4:
        raise MalformedPacket("ERROR packet shorter than its header")
    _, raw_code = _HEADER.unpack_from(data)
    # Some clients omit the trailing NUL; take the rest of the datagram then.
    end = data.find(b"\x00", 4)
    message = data[4:] if end == -1 else data[4:end]
    code: Union[ErrorCode, int]
    try:
        code = ErrorCode(raw_code)
    except ValueError:
        code = raw_code
    return ErrorPacket(code=code, message=message.decode("utf-8", errors="replace"))


def decode(data: bytes) -> Packet:
    opcode = peek_op(data)
    if opcode in (Opcode.RRQ, Opcode.WRQ):
        return _parse_request(opcode, data)
    if opcode == Opcode.DATA:
        return _parse_data(data)
    if opcode == Opcode.ACK:
        return _parse_ack(data)
    return _parse_error(data)


# ---------- Encoding ----------

def _check_block(block_no: int) -> None:
    if not 0 <= block_no <= MAX_BLOCK_NUMBER:
        raise EncodeError(f"block number {block_no} outside 0..{MAX_BLOCK_NUMBER}")


def _encode_cstr(text: str, encoding: str, what: str) -> bytes:
    try:
        raw = text.encode(encoding)
    except UnicodeEncodeError as exc:
        raise EncodeError(f"{what} not encodable as {encoding}: {exc}") from None
    if b"\x00" in raw:
        raise EncodeError(f"{what} contains a NUL byte")
    return raw + b"\x00"


def build_request(opcode: Opcode, filename: str, mode: str = "octet") -> bytes:
    if opcode not in (Opcode.RRQ, Opcode.WRQ):
        raise EncodeError(f"{opcode!r} is not a request opcode")
    if not filename:
        raise EncodeError("empty filename")
    if mode.lower() not in MODES:
        raise EncodeError(f"mode should be one of {MODES}")
    packet = (
        _OPCODE.pack(opcode)
        + _encode_cstr(filename, "utf-8", "filename")
        + _encode_cstr(mode, "ascii", "mode")
    )
    if len(packet) > MAX_REQUEST_LENGTH:
        raise EncodeError(f"request of {len(packet)} bytes exceeds {MAX_REQUEST_LENGTH}")
    return packet


def build_data(block_no: int, payload: bytes) -> bytes:
    _check_block(block_no)
    if len(payload) > BLOCK_SIZE:
        raise EncodeError(f"DATA payload of {len(payload)} bytes exceeds {BLOCK_SIZE}")
    return _HEADER.pack(Opcode.DATA, block_no) + payload


def build_ack(block_no: int) -> bytes:
    _check_block(block_no)
    return _HEADER.pack(Opcode.ACK, block_no)


def build_error(code: int, msg: str) -> bytes:
    if not 0 <= int(code) <= 0xFFFF:
        raise EncodeError(f"error code {code} does not fit in 16 bits")
    raw = _encode_cstr(msg, "utf-8", "error message")
    if len(raw) - 1 > MAX_MESSAGE_LENGTH:
        raise EncodeError(f"error message longer than {MAX_MESSAGE_LENGTH} bytes")
    return _HEADER.pack(Opcode.ERROR, int(code)) + raw


def encode(packet: Packet) -> bytes:
    if isinstance(packet, RequestPacket):
        return build_request(packet.opcode, packet.filename, packet.mode)
    if isinstance(packet, DataPacket):
        return build_data(packet.block, packet.payload)
    if isinstance(packet, AckPacket):
        return build_ack(packet.block)
    if isinstance(packet, ErrorPacket):
        return build_error(packet.code, packet.message)
    raise EncodeError(f"not a TFTP packet: {packet!r}")


def next_block(block_no: int) -> int:
    """Block number following ``block_no``; rolls over from 65535 to 0."""
    return (block_no + 1) & MAX_BLOCK_NUMBER
