from __future__ import annotations

import struct
from dataclasses import dataclass

from .constants import HEADER_FORMAT, HEADER_SIZE, MAX_DATAGRAM_SIZE, SEQ_MASK
from .errors import ConfigurationError

_HEADER = struct.Struct(HEADER_FORMAT)
assert _HEADER.size == HEADER_SIZE


def validate_packet_size(size: int) -> int:
    if not HEADER_SIZE <= size <= MAX_DATAGRAM_SIZE:
        raise ConfigurationError(
            f"packet size must be between {HEADER_SIZE} and {MAX_DATAGRAM_SIZE} bytes, got {size}"
        )
    return size


def peek_seq(raw: bytes) -> int:
    if len(raw) < HEADER_SIZE:
        raise ValueError("datagram too small to carry a header")
    return _HEADER.unpack_from(raw)[0]


@dataclass(frozen=True, slots=True)
class Packet:
    seq: int
    ts_sec: int
    ts_usec: int
    payload: bytes = b""

    @property
    def timestamp(self) -> float:
        return self.ts_sec + self.ts_usec / 1_000_000

    def to_bytes(self) -> bytes:
        return _HEADER.pack(self.seq & SEQ_MASK, self.ts_sec, self.ts_usec) + self.payload

    @staticmethod
    def from_bytes(raw: bytes) -> "Packet":
        if len(raw) < HEADER_SIZE:
            raise ValueError("datagram too small to carry a header")
        seq, ts_sec, ts_usec = _HEADER.unpack_from(raw)
        return Packet(seq=seq, ts_sec=ts_sec, ts_usec=ts_usec, payload=bytes(raw[HEADER_SIZE:]))


class PacketWriter:
    """Reusable send buffer of a fixed packet size.

    The payload after the header stays zeroed; only the header is rewritten
    for each packet, so stamping does not allocate.
    """

    __slots__ = ("size", "_buf")

    def __init__(self, size: int):
        self.size = validate_packet_size(size)
        self._buf = bytearray(size)

    def stamp(self, seq: int, ts_sec: int, ts_usec: int) -> bytearray:
        _HEADER.pack_into(self._buf, 0, seq & SEQ_MASK, ts_sec, ts_usec)
        return self._buf
