from __future__ import annotations

import struct

import pytest

from tputbench.constants import HEADER_SIZE, MAX_DATAGRAM_SIZE
from tputbench.errors import ConfigurationError
from tputbench.packet import Packet, PacketWriter, peek_seq, validate_packet_size


def test_header_is_big_endian_seq_then_timestamp():
    raw = Packet(seq=1, ts_sec=2, ts_usec=3, payload=b"\x00" * 4).to_bytes()
    assert raw[:HEADER_SIZE] == struct.pack(">III", 1, 2, 3)
    assert len(raw) == HEADER_SIZE + 4


def test_parse_header_and_payload():
    raw = struct.pack(">III", 7, 1_700_000_000, 250_000) + b"xyz"
    p = Packet.from_bytes(raw)
    assert p.seq == 7
    assert p.payload == b"xyz"
    assert p.timestamp == pytest.approx(1_700_000_000.25)


def test_short_datagram_rejected():
    with pytest.raises(ValueError):
        Packet.from_bytes(b"\x00" * (HEADER_SIZE - 1))
    with pytest.raises(ValueError):
        peek_seq(b"\x01")


@pytest.mark.parametrize("size", [HEADER_SIZE, 1400, MAX_DATAGRAM_SIZE])
def test_packet_size_in_range_accepted(size):
    assert validate_packet_size(size) == size


@pytest.mark.parametrize("size", [0, HEADER_SIZE - 1, MAX_DATAGRAM_SIZE + 1])
def test_packet_size_out_of_range_rejected(size):
    with pytest.raises(ConfigurationError):
        validate_packet_size(size)


def test_writer_reuses_buffer_and_keeps_size():
    w = PacketWriter(64)
    first = w.stamp(0, 10, 20)
    second = w.stamp(1, 10, 30)
    assert first is second
    assert len(second) == 64
    assert peek_seq(second) == 1
    assert bytes(second[HEADER_SIZE:]) == b"\x00" * (64 - HEADER_SIZE)


def test_writer_masks_sequence_to_u32():
    w = PacketWriter(HEADER_SIZE)
    assert peek_seq(w.stamp(2**32 + 5, 0, 0)) == 5
