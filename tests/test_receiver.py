from __future__ import annotations

import logging

import pytest

from tputbench.packet import Packet
from tputbench.receiver import DatagramReceiver, LossTracker
from tputbench.session import StopToken


class ScriptedEndpoint:
    """Yields the given datagrams, with None standing in for a poll timeout, then stops the run."""

    def __init__(self, datagrams: list, stop: StopToken, clock=None):
        self._items = list(datagrams)
        self.stop = stop
        self.clock = clock

    def recvfrom(self):
        if not self._items:
            self.stop.stop()
            return None
        item = self._items.pop(0)
        if self.clock is not None:
            self.clock.now += 0.5
        if item is None:
            return None
        return item, ("127.0.0.1", 40000)

    @property
    def local_address(self):
        return ("127.0.0.1", 8888)


class StepClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def dgram(seq: int, size: int = 100) -> bytes:
    return Packet(seq=seq, ts_sec=0, ts_usec=0, payload=b"\x00" * (size - 12)).to_bytes()


def test_single_gap_counts_one_lost_packet():
    t = LossTracker()
    gaps = [t.observe(seq, 100) for seq in [0, 1, 3, 4]]
    assert gaps == [None, None, 2, None]
    assert t.last_seq == 4
    assert t.acc.total_packets == 4
    assert t.lost_packets == 1
    assert t.loss_percent == pytest.approx(20.0)


def test_contiguous_stream_has_no_loss():
    t = LossTracker()
    for seq in range(1000):
        assert t.observe(seq, 1400) is None
    assert t.lost_packets == 0
    assert t.acc.total_packets == 1000
    assert t.acc.total_bytes == 1_400_000


def test_reordering_is_reported_as_gaps_and_hides_loss():
    t = LossTracker()
    for seq in [0, 2, 1, 3]:
        t.observe(seq, 10)
    assert t.gaps == 2
    assert t.last_seq == 3
    assert t.lost_packets == 0


def test_duplicates_never_produce_negative_loss():
    t = LossTracker()
    for seq in [0, 0, 0]:
        t.observe(seq, 10)
    assert t.lost_packets == 0


def test_first_packet_seeds_state_without_gap():
    t = LossTracker()
    assert t.observe(41, 10) is None
    assert t.observe(42, 10) is None
    # loss is inferred from sequence zero, not from the first packet seen
    assert t.lost_packets == 41


def test_sequence_wrap_is_contiguous():
    t = LossTracker()
    t.observe(0xFFFFFFFF, 10)
    assert t.observe(0, 10) is None


def test_empty_tracker_reports_nothing():
    t = LossTracker()
    assert t.lost_packets == 0
    assert t.loss_percent == 0.0


def test_receiver_run_reports_totals_and_logs_gap(caplog):
    stop = StopToken()
    clock = StepClock()
    ep = ScriptedEndpoint([None, dgram(0), dgram(1), None, dgram(3), b"\x01\x02", dgram(4)], stop, clock)

    with caplog.at_level(logging.WARNING, logger="tputbench.receiver"):
        report = DatagramReceiver(ep, clock=clock).run(stop)

    assert report.packets_received == 4
    assert report.bytes_received == 400
    assert report.lost_packets == 1
    assert report.loss_percent == pytest.approx(20.0)
    # clock starts at the first packet (1.0) and stops after the last poll (3.5)
    assert report.duration_s == 2.5
    assert report.throughput_mbps == (400 * 8) / (2.5 * 1_000_000)
    assert "expected 2, received 3" in caplog.text


def test_receiver_stopped_before_first_packet():
    stop = StopToken()
    report = DatagramReceiver(ScriptedEndpoint([None, None], stop)).run(stop)
    assert report.packets_received == 0
    assert report.duration_s == 0.0
    assert report.throughput_mbps == 0.0
