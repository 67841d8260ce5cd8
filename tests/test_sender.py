from __future__ import annotations

import pytest

from tputbench.constants import HEADER_SIZE, MAX_DATAGRAM_SIZE
from tputbench.errors import ConfigurationError
from tputbench.packet import Packet
from tputbench.sender import DatagramSender, SenderConfig
from tputbench.session import StopToken


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def sleep(self, s: float) -> None:
        self.log.append(("sleep", s))
        self.now += s


class FakeEndpoint:
    def __init__(self, log: list, fail_every: int = 0, stop_after: int = 0, stop: StopToken | None = None):
        self.log = log
        self.fail_every = fail_every
        self.stop_after = stop_after
        self.stop = stop
        self.packets: list[Packet] = []

    def sendto(self, data, addr) -> int:
        pkt = Packet.from_bytes(bytes(data))
        self.packets.append(pkt)
        self.log.append(("send", pkt.seq))
        if self.stop is not None and len(self.packets) >= self.stop_after:
            self.stop.stop()
        if self.fail_every and len(self.packets) % self.fail_every == 0:
            return 0
        return len(data)


def make_sender(config: SenderConfig, ep: FakeEndpoint, clock: FakeClock) -> DatagramSender:
    clock.log = ep.log
    return DatagramSender(
        ep,
        ("127.0.0.1", config.port),
        config,
        clock=clock,
        wall_clock=lambda: 1_700_000_000.25,
        sleep=clock.sleep,
    )


@pytest.mark.parametrize("size", [HEADER_SIZE, 1400, MAX_DATAGRAM_SIZE])
def test_config_accepts_valid_packet_sizes(size):
    assert SenderConfig(packet_size=size).packet_size == size


@pytest.mark.parametrize("size", [HEADER_SIZE - 1, MAX_DATAGRAM_SIZE + 1])
def test_config_rejects_invalid_packet_sizes(size):
    with pytest.raises(ConfigurationError):
        SenderConfig(packet_size=size)


@pytest.mark.parametrize("kwargs", [{"duration_s": 0}, {"rate_limit": -1}, {"port": 0}])
def test_config_rejects_bad_values(kwargs):
    with pytest.raises(ConfigurationError):
        SenderConfig(**kwargs)


def test_rate_limited_run_sends_one_packet_per_interval():
    log: list = []
    ep = FakeEndpoint(log)
    clock = FakeClock()
    config = SenderConfig(packet_size=100, duration_s=1.0, rate_limit=4)

    report = make_sender(config, ep, clock).run()

    assert [p.seq for p in ep.packets] == [0, 1, 2, 3]
    assert report.packets_sent == 4
    assert report.bytes_sent == 400
    assert report.duration_s == 1.0
    assert report.throughput_mbps == (400 * 8) / (1.0 * 1_000_000)


def test_sleep_follows_each_send():
    log: list = []
    ep = FakeEndpoint(log)
    clock = FakeClock()
    make_sender(SenderConfig(packet_size=100, duration_s=1.0, rate_limit=2), ep, clock).run()
    assert log == [("send", 0), ("sleep", 0.5), ("send", 1), ("sleep", 0.5)]


def test_packets_carry_size_and_wall_timestamp():
    log: list = []
    ep = FakeEndpoint(log)
    make_sender(SenderConfig(packet_size=256, duration_s=1.0, rate_limit=1), ep, FakeClock()).run()
    (pkt,) = ep.packets
    assert len(pkt.payload) == 256 - HEADER_SIZE
    assert (pkt.ts_sec, pkt.ts_usec) == (1_700_000_000, 250_000)


def test_failed_sends_are_not_counted_and_loop_continues():
    log: list = []
    ep = FakeEndpoint(log, fail_every=2)
    clock = FakeClock()
    report = make_sender(SenderConfig(packet_size=100, duration_s=1.0, rate_limit=4), ep, clock).run()
    assert [p.seq for p in ep.packets] == [0, 1, 2, 3]
    assert report.packets_sent == 2
    assert report.bytes_sent == 200


def test_stop_token_ends_unlimited_run():
    log: list = []
    stop = StopToken()
    ep = FakeEndpoint(log, stop_after=3, stop=stop)
    clock = FakeClock()
    report = make_sender(SenderConfig(packet_size=100, duration_s=10.0), ep, clock).run(stop)
    assert report.packets_sent == 3
    assert not any(kind == "sleep" for kind, _ in log)


def test_expired_window_sends_nothing():
    log: list = []
    ep = FakeEndpoint(log)

    class JumpingClock(FakeClock):
        calls = 0

        def __call__(self) -> float:
            self.calls += 1
            return 0.0 if self.calls == 1 else 5.0

    clock = JumpingClock()
    report = make_sender(SenderConfig(packet_size=100, duration_s=1.0), ep, clock).run()
    assert ep.packets == []
    assert report.packets_sent == 0
    assert report.duration_s == 5.0
    assert report.throughput_mbps == 0.0
