from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from .constants import (
    DEFAULT_DURATION_S,
    DEFAULT_RATE_LIMIT,
    DEFAULT_UDP_HOST,
    DEFAULT_UDP_PACKET_SIZE,
    DEFAULT_UDP_PORT,
)
from .errors import ConfigurationError
from .metrics import Accumulator, SenderReport
from .net import Address, UdpEndpoint
from .packet import PacketWriter, validate_packet_size
from .session import Clock, Session, StopToken, wall_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SenderConfig:
    host: str = DEFAULT_UDP_HOST
    port: int = DEFAULT_UDP_PORT
    packet_size: int = DEFAULT_UDP_PACKET_SIZE
    duration_s: float = DEFAULT_DURATION_S
    rate_limit: int = DEFAULT_RATE_LIMIT

    def __post_init__(self) -> None:
        validate_packet_size(self.packet_size)
        if self.duration_s <= 0:
            raise ConfigurationError(f"duration must be positive, got {self.duration_s}")
        if self.rate_limit < 0:
            raise ConfigurationError(f"rate limit must be >= 0, got {self.rate_limit}")
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"port out of range: {self.port}")

    @property
    def send_interval_s(self) -> float:
        return 1.0 / self.rate_limit if self.rate_limit > 0 else 0.0


@dataclass(slots=True)
class DatagramSender:
    udp: UdpEndpoint
    dest: Address
    config: SenderConfig
    clock: Clock = time.monotonic
    wall_clock: Clock = time.time
    sleep: Callable[[float], None] = time.sleep
    acc: Accumulator = field(default_factory=Accumulator)

    def run(self, stop: StopToken | None = None) -> SenderReport:
        stop = stop or StopToken()
        writer = PacketWriter(self.config.packet_size)
        interval = self.config.send_interval_s
        seq = 0

        logger.info(
            "sending to %s:%d; packet size %d bytes, duration %.1f s, rate limit %s",
            self.dest[0],
            self.dest[1],
            self.config.packet_size,
            self.config.duration_s,
            f"{self.config.rate_limit} pkt/s" if self.config.rate_limit else "none",
        )
        session = Session.start(self.config.duration_s, self.clock)

        try:
            while not stop.stopped:
                if session.expired(self.clock()):
                    break

                buf = writer.stamp(seq, *wall_timestamp(self.wall_clock()))
                seq += 1
                sent = self.udp.sendto(buf, self.dest)
                if sent > 0:
                    self.acc.record(sent)

                # sleep after accounting: the send itself is not part of the interval
                if interval:
                    self.sleep(interval)
        except KeyboardInterrupt:
            logger.info("interrupted; reporting partial run")

        report = SenderReport.from_accumulator(self.acc, session.elapsed(self.clock()))
        logger.info(
            "sender done; %d packets, %d bytes, %.2f Mbps",
            report.packets_sent,
            report.bytes_sent,
            report.throughput_mbps,
        )
        return report
