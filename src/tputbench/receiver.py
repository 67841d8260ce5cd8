from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from .constants import SEQ_MASK
from .metrics import Accumulator, ReceiverReport
from .net import UdpEndpoint
from .packet import peek_seq
from .session import Clock, Session, StopToken

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LossTracker:
    """Sequence-gap accounting for one receive session.

    The first observed sequence number seeds the state. Every later packet
    is compared against the previous one plus one; out-of-order, duplicate
    and lost packets all show up as a gap, and the tracker always advances
    to the sequence number it just saw. There is no reordering window.
    """

    acc: Accumulator = field(default_factory=Accumulator)
    last_seq: int | None = None
    gaps: int = 0

    def observe(self, seq: int, nbytes: int) -> int | None:
        """Count one datagram. Returns the expected sequence number when a gap is seen."""
        expected = None
        if self.last_seq is not None:
            want = (self.last_seq + 1) & SEQ_MASK
            if seq != want:
                self.gaps += 1
                expected = want
        self.last_seq = seq
        self.acc.record(nbytes)
        return expected

    @property
    def lost_packets(self) -> int:
        if self.last_seq is None:
            return 0
        # reordered or duplicated arrivals can push this below zero
        return max(0, (self.last_seq + 1) - self.acc.total_packets)

    @property
    def loss_percent(self) -> float:
        if self.last_seq is None:
            return 0.0
        return self.lost_packets / (self.last_seq + 1) * 100.0


@dataclass(slots=True)
class DatagramReceiver:
    udp: UdpEndpoint
    clock: Clock = time.monotonic
    tracker: LossTracker = field(default_factory=LossTracker)

    def _next(self, stop: StopToken) -> bytes | None:
        while not stop.stopped:
            got = self.udp.recvfrom()
            if got is not None:
                return got[0]
        return None

    def _observe(self, raw: bytes) -> None:
        try:
            seq = peek_seq(raw)
        except ValueError:
            logger.debug("ignoring %d-byte datagram without a header", len(raw))
            return
        expected = self.tracker.observe(seq, len(raw))
        if expected is not None:
            logger.warning("gap detected: expected %d, received %d", expected, seq)

    def run(self, stop: StopToken | None = None) -> ReceiverReport:
        stop = stop or StopToken()
        session: Session | None = None
        host, port = self.udp.local_address
        logger.info("receiver listening on %s:%d", host, port)

        try:
            while session is None:
                raw = self._next(stop)
                if raw is None:
                    break
                self._observe(raw)
                if self.tracker.last_seq is not None:
                    session = Session.start(clock=self.clock)
                    logger.info("first packet received; seq=%d", self.tracker.last_seq)

            while session is not None:
                raw = self._next(stop)
                if raw is None:
                    break
                self._observe(raw)
        except KeyboardInterrupt:
            logger.info("interrupted; reporting")

        elapsed = session.elapsed(self.clock()) if session is not None else 0.0
        acc = self.tracker.acc
        return ReceiverReport(
            bytes_received=acc.total_bytes,
            packets_received=acc.total_packets,
            lost_packets=self.tracker.lost_packets,
            loss_percent=self.tracker.loss_percent,
            duration_s=elapsed,
            throughput_mbps=acc.throughput_mbps(elapsed),
        )
