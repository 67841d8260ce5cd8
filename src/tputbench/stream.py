"""Flow-controlled stream sender.

The sender is a synchronous state machine driven by notifications from a
connection engine (the engine owns scheduling, congestion control and
retransmission). Each call to :meth:`FlowControlledSender.handle` runs on the
engine's event loop and returns without blocking.

    IDLE --ready--> ACTIVE --window elapsed--> DRAINING --fin+close--> CLOSED
"""
from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol, Union

from .constants import DEFAULT_DURATION_S, DEFAULT_QUIC_PACKET_SIZE
from .errors import ConfigurationError, ProtocolError
from .metrics import Accumulator, SenderReport
from .session import Clock

logger = logging.getLogger(__name__)


class StreamState(enum.Enum):
    IDLE = "idle"
    ACTIVE = "active"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class ConnectionReady:
    pass


@dataclass(frozen=True, slots=True)
class ReadyToSend:
    stream_id: int
    capacity: int


@dataclass(frozen=True, slots=True)
class DataReceived:
    stream_id: int
    length: int
    end_stream: bool = False


@dataclass(frozen=True, slots=True)
class OtherEvent:
    kind: str


Event = Union[ConnectionReady, ReadyToSend, DataReceived, OtherEvent]


class ConnectionEngine(Protocol):
    def next_stream_id(self) -> int: ...

    def mark_active(self, stream_id: int) -> None: ...

    def provide_write_region(self, stream_id: int, size: int, fin: bool) -> memoryview | None:
        """Reserve ``size`` bytes on the stream; None if the engine has no room."""
        ...

    def close(self, error_code: int = 0) -> None: ...


@dataclass(slots=True)
class StreamContext:
    stream_id: int
    packet_size: int
    duration_s: float
    start_ts: float
    acc: Accumulator = field(default_factory=Accumulator)
    running: bool = True

    @property
    def bytes_sent(self) -> int:
        return self.acc.total_bytes


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


class FlowControlledSender:
    def __init__(
        self,
        engine: ConnectionEngine,
        packet_size: int = DEFAULT_QUIC_PACKET_SIZE,
        duration_s: float = DEFAULT_DURATION_S,
        clock: Clock = time.monotonic,
        rate_limit_mbps: float = 0.0,
    ):
        if packet_size <= 0:
            raise ConfigurationError(f"packet size must be positive, got {packet_size}")
        if duration_s <= 0:
            raise ConfigurationError(f"duration must be positive, got {duration_s}")
        if rate_limit_mbps < 0:
            raise ConfigurationError(f"rate limit must be >= 0, got {rate_limit_mbps}")
        self.engine = engine
        self.packet_size = packet_size
        self.duration_s = duration_s
        self.rate_limit_mbps = rate_limit_mbps
        self.clock = clock
        self.state = StreamState.IDLE
        self.ctx: StreamContext | None = None
        self.report: SenderReport | None = None
        self.error: ProtocolError | None = None

    @property
    def closed(self) -> bool:
        return self.state is StreamState.CLOSED

    def handle(self, event: Event) -> None:
        if isinstance(event, ConnectionReady):
            self._on_connection_ready()
        elif isinstance(event, ReadyToSend):
            self._on_ready_to_send(event)
        elif isinstance(event, DataReceived):
            if event.length > 0:
                logger.info("received %d bytes from peer on stream %d", event.length, event.stream_id)
        else:
            logger.debug("ignoring %s", event)

    def _on_connection_ready(self) -> None:
        if self.state is not StreamState.IDLE:
            return
        stream_id = self.engine.next_stream_id()
        self.ctx = StreamContext(
            stream_id=stream_id,
            packet_size=self.packet_size,
            duration_s=self.duration_s,
            start_ts=self.clock(),
        )
        self.state = StreamState.ACTIVE
        logger.info("test started at %s on stream %d", _utc_now(), stream_id)
        logger.info("packet size %d bytes, duration %.1f s", self.packet_size, self.duration_s)
        if self.rate_limit_mbps > 0:
            logger.info("rate limit %.1f Mbps", self.rate_limit_mbps)
        self.engine.mark_active(stream_id)

    def _on_ready_to_send(self, event: ReadyToSend) -> None:
        ctx = self.ctx
        if self.state is not StreamState.ACTIVE or ctx is None or not ctx.running:
            return
        if event.stream_id != ctx.stream_id:
            return

        elapsed = self.clock() - ctx.start_ts
        if elapsed >= ctx.duration_s:
            self._finish(ctx, elapsed)
            return

        to_send = min(ctx.packet_size, event.capacity)
        if self.rate_limit_mbps > 0:
            # decimal megabits, same unit as the reported throughput
            budget = int(self.rate_limit_mbps * 1_000_000 / 8 * elapsed) - ctx.bytes_sent
            if budget <= 0:
                return
            to_send = min(to_send, budget)
        region = self.engine.provide_write_region(ctx.stream_id, to_send, fin=False)
        if region is None:
            self._abort(ctx, ProtocolError(f"no write region for {to_send} bytes on stream {ctx.stream_id}"))
            return
        ctx.acc.record(to_send)

    def _finish(self, ctx: StreamContext, elapsed: float) -> None:
        ctx.running = False
        self.state = StreamState.DRAINING
        self.report = SenderReport.from_accumulator(ctx.acc, elapsed)
        logger.info("test completed at %s", _utc_now())
        logger.info(
            "stream %d: %d bytes in %.2f s, %.2f Mbps",
            ctx.stream_id,
            self.report.bytes_sent,
            self.report.duration_s,
            self.report.throughput_mbps,
        )

        if self.engine.provide_write_region(ctx.stream_id, 0, fin=True) is None:
            logger.error("could not write end of stream on stream %d", ctx.stream_id)
        self.engine.close(0)
        self.state = StreamState.CLOSED

    def _abort(self, ctx: StreamContext, error: ProtocolError) -> None:
        ctx.running = False
        self.error = error
        self.report = SenderReport.from_accumulator(ctx.acc, self.clock() - ctx.start_ts)
        logger.error("aborting stream send: %s", error)
        self.engine.close(1)
        self.state = StreamState.CLOSED
