"""aioquic binding for the stream backend.

aioquic has no "prepare to send" callback, so the client protocol pumps
:class:`~tputbench.stream.ReadyToSend` notifications itself: on each turn of
the event loop it offers the sender whatever room is left below a send
high-water mark (bytes handed to the stream but not yet put on the wire),
then transmits. After the sender finishes, the pump keeps polling until the
peer has acknowledged the stream and only then sends CONNECTION_CLOSE.
"""
from __future__ import annotations

import asyncio
import logging
import socket
import ssl
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import cast

from aioquic.asyncio import connect, serve
from aioquic.asyncio.protocol import QuicConnectionProtocol
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.connection import QuicConnection
from aioquic.quic.events import ConnectionTerminated, QuicEvent, StreamDataReceived
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from .constants import ALPN, DEFAULT_SEND_HIGH_WATER
from .errors import ConfigurationError
from .metrics import Accumulator, ReceiverReport
from .stream import ConnectionReady, DataReceived, FlowControlledSender, OtherEvent, ReadyToSend

logger = logging.getLogger(__name__)

PUMP_IDLE_S = 0.001
DRAIN_TIMEOUT_S = 5.0


def _stream_sender(quic: QuicConnection, stream_id: int):
    # aioquic 1.x exposes no per-stream send progress; QuicConnection._streams
    # holds it and drops a stream once both halves are finished.
    stream = quic._streams.get(stream_id)
    return None if stream is None else stream.sender


class QuicEngine:
    """ConnectionEngine over an aioquic connection.

    A clean close is deferred until the peer has acknowledged every byte and
    the fin on each written stream; CONNECTION_CLOSE would otherwise discard
    whatever aioquic still had queued.
    """

    def __init__(self, quic: QuicConnection, packet_size: int):
        self._quic = quic
        self._zeros = bytes(packet_size)
        self._written: dict[int, int] = {}
        self.active: set[int] = set()
        self.bytes_written = 0
        self.close_code: int | None = None
        self.close_sent = False

    def next_stream_id(self) -> int:
        return self._quic.get_next_available_stream_id(is_unidirectional=False)

    def mark_active(self, stream_id: int) -> None:
        self.active.add(stream_id)

    def provide_write_region(self, stream_id: int, size: int, fin: bool) -> memoryview | None:
        if self.close_code is not None or size > len(self._zeros):
            return None
        region = self._zeros if size == len(self._zeros) else self._zeros[:size]
        try:
            self._quic.send_stream_data(stream_id, region, end_stream=fin)
        except (ValueError, RuntimeError) as e:
            logger.debug("send_stream_data on stream %d refused: %s", stream_id, e)
            return None
        self.bytes_written += size
        self._written[stream_id] = self._written.get(stream_id, 0) + size
        if fin:
            self.active.discard(stream_id)
        return memoryview(region)

    def close(self, error_code: int = 0) -> None:
        if self.close_code is not None:
            return
        self.close_code = error_code
        if error_code != 0 or self.delivered():
            self._send_close()

    def finish_close(self, force: bool = False) -> bool:
        """Send a deferred close once delivery completes (or when forced)."""
        if not self.close_sent and self.close_code is not None and (force or self.delivered()):
            self._send_close()
        return self.close_sent

    def delivered(self) -> bool:
        """True when every written stream has its data and fin acknowledged."""
        for stream_id in self._written:
            sender = _stream_sender(self._quic, stream_id)
            if sender is not None and not sender.is_finished:
                return False
        return True

    def queued(self, stream_id: int) -> int:
        """Bytes handed to the stream that the connection has not sent yet."""
        sender = _stream_sender(self._quic, stream_id)
        if sender is None:
            return 0
        return max(0, self._written.get(stream_id, 0) - sender.next_offset)

    def _send_close(self) -> None:
        self.close_sent = True
        code = self.close_code or 0
        self._quic.close(error_code=code, reason_phrase="test complete" if code == 0 else "send aborted")


class ThroughputClientProtocol(QuicConnectionProtocol):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.sender: FlowControlledSender | None = None
        self.engine: QuicEngine | None = None
        self.high_water = DEFAULT_SEND_HIGH_WATER
        self._pump_handle: asyncio.TimerHandle | None = None
        self._drain_deadline: float | None = None

    def start_test(self, packet_size: int, duration_s: float, rate_limit_mbps: float = 0.0) -> FlowControlledSender:
        self.engine = QuicEngine(self._quic, packet_size)
        self.sender = FlowControlledSender(
            self.engine,
            packet_size=packet_size,
            duration_s=duration_s,
            rate_limit_mbps=rate_limit_mbps,
        )
        self.sender.handle(ConnectionReady())
        self._schedule_pump(0)
        return self.sender

    def _schedule_pump(self, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._pump_handle = loop.call_later(delay, self._pump)

    def _pump(self) -> None:
        self._pump_handle = None
        sender, engine = self.sender, self.engine
        if sender is None or engine is None or engine.close_sent:
            return

        delay = PUMP_IDLE_S
        for stream_id in list(engine.active):
            capacity = self.high_water - engine.queued(stream_id)
            while capacity > 0 and not sender.closed:
                sender.handle(ReadyToSend(stream_id=stream_id, capacity=capacity))
                remaining = self.high_water - engine.queued(stream_id)
                if remaining >= capacity:
                    break
                capacity = remaining
                delay = 0
        if sender.closed:
            self._drain(engine)
        self.transmit()

        if not engine.close_sent:
            self._schedule_pump(delay)

    def _drain(self, engine: QuicEngine) -> None:
        now = asyncio.get_running_loop().time()
        if self._drain_deadline is None:
            self._drain_deadline = now + DRAIN_TIMEOUT_S
            logger.debug("waiting for the peer to acknowledge the stream")
        expired = now >= self._drain_deadline
        if engine.finish_close(force=expired) and expired:
            logger.warning("stream not acknowledged within %.1f s, closing anyway", DRAIN_TIMEOUT_S)

    def quic_event_received(self, event: QuicEvent) -> None:
        if self.sender is None:
            return
        if isinstance(event, StreamDataReceived):
            self.sender.handle(DataReceived(event.stream_id, len(event.data), event.end_stream))
            return
        if isinstance(event, ConnectionTerminated):
            if self._pump_handle is not None:
                self._pump_handle.cancel()
                self._pump_handle = None
            if not self.sender.closed:
                logger.warning("connection terminated before the test finished: %s", event.reason_phrase)
        self.sender.handle(OtherEvent(type(event).__name__))


@dataclass(slots=True)
class _SinkStream:
    start_ts: float
    acc: Accumulator = field(default_factory=Accumulator)

    def report(self, now: float) -> ReceiverReport:
        elapsed = max(0.0, now - self.start_ts)
        return ReceiverReport(
            bytes_received=self.acc.total_bytes,
            packets_received=self.acc.total_packets,
            lost_packets=None,
            loss_percent=None,
            duration_s=elapsed,
            throughput_mbps=self.acc.throughput_mbps(elapsed),
        )


class SinkServerProtocol(QuicConnectionProtocol):
    """Stream receiver: discards payload, never writes back."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._sinks: dict[int, _SinkStream] = {}
        self.reports: list[ReceiverReport] = []
        self.completed: list[int] = []

    def _finish(self, stream_id: int) -> None:
        sink = self._sinks.pop(stream_id)
        report = sink.report(time.monotonic())
        self.reports.append(report)
        logger.info("stream %d finished", stream_id)
        for line in report.format_lines():
            logger.info(line)

    def finish_open_streams(self) -> None:
        for stream_id in list(self._sinks):
            logger.warning("stream %d closed without end of stream", stream_id)
            self._finish(stream_id)

    def quic_event_received(self, event: QuicEvent) -> None:
        if isinstance(event, StreamDataReceived):
            sink = self._sinks.get(event.stream_id)
            if sink is None:
                sink = self._sinks[event.stream_id] = _SinkStream(start_ts=time.monotonic())
                logger.info("stream %d opened", event.stream_id)
            if event.data:
                sink.acc.record(len(event.data))
            if event.end_stream:
                self.completed.append(event.stream_id)
                self._finish(event.stream_id)
        elif isinstance(event, ConnectionTerminated):
            self.finish_open_streams()
            logger.info("connection closed (error code %d)", event.error_code)


class SinkCollector:
    """``create_protocol`` factory that keeps every connection it served."""

    def __init__(self):
        self.protocols: list[SinkServerProtocol] = []

    def __call__(self, *args, **kwargs) -> SinkServerProtocol:
        protocol = SinkServerProtocol(*args, **kwargs)
        self.protocols.append(protocol)
        return protocol

    def reports(self) -> list[ReceiverReport]:
        for protocol in self.protocols:
            protocol.finish_open_streams()
        return [r for protocol in self.protocols for r in protocol.reports]


def generate_self_signed(host: str = "localhost"):
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, host)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=180))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(host)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    return cert, key


def make_server_configuration(cert: str | None = None, key: str | None = None) -> QuicConfiguration:
    configuration = QuicConfiguration(is_client=False, alpn_protocols=[ALPN])
    if cert:
        try:
            configuration.load_cert_chain(cert, key)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"cannot load certificate {cert}: {e}") from e
    else:
        configuration.certificate, configuration.private_key = generate_self_signed()
        logger.info("using an ephemeral self-signed certificate")
    return configuration


async def run_stream_client(
    server: str,
    port: int,
    packet_size: int,
    duration_s: float,
    high_water: int = DEFAULT_SEND_HIGH_WATER,
    rate_limit_mbps: float = 0.0,
) -> FlowControlledSender:
    configuration = QuicConfiguration(is_client=True, alpn_protocols=[ALPN], server_name=server)
    # lab benchmark against self-signed servers
    configuration.verify_mode = ssl.CERT_NONE

    logger.info("connecting to %s:%d", server, port)
    try:
        async with connect(
            server,
            port,
            configuration=configuration,
            create_protocol=ThroughputClientProtocol,
        ) as protocol:
            client = cast(ThroughputClientProtocol, protocol)
            client.high_water = high_water
            sender = client.start_test(packet_size, duration_s, rate_limit_mbps=rate_limit_mbps)
            await client.wait_closed()
    except socket.gaierror as e:
        raise ConfigurationError(f"cannot resolve {server}:{port}: {e}") from e
    return sender


async def run_stream_server(
    host: str,
    port: int,
    configuration: QuicConfiguration,
    stop: asyncio.Event | None = None,
    sinks: SinkCollector | None = None,
) -> list[ReceiverReport]:
    """Serve until ``stop`` is set; returns one report per stream received."""
    sinks = sinks or SinkCollector()
    server = await serve(host, port, configuration=configuration, create_protocol=sinks)
    logger.info("stream receiver listening on %s:%d", host, port)
    try:
        await (stop or asyncio.Event()).wait()
    finally:
        server.close()
        logger.info("stream receiver stopped")
    return sinks.reports()
