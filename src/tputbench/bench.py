from __future__ import annotations

import threading
from dataclasses import dataclass, replace

from .constants import DEFAULT_RATE_LIMIT, DEFAULT_UDP_PACKET_SIZE, RECV_POLL_MS
from .errors import TransportError
from .metrics import ReceiverReport, SenderReport
from .net import Impairment, UdpEndpoint
from .receiver import DatagramReceiver
from .sender import DatagramSender, SenderConfig
from .session import StopToken

DRAIN_S = 0.5


@dataclass(frozen=True, slots=True)
class BenchmarkResult:
    sender: SenderReport
    receiver: ReceiverReport

    def as_dict(self) -> dict:
        return {"role": "bench", "sender": self.sender.as_dict(), "receiver": self.receiver.as_dict()}


def run_benchmark(
    *,
    packet_size: int = DEFAULT_UDP_PACKET_SIZE,
    duration_s: float = 2.0,
    rate_limit: int = DEFAULT_RATE_LIMIT,
    loss_rate: float = 0.0,
    delay_ms: int = 0,
    stop: StopToken | None = None,
) -> BenchmarkResult:
    """Datagram sender and receiver on loopback, receiver in a background thread."""
    stop = stop or StopToken()
    # validated before any socket exists; the real port is known after bind
    config = SenderConfig(
        host="127.0.0.1",
        packet_size=packet_size,
        duration_s=duration_s,
        rate_limit=rate_limit,
    )
    recv_ep = UdpEndpoint.listening(config.host, 0, poll_ms=RECV_POLL_MS)
    try:
        send_ep = UdpEndpoint.sending(impairment=Impairment(loss_rate=loss_rate, delay_ms=delay_ms))
    except TransportError:
        recv_ep.close()
        raise
    recv_host, recv_port = recv_ep.local_address
    config = replace(config, host=recv_host, port=recv_port)

    recv_stop = StopToken()
    holder: dict[str, ReceiverReport] = {}

    def recv_runner():
        try:
            holder["r"] = DatagramReceiver(recv_ep).run(recv_stop)
        finally:
            recv_ep.close()

    t = threading.Thread(target=recv_runner, daemon=True)
    t.start()

    try:
        send_report = DatagramSender(send_ep, (recv_host, recv_port), config).run(stop)
        # let in-flight datagrams land before the receiver stops counting
        stop.wait(DRAIN_S)
    finally:
        send_ep.close()
        recv_stop.stop()
        t.join(timeout=10.0)

    return BenchmarkResult(sender=send_report, receiver=holder["r"])
