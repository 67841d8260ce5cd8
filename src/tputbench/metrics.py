from __future__ import annotations

from dataclasses import asdict, dataclass


def throughput_mbps(total_bytes: int, elapsed_s: float) -> float:
    """Decimal megabits per second; 0.0 for a non-positive interval."""
    if elapsed_s <= 0:
        return 0.0
    return (total_bytes * 8) / (elapsed_s * 1_000_000)


@dataclass(slots=True)
class Accumulator:
    total_bytes: int = 0
    total_packets: int = 0

    def record(self, nbytes: int) -> None:
        self.total_bytes += nbytes
        self.total_packets += 1

    def throughput_mbps(self, elapsed_s: float) -> float:
        return throughput_mbps(self.total_bytes, elapsed_s)


@dataclass(frozen=True, slots=True)
class SenderReport:
    bytes_sent: int
    packets_sent: int
    duration_s: float
    throughput_mbps: float

    @classmethod
    def from_accumulator(cls, acc: Accumulator, duration_s: float) -> "SenderReport":
        return cls(
            bytes_sent=acc.total_bytes,
            packets_sent=acc.total_packets,
            duration_s=duration_s,
            throughput_mbps=acc.throughput_mbps(duration_s),
        )

    def as_dict(self) -> dict:
        return {"role": "sender", **asdict(self)}

    def format_lines(self) -> list[str]:
        return [
            f"  total bytes sent: {self.bytes_sent} bytes",
            f"  total packets sent: {self.packets_sent}",
            f"  duration: {self.duration_s:.2f} s",
            f"  throughput: {self.throughput_mbps:.2f} Mbps",
        ]


@dataclass(frozen=True, slots=True)
class ReceiverReport:
    bytes_received: int
    packets_received: int
    lost_packets: int | None
    loss_percent: float | None
    duration_s: float
    throughput_mbps: float

    def as_dict(self) -> dict:
        return {"role": "receiver", **asdict(self)}

    def format_lines(self) -> list[str]:
        lines = [
            f"  total bytes received: {self.bytes_received} bytes",
            f"  total packets received: {self.packets_received}",
        ]
        # stream receivers have no sequence numbers to infer loss from
        if self.lost_packets is not None:
            lines.append(f"  lost packets: {self.lost_packets}")
            lines.append(f"  loss: {self.loss_percent or 0.0:.2f}%")
        lines.append(f"  duration: {self.duration_s:.2f} s")
        lines.append(f"  throughput: {self.throughput_mbps:.2f} Mbps")
        return lines
