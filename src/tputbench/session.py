from __future__ import annotations

import logging
import signal
import threading
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def wall_timestamp(now: float | None = None) -> tuple[int, int]:
    """Split a wall-clock time into the (seconds, microseconds) pair carried on the wire."""
    if now is None:
        now = time.time()
    sec = int(now)
    usec = int((now - sec) * 1_000_000)
    return sec & 0xFFFFFFFF, usec


@dataclass(frozen=True, slots=True)
class Session:
    start_ts: float
    duration_s: float | None = None

    @classmethod
    def start(cls, duration_s: float | None = None, clock: Clock = time.monotonic) -> "Session":
        return cls(start_ts=clock(), duration_s=duration_s)

    @property
    def end_ts(self) -> float | None:
        if self.duration_s is None:
            return None
        return self.start_ts + self.duration_s

    def elapsed(self, now: float) -> float:
        return max(0.0, now - self.start_ts)

    def expired(self, now: float) -> bool:
        end = self.end_ts
        return end is not None and now >= end


class StopToken:
    """Cancellation flag shared between a loop and whoever asks it to stop."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def stop(self) -> None:
        self._event.set()

    @property
    def stopped(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


def install_signal_handlers(token: StopToken) -> None:
    def _handler(signum, _frame):
        logger.info("received %s; stopping", signal.Signals(signum).name)
        token.stop()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
