from __future__ import annotations

import logging
import random
import socket
import time
from dataclasses import dataclass
from typing import Tuple

from .constants import MAX_DATAGRAM_SIZE
from .errors import ConfigurationError, TransportError

logger = logging.getLogger(__name__)

Address = Tuple[str, int]


@dataclass(frozen=True, slots=True)
class Impairment:
    loss_rate: float = 0.0
    delay_ms: int = 0

    def should_drop(self) -> bool:
        return self.loss_rate > 0 and random.random() < self.loss_rate

    def sleep_if_needed(self) -> None:
        if self.delay_ms > 0:
            time.sleep(self.delay_ms / 1000.0)


def resolve(host: str, port: int) -> Address:
    try:
        infos = socket.getaddrinfo(host, port, socket.AF_INET, socket.SOCK_DGRAM)
    except socket.gaierror as e:
        raise ConfigurationError(f"cannot resolve {host}:{port}: {e}") from e
    return infos[0][4][:2]


class UdpEndpoint:
    def __init__(self, sock: socket.socket, impairment: Impairment | None = None):
        self.sock = sock
        self.impairment = impairment or Impairment()

    @classmethod
    def listening(
        cls,
        host: str,
        port: int,
        poll_ms: int = 0,
        impairment: Impairment | None = None,
    ) -> "UdpEndpoint":
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as e:
            raise TransportError(f"socket creation failed: {e}") from e
        try:
            sock.bind((host, port))
        except OSError as e:
            sock.close()
            raise TransportError(f"bind to {host}:{port} failed: {e}") from e
        if poll_ms > 0:
            sock.settimeout(poll_ms / 1000.0)
        return cls(sock, impairment)

    @classmethod
    def sending(cls, impairment: Impairment | None = None) -> "UdpEndpoint":
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as e:
            raise TransportError(f"socket creation failed: {e}") from e
        return cls(sock, impairment)

    def sendto(self, data: bytes | bytearray, addr: Address) -> int:
        """Best-effort send. Returns the byte count, or 0 if the datagram was not sent."""
        if self.impairment.should_drop():
            return len(data)
        self.impairment.sleep_if_needed()
        try:
            return self.sock.sendto(data, addr)
        except OSError as e:
            logger.debug("sendto %s failed: %s", addr, e)
            return 0

    def recvfrom(self, bufsize: int = MAX_DATAGRAM_SIZE) -> Tuple[bytes, Address] | None:
        """Next datagram, or None when the poll interval passes without one."""
        try:
            return self.sock.recvfrom(bufsize)
        except TimeoutError:
            return None

    @property
    def local_address(self) -> Address:
        return self.sock.getsockname()[:2]

    def close(self) -> None:
        self.sock.close()
