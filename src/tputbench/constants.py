from __future__ import annotations

HEADER_FORMAT = "!III"  # seq, timestamp seconds, timestamp microseconds
HEADER_SIZE = 12
MAX_DATAGRAM_SIZE = 65507
SEQ_MASK = 0xFFFFFFFF

DEFAULT_UDP_HOST = "127.0.0.1"
DEFAULT_UDP_PORT = 8888
DEFAULT_UDP_PACKET_SIZE = 1400
DEFAULT_DURATION_S = 10.0
DEFAULT_RATE_LIMIT = 0
RECV_POLL_MS = 200

DEFAULT_QUIC_SERVER = "localhost"
DEFAULT_QUIC_PORT = 24433
DEFAULT_QUIC_PACKET_SIZE = 1200
DEFAULT_SEND_HIGH_WATER = 64 * 1024
ALPN = "tputbench"
