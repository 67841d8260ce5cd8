"""Timed throughput benchmark

Two transports, one measurement model:
- datagrams: rate-limited, sequence-numbered UDP with gap-based loss inference
- streams: a flow-controlled QUIC stream filled for a fixed wall-clock window

Both feed the same byte/packet accumulator and report decimal Mbps.
"""

__all__ = []
