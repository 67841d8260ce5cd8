from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys

from .bench import run_benchmark
from .constants import (
    DEFAULT_DURATION_S,
    DEFAULT_QUIC_PACKET_SIZE,
    DEFAULT_QUIC_PORT,
    DEFAULT_QUIC_SERVER,
    DEFAULT_RATE_LIMIT,
    DEFAULT_SEND_HIGH_WATER,
    DEFAULT_UDP_HOST,
    DEFAULT_UDP_PACKET_SIZE,
    DEFAULT_UDP_PORT,
    RECV_POLL_MS,
)
from .errors import ConfigurationError, TransportError
from .metrics import ReceiverReport, SenderReport
from .net import UdpEndpoint, resolve
from .quic import make_server_configuration, run_stream_client, run_stream_server
from .receiver import DatagramReceiver
from .sender import DatagramSender, SenderConfig
from .session import StopToken, install_signal_handlers


def _emit(report: SenderReport | ReceiverReport, args: argparse.Namespace) -> None:
    if args.json:
        print(json.dumps(report.as_dict(), indent=2))
        return
    print("test results:")
    for line in report.format_lines():
        print(line)


def cmd_udp_send(args: argparse.Namespace) -> int:
    config = SenderConfig(
        host=args.host,
        port=args.port,
        packet_size=args.packet_size,
        duration_s=args.duration,
        rate_limit=args.rate_limit,
    )
    dest = resolve(config.host, config.port)
    udp = UdpEndpoint.sending()

    stop = StopToken()
    install_signal_handlers(stop)
    try:
        report = DatagramSender(udp, dest, config).run(stop)
    finally:
        udp.close()
    _emit(report, args)
    return 0


def cmd_udp_recv(args: argparse.Namespace) -> int:
    udp = UdpEndpoint.listening(args.host, args.port, poll_ms=RECV_POLL_MS)

    stop = StopToken()
    install_signal_handlers(stop)
    try:
        report = DatagramReceiver(udp).run(stop)
    finally:
        udp.close()
    _emit(report, args)
    return 0


def cmd_quic_send(args: argparse.Namespace) -> int:
    if args.packet_size <= 0 or args.duration <= 0:
        raise ConfigurationError("packet size and duration must be positive")
    if args.rate_limit < 0:
        raise ConfigurationError(f"rate limit must be >= 0, got {args.rate_limit}")

    sender = asyncio.run(
        run_stream_client(
            args.server,
            args.port,
            packet_size=args.packet_size,
            duration_s=args.duration,
            high_water=args.high_water,
            rate_limit_mbps=args.rate_limit,
        )
    )
    if sender.report is not None:
        _emit(sender.report, args)
    if sender.error is not None:
        print(f"error: {sender.error}", file=sys.stderr)
        return 1
    if not sender.closed:
        print("error: connection ended before the test window elapsed", file=sys.stderr)
        return 1
    return 0


def cmd_quic_recv(args: argparse.Namespace) -> int:
    configuration = make_server_configuration(args.cert, args.key)

    async def serve_until_signalled() -> list[ReceiverReport]:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        return await run_stream_server(args.host, args.port, configuration, stop)

    for report in asyncio.run(serve_until_signalled()):
        _emit(report, args)
    return 0


def cmd_bench(args: argparse.Namespace) -> int:
    stop = StopToken()
    install_signal_handlers(stop)
    r = run_benchmark(
        packet_size=args.packet_size,
        duration_s=args.duration,
        rate_limit=args.rate_limit,
        loss_rate=args.loss_rate,
        delay_ms=args.delay_ms,
        stop=stop,
    )
    if args.json:
        print(json.dumps(r.as_dict(), indent=2))
    else:
        _emit(r.sender, args)
        _emit(r.receiver, args)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tputbench", description="Timed throughput tests over UDP and QUIC.")
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_common(x: argparse.ArgumentParser) -> None:
        x.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
        x.add_argument("--json", action="store_true")

    udp_send = sub.add_parser("udp-send", help="send timed, sequence-numbered datagrams")
    add_common(udp_send)
    udp_send.add_argument("-s", "--host", default=DEFAULT_UDP_HOST)
    udp_send.add_argument("-p", "--port", type=int, default=DEFAULT_UDP_PORT)
    udp_send.add_argument("-b", "--packet-size", type=int, default=DEFAULT_UDP_PACKET_SIZE)
    udp_send.add_argument("-t", "--duration", type=float, default=DEFAULT_DURATION_S)
    udp_send.add_argument("-r", "--rate-limit", type=int, default=DEFAULT_RATE_LIMIT, help="packets/s, 0 = unlimited")
    udp_send.set_defaults(func=cmd_udp_send)

    udp_recv = sub.add_parser("udp-recv", help="count datagrams and infer loss until interrupted")
    add_common(udp_recv)
    udp_recv.add_argument("--host", default="0.0.0.0")
    udp_recv.add_argument("-p", "--port", type=int, default=DEFAULT_UDP_PORT)
    udp_recv.set_defaults(func=cmd_udp_recv)

    quic_send = sub.add_parser("quic-send", help="fill one QUIC stream for a fixed duration")
    add_common(quic_send)
    quic_send.add_argument("-s", "--server", default=DEFAULT_QUIC_SERVER)
    quic_send.add_argument("-p", "--port", type=int, default=DEFAULT_QUIC_PORT)
    quic_send.add_argument("-b", "--packet-size", type=int, default=DEFAULT_QUIC_PACKET_SIZE)
    quic_send.add_argument("-t", "--duration", type=float, default=DEFAULT_DURATION_S)
    quic_send.add_argument("--high-water", type=int, default=DEFAULT_SEND_HIGH_WATER, help="max unsent bytes queued on the stream")
    quic_send.add_argument("-r", "--rate-limit", type=float, default=0.0, help="Mbps, 0 = unlimited")
    quic_send.set_defaults(func=cmd_quic_send)

    quic_recv = sub.add_parser("quic-recv", help="accept QUIC streams and discard their payload")
    add_common(quic_recv)
    quic_recv.add_argument("--host", default="0.0.0.0")
    quic_recv.add_argument("-p", "--port", type=int, default=DEFAULT_QUIC_PORT)
    quic_recv.add_argument("--cert", default=None, help="PEM certificate; self-signed if omitted")
    quic_recv.add_argument("--key", default=None)
    quic_recv.set_defaults(func=cmd_quic_recv)

    bench = sub.add_parser("bench", help="datagram sender and receiver on loopback")
    add_common(bench)
    bench.add_argument("-b", "--packet-size", type=int, default=DEFAULT_UDP_PACKET_SIZE)
    bench.add_argument("-t", "--duration", type=float, default=2.0)
    bench.add_argument("-r", "--rate-limit", type=int, default=DEFAULT_RATE_LIMIT)
    bench.add_argument("--loss-rate", type=float, default=0.0, help="simulate outbound packet loss")
    bench.add_argument("--delay-ms", type=int, default=0)
    bench.set_defaults(func=cmd_bench)

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s [%(levelname)s] %(message)s")
    try:
        return int(args.func(args))
    except ConfigurationError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return 1
    except TransportError as e:
        print(f"transport error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"network error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
