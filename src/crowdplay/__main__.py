"""Command line entry point: ``crowdplay stream`` and ``crowdplay tally``."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys

from crowdplay.config import StreamConfig, TallyConfig
from crowdplay.exceptions import CrowdplayError
from crowdplay.hosts import StreamHost, TallyHost

_logger = logging.getLogger("crowdplay")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="crowdplay",
        description="Crowd-controlled emulator streaming over websockets and MQTT.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    stream = sub.add_parser("stream", help="Run the streaming host.")
    stream.add_argument("--port", type=int, default=None, help="HTTP/websocket port (default: $PORT or 3002).")
    stream.add_argument("--rom", default=None, help="Engine image path (default: $ROM_PATH).")
    stream.add_argument("--target-fps", type=float, default=None, help="Emission rate cap, 0 disables.")
    stream.add_argument("--no-mqtt", action="store_true", help="Stream to local viewers only.")

    tally = sub.add_parser("tally", help="Run the input tally host.")
    tally.add_argument("--port", type=int, default=None, help="HTTP port (default: $PORT or 3003).")

    return parser.parse_args(argv)


def _stream_config(args: argparse.Namespace) -> StreamConfig:
    overrides: dict[str, object] = {}
    if args.port is not None:
        overrides["port"] = args.port
    if args.rom is not None:
        overrides["rom_path"] = args.rom
    if args.target_fps is not None:
        overrides["target_fps"] = args.target_fps
    if args.no_mqtt:
        overrides["mqtt_enabled"] = False
    return StreamConfig.from_env(**overrides)


def _tally_config(args: argparse.Namespace) -> TallyConfig:
    if args.port is not None:
        return TallyConfig.from_env(port=args.port)
    return TallyConfig.from_env()


async def _serve(host: StreamHost | TallyHost) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, stop.set)

    try:
        await host.start()
        await stop.wait()
        _logger.info("Shutdown requested")
    finally:
        await host.stop()


async def _run(args: argparse.Namespace) -> int:
    host: StreamHost | TallyHost
    if args.command == "stream":
        host = StreamHost(_stream_config(args))
    else:
        host = TallyHost(_tally_config(args))
    await _serve(host)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except CrowdplayError as exc:
        print(f"[crowdplay] {exc}", file=sys.stderr)
        return 2
    except OSError as exc:
        print(f"[crowdplay] Startup failed: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
