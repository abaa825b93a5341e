"""Run the poolwatch refresh worker.

``run`` refreshes on a fixed interval until interrupted, ``once`` performs a
single cycle and ``fetch-all`` prints the merged snapshot as JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import Sequence

from .config import Settings, load_settings
from .logging_utils import setup_stdout_logging
from .service import RefreshService, open_service

log = logging.getLogger("poolwatch")


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="poolwatch", description=__doc__)
    parser.add_argument(
        "command",
        nargs="?",
        choices=("run", "once", "fetch-all"),
        default="run",
        help="What to do (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Root log level (default: %(default)s)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit structured JSON log lines",
    )
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Use in-process KV store and bus instead of Redis",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Refresh interval in seconds (overrides REFRESH_INTERVAL)",
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="fetch-all: ignore the cached snapshot",
    )
    return parser.parse_args(argv)


async def _run_loop(service: RefreshService, interval: float | None) -> None:
    loop = asyncio.get_running_loop()
    installed: list[int] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.stop)
            installed.append(sig)
        except NotImplementedError:  # pragma: no cover - Windows event loop
            signal.signal(sig, lambda *_: service.stop())
    try:
        await service.run_forever(interval)
    finally:
        for sig in installed:
            with contextlib.suppress(Exception):
                loop.remove_signal_handler(sig)
        log.info("refresh loop stopped")


async def _dispatch(args: argparse.Namespace, settings: Settings) -> int:
    async with open_service(settings, memory=args.memory) as service:
        if args.command == "once":
            report = await service.run_cycle()
            return 0 if report is not None else 1
        if args.command == "fetch-all":
            payload = await service.fetch_all(use_cache=not args.no_cache)
            print(json.dumps(payload, indent=2, default=str))
            return 0
        await _run_loop(service, args.interval)
        return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    setup_stdout_logging(level=args.log_level.upper(), json_output=args.json_logs)
    try:
        settings = load_settings()
    except ValueError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return 2
    try:
        return asyncio.run(_dispatch(args, settings))
    except KeyboardInterrupt:  # pragma: no cover - manual interruption
        return 1
    except Exception as exc:  # pragma: no cover - CLI feedback
        log.exception("poolwatch %s failed", args.command)
        print(f"poolwatch {args.command} failed: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
