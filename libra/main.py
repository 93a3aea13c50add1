#!/usr/bin/env python3
"""Entry point wiring settings, scales and sinks into the monitoring loop."""
from __future__ import annotations

import argparse
import signal
import sys
from pathlib import Path
from typing import List, Optional

from .config.settings import CONFIG_PATH, Settings
from .errors import ConfigFault, StorageFault, TimingFault
from .services.logging import setup_logging
from .services.monitor import DemoLoop, MonitoringLoop, connect_scales
from .services.storage import EventStore
from .services.telemetry import BackendClient

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="libra", description="Container weight monitor")
    parser.add_argument("--config", type=Path, default=CONFIG_PATH, help=f"YAML settings file (default {CONFIG_PATH})")
    parser.add_argument(
        "--demo",
        action="store_true",
        help="Post live readings to the backend instead of logging events",
    )
    return parser


def _install_signal_handlers(loop, logger) -> None:
    def _handler(signum, _frame) -> None:
        logger.info("Received signal %s, stopping", signum)
        loop.stop()

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logger = setup_logging().getChild("main")

    try:
        settings = Settings.load(args.config)
    except ConfigFault as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG
    setup_logging(settings.log_level)

    if args.demo and not settings.backend_url:
        logger.error("Demo mode needs backend_url in %s", args.config)
        return EXIT_CONFIG

    supervisors = connect_scales(settings)
    if not supervisors:
        logger.error("No scale could be connected; nothing to monitor")
        return EXIT_CONFIG

    try:
        if args.demo:
            loop = DemoLoop(
                supervisors,
                BackendClient(settings.backend_url, timeout=settings.backend_timeout),
                tick_period=settings.tick_period,
            )
        else:
            loop = MonitoringLoop.from_settings(settings, EventStore(settings.database_path), supervisors)
    except StorageFault as exc:
        logger.error("Event log unavailable: %s", exc)
        for supervisor in supervisors.values():
            supervisor.close()
        return EXIT_FATAL

    _install_signal_handlers(loop, logger)
    try:
        loop.run()
    except StorageFault as exc:
        logger.error("Event log write failed, shutting down: %s", exc)
        return EXIT_FATAL
    except TimingFault as exc:
        logger.error("Clock unavailable, shutting down: %s", exc)
        return EXIT_FATAL
    finally:
        loop.close()
    logger.info("Monitor stopped")
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
