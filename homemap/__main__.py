"""Headless HomeMap runner."""

from __future__ import annotations

import argparse
import asyncio
import logging
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path

from .config import ConfigError, HomeMapSettings, WebSocketConfig, load_settings
from .coordinator import HomeMapCoordinator
from .errors import HomeMapError

_LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Return the command line parser."""

    parser = argparse.ArgumentParser(
        prog="homemap", description="Follow controller events and serve peripherals."
    )
    parser.add_argument("--settings", type=Path, help="JSON or YAML settings file")
    parser.add_argument("--data-path", type=Path, help="HomeMap data directory")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
    )
    parser.add_argument(
        "--no-server",
        action="store_true",
        help="do not start the peripheral WebSocket server",
    )
    return parser


def resolve_settings(args: argparse.Namespace) -> HomeMapSettings:
    """Load settings and apply command line overrides."""

    settings = load_settings(args.settings)
    if args.data_path is not None:
        settings = replace(settings, data_path=args.data_path.expanduser())
    if args.no_server:
        settings = replace(settings, websocket=WebSocketConfig(enabled=False))
    return settings


async def async_run(settings: HomeMapSettings) -> None:
    """Run the coordinator until cancelled."""

    coordinator = HomeMapCoordinator(settings)
    try:
        version = await coordinator.client.async_test_connection()
        _LOGGER.info("Connected to controller %s (version %s)", settings.controller.host, version)
    except HomeMapError as err:
        _LOGGER.warning("Controller connection test failed: %s", err)
    try:
        await coordinator.async_setup()
        coordinator.start_polling()
        await coordinator.dispatcher.async_wait_stopped()
    finally:
        await coordinator.async_shutdown()


def main(argv: Sequence[str] | None = None) -> int:
    """Command line entry point."""

    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings = resolve_settings(args)
    except ConfigError as err:
        _LOGGER.error("%s", err)
        return 2
    try:
        asyncio.run(async_run(settings))
    except KeyboardInterrupt:
        _LOGGER.info("Interrupted")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
