"""Command-line interface for pnplink."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .app import DeviceApp, GatewayApp
from .auth import ConnectionStringError
from .config import load_config

LOGGER = logging.getLogger(__name__)

_SECRET_OPTIONS = {"connection_string", "password"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pnplink",
        description="Component-aware device client and telemetry gateway",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("device", help="Run the simulated thermostat device")
    subparsers.add_parser("gateway", help="Run the operator gateway and telemetry relay")
    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "device":
        try:
            DeviceApp.start(config)
        except (ValueError, ConnectionStringError) as exc:
            LOGGER.error("Device could not start: %s", exc)
            return 1
        return 0

    if args.command == "gateway":
        GatewayApp.start(config)
        return 0

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key in _SECRET_OPTIONS and value:
                    value = "<redacted>"
                print(f"{key} = {value}")
            print()
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
