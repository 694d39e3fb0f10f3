"""Command-line interface for device-agent."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .adapters import MQTTConnectionError
from .app import AgentStartupError, DeviceAgentApp
from .config import load_config, save_config
from .identity import resolve_identity

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME,
        description="Remote command agent for Greengrass-managed devices",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    start_parser = subparsers.add_parser("start", help="Start the device agent")
    start_parser.add_argument(
        "--telemetry",
        action="store_true",
        help="Also publish host CPU and memory telemetry",
    )

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    identity_parser = subparsers.add_parser(
        "identity", help="Print the resolved device id and topics"
    )
    identity_parser.add_argument(
        "--save",
        action="store_true",
        help="Pin the resolved device id into the configuration file",
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "start":
        if args.telemetry:
            config.telemetry.enabled = True
        try:
            DeviceAgentApp.start(config)
        except (AgentStartupError, MQTTConnectionError) as exc:
            LOGGER.error("Startup failed: %s", exc)
            return 1
        return 0

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key == "password" and value:
                    value = "********"
                print(f"{key} = {value}")
            print()
        return 0

    if args.command == "identity":
        identity = resolve_identity(config)
        print(f"device_id = {identity.device_id}")
        print(f"command_topic = {identity.command_topic}")
        print(f"response_topic = {identity.response_topic}")
        if args.save:
            config.raw.set("device", "device_id", identity.device_id)
            save_config(config)
            print(f"Saved device id to {config.path!s}")
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
