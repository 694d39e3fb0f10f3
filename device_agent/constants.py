"""Constants used across the device-agent package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "device-agent"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path("/etc") / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 8883

DEFAULT_TOPIC_NAMESPACE = "greengrass/device-agent"
DEFAULT_IDENTITY_PATH = Path("/etc/greengrass/config.yaml")
FALLBACK_DEVICE_ID = "unknown-device"

DEFAULT_TELEMETRY_TOPIC = "device/telemetry"
DEFAULT_TELEMETRY_INTERVAL_SECONDS = 30.0

DEFAULT_SHELL = "/bin/sh"

EMPTY_SCRIPT_MESSAGE = "No script provided"
START_FAILURE_MESSAGE = "Failed to execute script"
INTERNAL_FAILURE_MESSAGE = "Agent failed while running script"
MISSING_EXAMPLES_MESSAGE = "See examples.txt file for command formats"
EMPTY_OUTPUT_MESSAGE = "Command returned no output. Examples file not found."
