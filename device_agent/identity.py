"""Device identity resolution and topic derivation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants
from .config import AgentConfig

LOGGER = logging.getLogger(__name__)

THING_NAME_KEY = "thingName:"
MAX_DEVICE_ID_BYTES = 63


@dataclass(frozen=True, slots=True)
class DeviceIdentity:
    device_id: str
    namespace: str = constants.DEFAULT_TOPIC_NAMESPACE

    @property
    def base_topic(self) -> str:
        return f"{self.namespace}/{self.device_id}"

    @property
    def command_topic(self) -> str:
        return f"{self.base_topic}/commands"

    @property
    def response_topic(self) -> str:
        return f"{self.base_topic}/logs"


def read_thing_name(path: Path) -> Optional[str]:
    """Return the quoted ``thingName`` value from a nucleus config file.

    The first line containing ``thingName:`` decides; an unquoted value is
    accepted as well. Unreadable files resolve to ``None``.
    """

    try:
        with path.open("r", encoding="utf-8", errors="replace") as stream:
            for line in stream:
                if THING_NAME_KEY not in line:
                    continue
                remainder = line.split(THING_NAME_KEY, 1)[1].strip()
                if remainder.startswith(('"', "'")):
                    quote = remainder[0]
                    end = remainder.find(quote, 1)
                    value = remainder[1:end] if end > 0 else ""
                else:
                    value = remainder.split("#", 1)[0].strip()
                value = value.encode("utf-8")[:MAX_DEVICE_ID_BYTES].decode(
                    "utf-8", errors="ignore"
                )
                return value or None
    except OSError as exc:
        LOGGER.warning("Unable to read device identity from %s: %s", path, exc)
    return None


def resolve_device_id(config: AgentConfig) -> str:
    device_id = config.device.device_id
    source = "configuration"
    if not device_id:
        device_id = read_thing_name(config.device.identity_path)
        source = str(config.device.identity_path)
    if not device_id:
        device_id = constants.FALLBACK_DEVICE_ID
        source = "fallback"
    LOGGER.info("Using device id %s (from %s)", device_id, source)
    return device_id


def resolve_identity(config: AgentConfig) -> DeviceIdentity:
    return DeviceIdentity(
        device_id=resolve_device_id(config),
        namespace=config.device.namespace,
    )
