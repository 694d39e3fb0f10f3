"""Logging configuration helpers."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# paho's internal chatter is routed to its own child logger by the MQTT
# adapter; aiohttp.access logs every /healthz probe.
NETWORK_LOGGERS = ("device_agent.adapters.mqtt.paho", "aiohttp.access")


def configure_logging(
    level: str = "INFO",
    *,
    log_path: Optional[Path] = None,
    log_network: bool = False,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
) -> None:
    """Configure root logging handlers.

    Console output is always installed; the Greengrass nucleus captures it
    into the component log. ``log_path`` adds a size-capped rotating file so
    long-running devices cannot fill their storage. Unless ``log_network`` is
    set, broker and HTTP access chatter is held at WARNING.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    network_level = logging.NOTSET if log_network else logging.WARNING
    for name in NETWORK_LOGGERS:
        logging.getLogger(name).setLevel(network_level)
