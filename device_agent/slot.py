"""Single-message handoff between the MQTT thread and the processing loop."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

LOGGER = logging.getLogger(__name__)


class CommandSlot:
    """Capacity-one buffer that drops new messages while occupied.

    ``offer`` is called from the paho-mqtt network thread and must never block
    or raise; ``take_if_present`` is polled from the asyncio processing loop.
    Copying the message and flipping the occupancy flag happen under one lock,
    so a consumer never observes a half-written message.
    """

    def __init__(
        self,
        max_message_bytes: int,
        *,
        on_ready: Optional[Callable[[], None]] = None,
    ) -> None:
        self.max_message_bytes = max_message_bytes
        self._lock = threading.Lock()
        self._message: Optional[bytes] = None
        self._on_ready = on_ready
        self._dropped = 0

    @property
    def occupied(self) -> bool:
        with self._lock:
            return self._message is not None

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    def set_ready_callback(self, callback: Optional[Callable[[], None]]) -> None:
        self._on_ready = callback

    def offer(self, message: bytes) -> bool:
        """Store ``message`` if the slot is empty; otherwise discard it."""

        if len(message) > self.max_message_bytes:
            with self._lock:
                self._dropped += 1
            LOGGER.warning(
                "Dropping oversized command (%d bytes, limit %d)",
                len(message),
                self.max_message_bytes,
            )
            return False

        with self._lock:
            if self._message is not None:
                self._dropped += 1
                accepted = False
            else:
                self._message = bytes(message)
                accepted = True

        if not accepted:
            LOGGER.warning("Command slot busy; dropping new command")
            return False

        callback = self._on_ready
        if callback is not None:
            try:
                callback()
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Command slot ready callback raised")
        return True

    def take_if_present(self) -> Optional[bytes]:
        """Return and clear the held message, or ``None`` when empty."""

        with self._lock:
            message = self._message
            self._message = None
        return message
