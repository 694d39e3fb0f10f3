"""Command pipeline: intake, execution and response publishing."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional, Protocol

from . import constants
from .config import CommandConfig
from .encoder import encode_response
from .executor import CommandExecutor, ExecutionResult
from .extractor import extract_command
from .health import HealthReporter
from .identity import DeviceIdentity
from .slot import CommandSlot

LOGGER = logging.getLogger(__name__)


class MQTTCommandsClient(Protocol):
    def subscribe(self, topic: str, qos: int = 0) -> None: ...

    def publish(
        self, topic: str, payload: bytes, qos: int = 0, retain: bool = False
    ) -> None: ...

    def set_message_handler(self, handler): ...


class CycleState(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    EXECUTING = "executing"
    ENCODING = "encoding"
    PUBLISHING = "publishing"


class CommandAgent:
    """Consumes command messages one at a time and publishes their results.

    The MQTT callback only ever touches the :class:`CommandSlot`. Everything
    else runs on the event loop, one command cycle at a time.
    """

    def __init__(
        self,
        identity: DeviceIdentity,
        config: CommandConfig,
        mqtt: MQTTCommandsClient,
        *,
        executor: Optional[CommandExecutor] = None,
        health: Optional[HealthReporter] = None,
    ) -> None:
        self.identity = identity
        self._config = config
        self._mqtt = mqtt
        self._executor = executor or CommandExecutor(config)
        self._health = health
        self.slot = CommandSlot(config.max_message_bytes)
        self._state = CycleState.IDLE
        self._wakeup: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def state(self) -> CycleState:
        return self._state

    def start(self) -> None:
        """Bind to the running loop and subscribe to the command topic.

        Subscription errors propagate; they are fatal at startup.
        """

        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self.slot.set_ready_callback(self._notify_ready)
        self._mqtt.set_message_handler(self.handle_message)
        self._mqtt.subscribe(self.identity.command_topic, qos=self._config.qos)
        LOGGER.info("Subscribed to command topic %s", self.identity.command_topic)

    def resubscribe(self) -> None:
        """Restore the command subscription after a broker reconnect."""

        try:
            self._mqtt.subscribe(self.identity.command_topic, qos=self._config.qos)
        except (RuntimeError, OSError, ValueError) as exc:
            LOGGER.error(
                "Failed to resubscribe to %s: %s", self.identity.command_topic, exc
            )
            return
        LOGGER.info("Resubscribed to command topic %s", self.identity.command_topic)

    def stop(self) -> None:
        self._mqtt.set_message_handler(None)
        self.slot.set_ready_callback(None)

    def handle_message(self, topic: str, payload: bytes) -> None:
        """Intake callback, invoked on the MQTT network thread."""

        if topic != self.identity.command_topic:
            return
        LOGGER.info("Received command on %s (%d bytes)", topic, len(payload))
        if not self.slot.offer(payload) and self._health is not None:
            self._health.increment("commands_dropped")

    def _notify_ready(self) -> None:
        loop = self._loop
        wakeup = self._wakeup
        if loop is None or wakeup is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(wakeup.set)

    def _set_state(self, state: CycleState) -> None:
        LOGGER.debug("Command cycle %s -> %s", self._state.value, state.value)
        self._state = state

    async def process_once(self) -> bool:
        """Run one full command cycle if a message is waiting.

        Returns ``True`` when a message was processed, whether or not its
        response could be published.
        """

        message = self.slot.take_if_present()
        if message is None:
            return False

        try:
            self._set_state(CycleState.EXTRACTING)
            command = extract_command(
                message,
                max_token_bytes=self._config.max_token_bytes,
                max_script_bytes=self._config.max_script_bytes,
            )

            self._set_state(CycleState.EXECUTING)
            try:
                result = await self._executor.execute(command)
            except Exception:
                LOGGER.exception("Unexpected error while running command")
                result = ExecutionResult(
                    stderr=constants.INTERNAL_FAILURE_MESSAGE, exit_code=1
                )
                if self._health is not None:
                    self._health.increment("command_failures")

            self._set_state(CycleState.ENCODING)
            response = encode_response(
                command.client_token, result, self._config.response_limit_bytes
            )

            self._set_state(CycleState.PUBLISHING)
            self._publish(response)
        finally:
            self._set_state(CycleState.IDLE)

        if self._health is not None:
            self._health.increment("commands_processed")
        return True

    def _publish(self, response: str) -> None:
        topic = self.identity.response_topic
        try:
            self._mqtt.publish(topic, response.encode("utf-8"), qos=self._config.qos)
        except (RuntimeError, OSError, ValueError) as exc:
            LOGGER.error("Failed to send command response on %s: %s", topic, exc)
            if self._health is not None:
                self._health.increment("publish_failures")
            return
        LOGGER.info("Sent response on %s (%d bytes)", topic, len(response))
        LOGGER.debug("Response payload: %s", response)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Process commands until ``stop_event`` is set.

        Blocks on the slot's ready signal instead of polling.
        """

        if self._wakeup is None:
            raise RuntimeError("CommandAgent.start() must be called before run()")
        wakeup = self._wakeup

        stop_waiter = asyncio.ensure_future(stop_event.wait())
        try:
            while not stop_event.is_set():
                while await self.process_once():
                    if stop_event.is_set():
                        return
                wakeup.clear()
                # A message may have landed between the last poll and clear().
                if self.slot.occupied:
                    continue
                wake_waiter = asyncio.ensure_future(wakeup.wait())
                try:
                    await asyncio.wait(
                        {wake_waiter, stop_waiter},
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    wake_waiter.cancel()
        finally:
            stop_waiter.cancel()
