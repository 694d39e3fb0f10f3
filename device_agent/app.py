"""Main application entry-point for device-agent."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from enum import Enum
from typing import Optional

from . import constants
from .adapters import MQTTClient, MQTTConnectionError
from .agent import CommandAgent
from .config import AgentConfig, load_config
from .health import HealthReporter, HealthServer
from .identity import DeviceIdentity, resolve_identity
from .logging import configure_logging
from .telemetry import ProcStatsSource, TelemetryPublisher, TelemetrySampler

LOGGER = logging.getLogger(__name__)


class AgentStartupError(RuntimeError):
    """Raised when the agent cannot connect or subscribe at startup."""


class AgentState(str, Enum):
    COLD_START = "cold_start"
    AWAITING_MQTT = "awaiting_mqtt"
    ACTIVE = "active"
    DEGRADED = "degraded"
    STOPPING = "stopping"


class DeviceAgentApp:
    """Coordinates application startup and shutdown.

    Startup resolves the device identity, connects to the broker and
    subscribes to the command topic; any failure there is fatal. After that
    the command loop and, when enabled, the telemetry loop run as independent
    tasks until shutdown.
    """

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        *,
        mqtt_client: Optional[MQTTClient] = None,
    ) -> None:
        self._config = config or load_config()
        self._mqtt_client = mqtt_client
        self._owns_mqtt_client = mqtt_client is None
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._identity: Optional[DeviceIdentity] = None
        self._agent: Optional[CommandAgent] = None
        self._telemetry: Optional[TelemetryPublisher] = None
        self._tasks: list[asyncio.Task[None]] = []
        self._shutdown_event: Optional[asyncio.Event] = None
        self._state = AgentState.COLD_START

    @property
    def identity(self) -> Optional[DeviceIdentity]:
        return self._identity

    @property
    def health(self) -> HealthReporter:
        return self._health

    @property
    def state(self) -> AgentState:
        return self._state

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def run(self) -> None:
        """Start services and block until shutdown is requested."""

        self._shutdown_event = asyncio.Event()
        LOGGER.info("device-agent starting with config: %s", self._config.path)

        try:
            await self._start_services()
            await self._supervise()
        except asyncio.CancelledError:
            LOGGER.info("device-agent received shutdown signal")
            raise
        finally:
            await self._stop_services()

    @classmethod
    def start(cls, config: Optional[AgentConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
            max_bytes=instance._config.logging.max_bytes,
            backup_count=instance._config.logging.backup_count,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("device-agent received shutdown signal")

    def _transition_state(self, state: AgentState, *, detail: Optional[str] = None) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        LOGGER.info(
            "Agent state transition %s -> %s (%s)",
            previous.value,
            state.value,
            detail or state.value,
        )
        self._health.set_agent_state(
            state.value,
            healthy=state == AgentState.ACTIVE,
            detail=detail or state.value,
        )

    async def _start_services(self) -> None:
        self._transition_state(AgentState.COLD_START, detail="initialising")
        identity = resolve_identity(self._config)
        self._identity = identity

        self._health.update("mqtt", False, "initialising")
        self._health.update("commands", False, "awaiting mqtt connectivity")

        if self._mqtt_client is None:
            self._mqtt_client = MQTTClient(
                self._config.cloud,
                client_id=_build_client_id(self._config, identity.device_id),
            )
        self._mqtt_client.register_disconnect_handler(self._on_mqtt_disconnect)

        self._transition_state(
            AgentState.AWAITING_MQTT, detail="connecting to mqtt broker"
        )
        try:
            await self._mqtt_client.connect()
        except MQTTConnectionError as exc:
            self._health.update("mqtt", False, str(exc))
            self._transition_state(AgentState.DEGRADED, detail="mqtt unavailable")
            raise AgentStartupError(f"Failed to connect to MQTT broker: {exc}") from exc
        self._health.update("mqtt", True, None)

        agent = CommandAgent(
            identity,
            self._config.commands,
            self._mqtt_client,
            health=self._health,
        )
        try:
            agent.start()
        except (MQTTConnectionError, RuntimeError) as exc:
            self._health.update("commands", False, str(exc))
            self._transition_state(AgentState.DEGRADED, detail="subscribe failed")
            raise AgentStartupError(
                f"Failed to subscribe to {identity.command_topic}: {exc}"
            ) from exc
        self._agent = agent
        self._mqtt_client.register_connect_handler(self._on_mqtt_connect)
        self._health.update("commands", True, None)

        assert self._shutdown_event is not None
        self._tasks.append(
            asyncio.create_task(agent.run(self._shutdown_event), name="command-loop")
        )

        telemetry_config = self._config.telemetry
        if telemetry_config.enabled:
            sampler = TelemetrySampler(
                ProcStatsSource(
                    telemetry_config.proc_stat_path, telemetry_config.meminfo_path
                ),
                telemetry_config.device_label or identity.device_id,
            )
            self._telemetry = TelemetryPublisher(
                telemetry_config,
                self._mqtt_client,
                sampler,
                on_published=self._on_telemetry_published,
            )
            self._tasks.append(
                asyncio.create_task(
                    self._telemetry.run(self._shutdown_event), name="telemetry-loop"
                )
            )
            self._health.update("telemetry", True, None)

        await self._start_health_server()
        self._transition_state(AgentState.ACTIVE, detail="runtime ready")

    async def _supervise(self) -> None:
        assert self._shutdown_event is not None
        LOGGER.info("device-agent active; awaiting shutdown signal")
        shutdown_waiter = asyncio.ensure_future(self._shutdown_event.wait())
        try:
            done, _ = await asyncio.wait(
                {shutdown_waiter, *self._tasks}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            shutdown_waiter.cancel()

        for task in done:
            if task is shutdown_waiter or task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                LOGGER.error("Task %s failed: %s", task.get_name(), exc)
                raise exc

    async def _start_health_server(self) -> None:
        health = self._config.health
        if not health.enabled or health.port <= 0:
            return

        server = HealthServer(self._health, health.host, health.port)
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            self._health.update("health-endpoint", True, None)

    def _on_mqtt_disconnect(self, rc: int) -> None:
        if self._state == AgentState.STOPPING:
            return
        # paho reconnects on its own; _on_mqtt_connect restores the subscription.
        self._health.update("mqtt", False, f"disconnected (rc={rc})")

    def _on_mqtt_connect(self, rc: int) -> None:
        if self._state == AgentState.STOPPING:
            return
        self._health.update("mqtt", True, None)
        if self._agent is not None:
            self._agent.resubscribe()

    def _on_telemetry_published(self, published: bool) -> None:
        if published:
            self._health.increment("telemetry_published")
        else:
            self._health.increment("publish_failures")

    async def _stop_services(self) -> None:
        self._transition_state(AgentState.STOPPING, detail="shutdown requested")
        if self._shutdown_event is not None:
            self._shutdown_event.set()

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._tasks.clear()

        if self._agent is not None:
            self._agent.stop()
            self._agent = None

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        if self._mqtt_client is not None and self._owns_mqtt_client:
            await self._mqtt_client.disconnect()
            self._mqtt_client = None
        self._health.update("mqtt", False, "shutdown")


def _build_client_id(config: AgentConfig, device_id: Optional[str]) -> str:
    if config.cloud.client_id:
        return config.cloud.client_id
    suffix = device_id or str(os.getpid())
    return f"{constants.APP_NAME}-{suffix}"
