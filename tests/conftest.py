import asyncio
from pathlib import Path
from typing import Callable, Optional

import pytest

from device_agent.config import AgentConfig, load_config


class FakeMQTT:
    """Stand-in for MQTTClient recording subscriptions and publishes."""

    def __init__(self) -> None:
        self.handler = None
        self.subscriptions: list[tuple[str, int]] = []
        self.published: list[tuple[str, bytes, int, bool]] = []
        self.publish_error: Optional[Exception] = None
        self.subscribe_error: Optional[Exception] = None
        self.connect_error: Optional[Exception] = None
        self.connected = False
        self.disconnect_handlers: list[Callable[[int], None]] = []
        self.connect_handlers: list[Callable[[int], None]] = []

    async def connect(self, timeout: float = 30.0) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def disconnect(self, timeout: float = 5.0) -> None:
        self.connected = False

    def set_message_handler(self, handler):
        self.handler = handler

    def subscribe(self, topic: str, qos: int = 0):
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.subscriptions.append((topic, qos))

    def publish(self, topic: str, payload: bytes, qos: int = 0, retain: bool = False):
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append((topic, payload, qos, retain))

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self.disconnect_handlers.append(handler)

    def register_connect_handler(self, handler: Callable[[int], None]) -> None:
        self.connect_handlers.append(handler)

    def emit(self, topic: str, payload: bytes) -> None:
        if self.handler is None:
            raise RuntimeError("No handler registered")
        self.handler(topic, payload)


async def wait_for_publish(mqtt: FakeMQTT, count: int = 1, timeout: float = 5.0) -> None:
    async def _poll() -> None:
        while len(mqtt.published) < count:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def fake_mqtt() -> FakeMQTT:
    return FakeMQTT()


@pytest.fixture
def agent_config(tmp_path: Path) -> AgentConfig:
    config = load_config(tmp_path / "device-agent.cfg")
    config.device.device_id = "test-device"
    config.device.identity_path = tmp_path / "missing.yaml"
    return config
