"""End-to-end tests for DeviceAgentApp with an in-memory broker client."""

import asyncio
import json

import pytest

from conftest import FakeMQTT, wait_for_publish
from device_agent.adapters import MQTTConnectionError
from device_agent.app import AgentStartupError, AgentState, DeviceAgentApp, _build_client_id

COMMAND_TOPIC = "greengrass/device-agent/test-device/commands"
RESPONSE_TOPIC = "greengrass/device-agent/test-device/logs"


async def _wait_for_state(app: DeviceAgentApp, state: AgentState) -> None:
    async def _poll() -> None:
        while app.state != state:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=5.0)


@pytest.mark.asyncio
async def test_command_round_trip(agent_config, fake_mqtt: FakeMQTT) -> None:
    app = DeviceAgentApp(agent_config, mqtt_client=fake_mqtt)
    task = asyncio.create_task(app.run())
    await _wait_for_state(app, AgentState.ACTIVE)

    assert fake_mqtt.subscriptions == [(COMMAND_TOPIC, 0)]
    assert app.identity is not None
    assert app.identity.device_id == "test-device"

    fake_mqtt.emit(COMMAND_TOPIC, b'{"clientToken":"t1","script":"echo hello"}')
    await wait_for_publish(fake_mqtt)

    app.request_shutdown()
    await asyncio.wait_for(task, timeout=5.0)

    topic, payload, _, _ = fake_mqtt.published[0]
    assert topic == RESPONSE_TOPIC
    record = json.loads(payload)
    assert record == {
        "clientToken": "t1",
        "stdout": "hello ",
        "stderr": "",
        "exitCode": 0,
    }
    assert app.health.counter("commands_processed") == 1
    assert app.state == AgentState.STOPPING
    # Injected clients belong to the caller.
    assert fake_mqtt.connected is True


@pytest.mark.asyncio
async def test_connect_failure_is_fatal(agent_config, fake_mqtt: FakeMQTT) -> None:
    fake_mqtt.connect_error = MQTTConnectionError("broker unreachable")
    app = DeviceAgentApp(agent_config, mqtt_client=fake_mqtt)

    with pytest.raises(AgentStartupError):
        await app.run()

    assert fake_mqtt.subscriptions == []
    assert app.state == AgentState.STOPPING


@pytest.mark.asyncio
async def test_subscribe_failure_is_fatal(agent_config, fake_mqtt: FakeMQTT) -> None:
    fake_mqtt.subscribe_error = MQTTConnectionError("Subscribe failed with rc=4")
    app = DeviceAgentApp(agent_config, mqtt_client=fake_mqtt)

    with pytest.raises(AgentStartupError, match="commands"):
        await app.run()

    snapshot = app.health.snapshot()
    components = {item["name"]: item for item in snapshot["components"]}
    assert components["commands"]["healthy"] is False


@pytest.mark.asyncio
async def test_reconnect_restores_subscription(agent_config, fake_mqtt: FakeMQTT) -> None:
    app = DeviceAgentApp(agent_config, mqtt_client=fake_mqtt)
    task = asyncio.create_task(app.run())
    await _wait_for_state(app, AgentState.ACTIVE)

    for handler in fake_mqtt.disconnect_handlers:
        handler(7)
    snapshot = app.health.snapshot()
    assert snapshot["status"] == "degraded"

    for handler in fake_mqtt.connect_handlers:
        handler(0)

    app.request_shutdown()
    await asyncio.wait_for(task, timeout=5.0)

    assert fake_mqtt.subscriptions == [(COMMAND_TOPIC, 0), (COMMAND_TOPIC, 0)]


@pytest.mark.asyncio
async def test_telemetry_loop_publishes(agent_config, fake_mqtt: FakeMQTT, tmp_path) -> None:
    stat = tmp_path / "stat"
    stat.write_text("cpu  100 0 100 800 0 0 0 0 0 0\n", encoding="ascii")
    meminfo = tmp_path / "meminfo"
    meminfo.write_text(
        "MemTotal:        1000 kB\nMemFree:          100 kB\nMemAvailable:     400 kB\n",
        encoding="ascii",
    )
    agent_config.telemetry.enabled = True
    agent_config.telemetry.proc_stat_path = stat
    agent_config.telemetry.meminfo_path = meminfo

    app = DeviceAgentApp(agent_config, mqtt_client=fake_mqtt)
    task = asyncio.create_task(app.run())
    await wait_for_publish(fake_mqtt)

    app.request_shutdown()
    await asyncio.wait_for(task, timeout=5.0)

    topic, payload, _, _ = fake_mqtt.published[0]
    assert topic == "device/telemetry"
    record = json.loads(payload)
    assert record["device_id"] == "test-device"
    assert record["cpu_percent"] == -1.0
    assert record["memory_percent"] == 60.0
    assert app.health.counter("telemetry_published") == 1


def test_client_id_prefers_configuration(agent_config) -> None:
    assert _build_client_id(agent_config, "dev-1") == "device-agent-dev-1"

    agent_config.cloud.client_id = "custom"
    assert _build_client_id(agent_config, "dev-1") == "custom"
