"""Tests for telemetry sampling and publishing."""

import asyncio
import json
from pathlib import Path
from typing import Optional, Tuple

import pytest

from conftest import FakeMQTT, wait_for_publish
from device_agent.adapters import MQTTConnectionError
from device_agent.config import TelemetryConfig
from device_agent.telemetry import (
    UNAVAILABLE,
    ProcStatsSource,
    TelemetryPublisher,
    TelemetrySampler,
)


class FakeStats:
    def __init__(self) -> None:
        self.cpu: list[Optional[Tuple[int, int]]] = []
        self.mem: Optional[Tuple[int, int]] = (1000, 250)

    def cpu_ticks(self) -> Optional[Tuple[int, int]]:
        return self.cpu.pop(0) if self.cpu else None

    def memory(self) -> Optional[Tuple[int, int]]:
        return self.mem


def test_first_cpu_sample_reports_sentinel() -> None:
    stats = FakeStats()
    stats.cpu = [(500, 2000)]
    sampler = TelemetrySampler(stats, "dev")

    assert sampler.cpu_percent() == UNAVAILABLE


def test_second_cpu_sample_uses_deltas() -> None:
    stats = FakeStats()
    stats.cpu = [(500, 2000), (700, 3000)]
    sampler = TelemetrySampler(stats, "dev")

    sampler.cpu_percent()

    assert sampler.cpu_percent() == pytest.approx(80.0)


def test_zero_tick_delta_reports_idle() -> None:
    stats = FakeStats()
    stats.cpu = [(500, 2000), (500, 2000)]
    sampler = TelemetrySampler(stats, "dev")

    sampler.cpu_percent()

    assert sampler.cpu_percent() == 0.0


def test_unreadable_sources_report_sentinel() -> None:
    stats = FakeStats()
    stats.mem = None
    sampler = TelemetrySampler(stats, "dev")

    record = sampler.sample()

    assert record.cpu_percent == UNAVAILABLE
    assert record.memory_percent == UNAVAILABLE


def test_memory_percent() -> None:
    sampler = TelemetrySampler(FakeStats(), "dev")

    assert sampler.memory_percent() == pytest.approx(75.0)


def test_record_payload_shape() -> None:
    stats = FakeStats()
    stats.cpu = [(0, 0)]
    sampler = TelemetrySampler(stats, "gateway-7", clock=lambda: 1700000000.9)

    payload = sampler.sample().to_payload()

    assert payload == (
        b'{"timestamp":1700000000,"cpu_percent":-1.0,'
        b'"memory_percent":75.0,"device_id":"gateway-7"}'
    )


def test_proc_stats_source_reads_procfs_format(tmp_path: Path) -> None:
    stat = tmp_path / "stat"
    stat.write_text(
        "cpu  100 20 30 800 10 5 5 0 0 0\ncpu0 50 10 15 400 5 2 3 0 0 0\n",
        encoding="ascii",
    )
    meminfo = tmp_path / "meminfo"
    meminfo.write_text(
        "MemTotal:        2048000 kB\nMemFree:          100000 kB\n"
        "MemAvailable:     512000 kB\n",
        encoding="ascii",
    )

    source = ProcStatsSource(stat, meminfo)

    assert source.cpu_ticks() == (800, 970)
    assert source.memory() == (2048000, 512000)


def test_proc_stats_source_missing_files(tmp_path: Path) -> None:
    source = ProcStatsSource(tmp_path / "nope", tmp_path / "nope2")

    assert source.cpu_ticks() is None
    assert source.memory() is None


def test_proc_stats_source_undecodable_bytes(tmp_path: Path) -> None:
    stat = tmp_path / "stat"
    stat.write_bytes(b"cpu \xff 1 2 3 4 5 6\n")
    meminfo = tmp_path / "meminfo"
    meminfo.write_bytes(b"MemTotal: \xfe1000 kB\nMemAvailable: 500 kB\n")

    source = ProcStatsSource(stat, meminfo)
    sampler = TelemetrySampler(source, "dev")

    assert source.cpu_ticks() is None
    assert source.memory() is None
    record = sampler.sample()
    assert record.cpu_percent == UNAVAILABLE
    assert record.memory_percent == UNAVAILABLE


def test_proc_stats_source_malformed(tmp_path: Path) -> None:
    stat = tmp_path / "stat"
    stat.write_text("intr 1 2 3\n", encoding="ascii")
    meminfo = tmp_path / "meminfo"
    meminfo.write_text("MemTotal: 0 kB\nMemAvailable: 0 kB\n", encoding="ascii")

    source = ProcStatsSource(stat, meminfo)

    assert source.cpu_ticks() is None
    assert source.memory() is None


def test_publish_failure_does_not_raise() -> None:
    mqtt = FakeMQTT()
    mqtt.publish_error = MQTTConnectionError("Publish failed with rc=4")
    outcomes: list[bool] = []
    publisher = TelemetryPublisher(
        TelemetryConfig(),
        mqtt,
        TelemetrySampler(FakeStats(), "dev"),
        on_published=outcomes.append,
    )

    assert publisher.publish_once() is False
    assert outcomes == [False]


@pytest.mark.asyncio
async def test_run_publishes_until_stopped() -> None:
    mqtt = FakeMQTT()
    stats = FakeStats()
    stats.cpu = [(0, 0), (200, 1000)]
    publisher = TelemetryPublisher(
        TelemetryConfig(interval_seconds=0.05, topic="device/telemetry"),
        mqtt,
        TelemetrySampler(stats, "dev"),
    )
    stop = asyncio.Event()

    task = asyncio.create_task(publisher.run(stop))
    await wait_for_publish(mqtt, 2)
    stop.set()
    await asyncio.wait_for(task, timeout=1.0)

    first = json.loads(mqtt.published[0][1])
    second = json.loads(mqtt.published[1][1])
    assert mqtt.published[0][0] == "device/telemetry"
    assert first["cpu_percent"] == UNAVAILABLE
    assert second["cpu_percent"] == pytest.approx(80.0)
