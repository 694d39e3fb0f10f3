"""Host telemetry sampling and publishing."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol, Tuple

from .config import TelemetryConfig

LOGGER = logging.getLogger(__name__)

# Reported when a percentage cannot be computed: the first CPU sample (no
# previous counters to diff against) and unreadable counter sources.
UNAVAILABLE = -1.0

_CPU_FIELDS = 7  # user nice system idle iowait irq softirq


class StatsSource(Protocol):
    def cpu_ticks(self) -> Optional[Tuple[int, int]]:
        """Return ``(idle, total)`` jiffies, or ``None`` when unreadable."""
        ...

    def memory(self) -> Optional[Tuple[int, int]]:
        """Return ``(total, available)`` kB, or ``None`` when unreadable."""
        ...


class TelemetryPublishClient(Protocol):
    def publish(
        self, topic: str, payload: bytes, qos: int = 0, retain: bool = False
    ) -> None: ...


class ProcStatsSource:
    """Reads CPU and memory counters from procfs."""

    def __init__(
        self,
        stat_path: Path = Path("/proc/stat"),
        meminfo_path: Path = Path("/proc/meminfo"),
    ) -> None:
        self.stat_path = stat_path
        self.meminfo_path = meminfo_path

    def cpu_ticks(self) -> Optional[Tuple[int, int]]:
        try:
            with self.stat_path.open("r", encoding="ascii") as stream:
                line = stream.readline()
        except (OSError, UnicodeDecodeError) as exc:
            LOGGER.debug("Unable to read %s: %s", self.stat_path, exc)
            return None

        parts = line.split()
        if len(parts) < _CPU_FIELDS + 1 or parts[0] != "cpu":
            return None
        try:
            values = [int(value) for value in parts[1 : _CPU_FIELDS + 1]]
        except ValueError:
            return None
        return values[3], sum(values)

    def memory(self) -> Optional[Tuple[int, int]]:
        total: Optional[int] = None
        available: Optional[int] = None
        try:
            with self.meminfo_path.open("r", encoding="ascii") as stream:
                for line in stream:
                    key, _, rest = line.partition(":")
                    if key == "MemTotal":
                        total = _parse_kb(rest)
                    elif key == "MemAvailable":
                        available = _parse_kb(rest)
                    if total is not None and available is not None:
                        break
        except (OSError, UnicodeDecodeError) as exc:
            LOGGER.debug("Unable to read %s: %s", self.meminfo_path, exc)
            return None

        if not total or available is None:
            return None
        return total, available


def _parse_kb(value: str) -> Optional[int]:
    fields = value.split()
    if not fields:
        return None
    try:
        return int(fields[0])
    except ValueError:
        return None


@dataclass(slots=True)
class CpuSample:
    prev_idle: int = 0
    prev_total: int = 0
    primed: bool = False


@dataclass(frozen=True, slots=True)
class TelemetryRecord:
    timestamp: int
    cpu_percent: float
    memory_percent: float
    device_id: str

    def to_payload(self) -> bytes:
        return json.dumps(
            {
                "timestamp": self.timestamp,
                "cpu_percent": round(self.cpu_percent, 2),
                "memory_percent": round(self.memory_percent, 2),
                "device_id": self.device_id,
            },
            separators=(",", ":"),
        ).encode("utf-8")


class TelemetrySampler:
    """Turns raw counters into percentages, keeping CPU state between calls."""

    def __init__(
        self,
        source: StatsSource,
        device_id: str,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._source = source
        self._device_id = device_id
        self._clock = clock
        self._cpu = CpuSample()

    def cpu_percent(self) -> float:
        ticks = self._source.cpu_ticks()
        if ticks is None:
            return UNAVAILABLE

        idle, total = ticks
        sample = self._cpu
        primed = sample.primed
        diff_idle = idle - sample.prev_idle
        diff_total = total - sample.prev_total
        sample.prev_idle = idle
        sample.prev_total = total
        sample.primed = True

        if not primed:
            return UNAVAILABLE
        if diff_total <= 0:
            return 0.0
        return (diff_total - diff_idle) * 100.0 / diff_total

    def memory_percent(self) -> float:
        memory = self._source.memory()
        if memory is None:
            return UNAVAILABLE
        total, available = memory
        return (total - available) / total * 100.0

    def sample(self) -> TelemetryRecord:
        return TelemetryRecord(
            timestamp=int(self._clock()),
            cpu_percent=self.cpu_percent(),
            memory_percent=self.memory_percent(),
            device_id=self._device_id,
        )


class TelemetryPublisher:
    """Publishes a telemetry record on a fixed interval."""

    def __init__(
        self,
        config: TelemetryConfig,
        mqtt: TelemetryPublishClient,
        sampler: TelemetrySampler,
        *,
        on_published: Optional[Callable[[bool], None]] = None,
    ) -> None:
        self._config = config
        self._mqtt = mqtt
        self._sampler = sampler
        self._on_published = on_published

    @property
    def topic(self) -> str:
        return self._config.topic

    def publish_once(self) -> bool:
        record = self._sampler.sample()
        payload = record.to_payload()
        try:
            self._mqtt.publish(self._config.topic, payload)
        except (RuntimeError, OSError, ValueError) as exc:
            LOGGER.warning("Failed to publish telemetry: %s", exc)
            published = False
        else:
            LOGGER.debug("Published telemetry: %s", payload.decode("utf-8"))
            published = True

        if self._on_published is not None:
            self._on_published(published)
        return published

    async def run(self, stop_event: asyncio.Event) -> None:
        interval = self._config.interval_seconds
        LOGGER.info(
            "Telemetry publishing to %s every %.0fs", self._config.topic, interval
        )
        while not stop_event.is_set():
            self.publish_once()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
