"""
Metrics Agent - Metrics Sampler

Reads instantaneous system counters and derives per-tick values.

Notes on the readings:
- "CPU usage" is memory pressure, (total - available) / total * 100. It is a
  load proxy, not CPU time.
- Network deltas are computed against the counters from the previous tick,
  which the caller passes in. The first tick runs against a zero baseline and
  therefore reports every byte since boot.
- Storage comes from block counts of the data partition (statvfs).
- Battery comes from the Linux power-supply class; when it cannot be read
  level and temperature are 0.0.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple

import psutil
import structlog

from ..errors import SamplingUnavailable

logger = structlog.get_logger(__name__)

POWER_SUPPLY_DIR = Path("/sys/class/power_supply")


@dataclass(frozen=True)
class NetworkCounters:
    """Cumulative interface byte counters."""
    rx_bytes: int
    tx_bytes: int

    @classmethod
    def zero(cls) -> "NetworkCounters":
        return cls(rx_bytes=0, tx_bytes=0)


@dataclass(frozen=True)
class MemoryInfo:
    total: int
    available: int


@dataclass(frozen=True)
class StorageInfo:
    """statvfs-style block counts."""
    block_size: int
    total_blocks: int
    available_blocks: int

    @property
    def available_bytes(self) -> int:
        return self.available_blocks * self.block_size

    @property
    def total_bytes(self) -> int:
        return self.total_blocks * self.block_size


@dataclass(frozen=True)
class BatteryState:
    """Latest battery reading. temperature is in tenths of a degree Celsius."""
    level: int
    scale: int
    temperature: int


@dataclass(frozen=True)
class MetricsFields:
    """Sampled values before device id and capture time are attached."""
    cpu_usage_percent: float
    rx_bytes: int
    tx_bytes: int
    storage_available_bytes: int
    storage_total_bytes: int
    battery_level_percent: float
    battery_temp_celsius: float


def memory_usage_percent(memory: MemoryInfo) -> float:
    if memory.total <= 0:
        raise SamplingUnavailable("Total memory reported as zero")
    return (memory.total - memory.available) / memory.total * 100


def network_delta(previous: NetworkCounters, current: NetworkCounters) -> Tuple[int, int]:
    """Bytes transferred between two readings. A counter that went backwards yields 0."""
    return (
        max(0, current.rx_bytes - previous.rx_bytes),
        max(0, current.tx_bytes - previous.tx_bytes),
    )


def battery_level_percent(battery: Optional[BatteryState]) -> float:
    if battery is None or battery.level < 0 or battery.scale <= 0:
        return 0.0
    return battery.level * 100 / battery.scale


def battery_temp_celsius(battery: Optional[BatteryState]) -> float:
    if battery is None:
        return 0.0
    return battery.temperature / 10.0


def read_memory() -> MemoryInfo:
    mem = psutil.virtual_memory()
    return MemoryInfo(total=mem.total, available=mem.available)


def read_network() -> NetworkCounters:
    counters = psutil.net_io_counters()
    if counters is None:
        raise SamplingUnavailable("No network interfaces reported")
    return NetworkCounters(rx_bytes=counters.bytes_recv, tx_bytes=counters.bytes_sent)


def default_stat_path() -> str:
    return "/data" if os.path.isdir("/data") else "/"


def read_storage(path: str) -> StorageInfo:
    st = os.statvfs(path)
    return StorageInfo(block_size=st.f_frsize, total_blocks=st.f_blocks, available_blocks=st.f_bavail)


def _read_int(path: Path) -> Optional[int]:
    try:
        return int(path.read_text().strip())
    except (OSError, ValueError):
        return None


def read_battery(power_supply_dir: Path = POWER_SUPPLY_DIR) -> Optional[BatteryState]:
    """Read the first battery under the power-supply class, then fall back to psutil."""
    if power_supply_dir.is_dir():
        for supply in sorted(power_supply_dir.iterdir()):
            type_file = supply / "type"
            if type_file.exists() and type_file.read_text().strip() != "Battery":
                continue
            level = _read_int(supply / "capacity")
            if level is None:
                continue
            temperature = _read_int(supply / "temp")
            return BatteryState(level=level, scale=100, temperature=temperature or 0)

    battery = psutil.sensors_battery() if hasattr(psutil, "sensors_battery") else None
    if battery is None:
        return None
    return BatteryState(level=int(round(battery.percent)), scale=100, temperature=0)


class MetricsSampler:
    """Samples system metrics. Probes are injectable for tests."""

    def __init__(
        self,
        config: dict,
        memory_probe: Callable[[], MemoryInfo] = read_memory,
        network_probe: Callable[[], NetworkCounters] = read_network,
        storage_probe: Callable[[str], StorageInfo] = read_storage,
        battery_probe: Callable[[], Optional[BatteryState]] = read_battery,
    ):
        self.config = config.get("storage", {})
        self._stat_path = self.config.get("stat_path") or default_stat_path()
        self._memory_probe = memory_probe
        self._network_probe = network_probe
        self._storage_probe = storage_probe
        self._battery_probe = battery_probe

    def sample(self, previous: NetworkCounters) -> Tuple[MetricsFields, NetworkCounters]:
        """Take one reading. Returns the fields and the counters for the next call."""
        cpu_usage = self._probe("memory", lambda: memory_usage_percent(self._memory_probe()), 0.0)

        current = self._probe("network", self._network_probe, None)
        if current is None:
            rx_bytes, tx_bytes = 0, 0
            current = previous
        else:
            rx_bytes, tx_bytes = network_delta(previous, current)

        storage = self._probe("storage", lambda: self._storage_probe(self._stat_path), None)
        battery = self._probe("battery", self._battery_probe, None)

        fields = MetricsFields(
            cpu_usage_percent=cpu_usage,
            rx_bytes=rx_bytes,
            tx_bytes=tx_bytes,
            storage_available_bytes=storage.available_bytes if storage else 0,
            storage_total_bytes=storage.total_bytes if storage else 0,
            battery_level_percent=battery_level_percent(battery),
            battery_temp_celsius=battery_temp_celsius(battery),
        )
        return fields, current

    @staticmethod
    def _probe(name: str, probe: Callable, default):
        try:
            return probe()
        except (SamplingUnavailable, OSError, AttributeError, ValueError, psutil.Error) as e:
            logger.warning("Sampling unavailable, using default", probe=name, error=str(e))
            return default
