"""
Metrics Agent - Test fixtures
"""

import asyncio
import shutil
from pathlib import Path
from typing import Optional

import pytest

from metrics_agent.config import default_config
from metrics_agent.delivery import ConnectionState, DeliveryBackend
from metrics_agent.errors import NotConnectedError, PublishError
from metrics_agent.telemetry.sampler import (
    BatteryState,
    MemoryInfo,
    MetricsSampler,
    NetworkCounters,
    StorageInfo,
)

FIXTURES = Path(__file__).parent / "fixtures"


class FakeBackend(DeliveryBackend):
    """In-memory backend that records publishes."""

    def __init__(self, config: dict, connect: bool = True, fail_publish: bool = False):
        super().__init__(config)
        self.connect_on_start = connect
        self.fail_publish = fail_publish
        self.published = []
        self.start_error: Optional[Exception] = None
        self.start_gate: Optional[asyncio.Event] = None
        self.recover_on_maintain = False
        self.maintain_calls = 0
        self.stopped = False

    @property
    def name(self) -> str:
        return "fake"

    @property
    def topic(self) -> str:
        return "device/metrics/data"

    async def start(self) -> None:
        if self.start_gate is not None:
            await self.start_gate.wait()
        if self.start_error is not None:
            self._status.transition(ConnectionState.ERROR, str(self.start_error))
            raise self.start_error
        self._status.transition(ConnectionState.CONNECTING)
        if self.connect_on_start:
            self._status.transition(ConnectionState.CONNECTED)

    async def maintain(self) -> None:
        self.maintain_calls += 1
        if self.recover_on_maintain and self._status.transition(ConnectionState.CONNECTING):
            self._status.transition(ConnectionState.CONNECTED)

    async def stop(self) -> None:
        self.stopped = True
        self._status.transition(ConnectionState.DISCONNECTED)

    async def publish(self, payload: bytes, topic: Optional[str] = None) -> None:
        if not self.status.is_connected:
            raise NotConnectedError("not connected")
        if self.fail_publish:
            raise PublishError("broker rejected publish")
        self.published.append((topic, payload))


def make_sampler(
    config: dict,
    memory=MemoryInfo(total=8000, available=2000),
    counters=NetworkCounters(rx_bytes=10240, tx_bytes=2048),
    storage=StorageInfo(block_size=4096, total_blocks=1_048_576, available_blocks=262_144),
    battery=BatteryState(level=80, scale=100, temperature=312),
) -> MetricsSampler:
    return MetricsSampler(
        config,
        memory_probe=lambda: memory,
        network_probe=lambda: counters,
        storage_probe=lambda path: storage,
        battery_probe=lambda: battery,
    )


@pytest.fixture
def config(tmp_path):
    """Default configuration rooted in a temporary directory."""
    cfg = default_config()
    cfg["device"]["id"] = "test-device"
    cfg["collection"]["interval"] = 0.05
    cfg["storage"]["data_dir"] = str(tmp_path / "data")
    cfg["storage"]["stat_path"] = str(tmp_path)
    cfg["credentials"]["assets_dir"] = str(FIXTURES)
    cfg["mqtt"]["publish_timeout"] = 1
    return cfg


@pytest.fixture
def assets_dir(tmp_path, config):
    """Writable copy of the certificate fixtures."""
    target = tmp_path / "assets"
    target.mkdir()
    for name in ("root-ca.pem", "certificate.pem.crt", "private.pem.key"):
        shutil.copyfile(FIXTURES / name, target / name)
    config["credentials"]["assets_dir"] = str(target)
    return target


@pytest.fixture
def fake_backend(config):
    return FakeBackend(config)


@pytest.fixture
def sampler_factory():
    return make_sampler
