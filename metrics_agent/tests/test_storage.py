"""
Metrics Agent - Local Storage Tests
"""

import re
from datetime import datetime

import pytest

from metrics_agent.errors import PersistenceError
from metrics_agent.storage import DurableLog, LocalStore, RecordKind

FIXED_NOW = datetime(2024, 1, 2, 9, 5, 3, 120000)


class TestMetricsFiles:
    """Test snapshot persistence."""

    def test_save_creates_file(self, config):
        store = LocalStore(config)

        path = store.save(b'{"deviceId":"a"}', RecordKind.METRICS)

        assert path.parent == store.metrics_dir
        assert re.fullmatch(r"metrics_\d{8}_\d{6}_\d{6}\.json", path.name)
        assert path.read_bytes() == b'{"deviceId":"a"}'

    def test_same_instant_never_overwrites(self, config):
        """Saves with an identical timestamp get distinct names."""
        store = LocalStore(config, clock=lambda: FIXED_NOW)

        first = store.save(b"1", RecordKind.METRICS)
        second = store.save(b"2", RecordKind.METRICS)
        third = store.save(b"3", RecordKind.METRICS)

        assert first.name == "metrics_20240102_090503_120000.json"
        assert second.name == "metrics_20240102_090503_120000-1.json"
        assert third.name == "metrics_20240102_090503_120000-2.json"
        assert [p.read_bytes() for p in (first, second, third)] == [b"1", b"2", b"3"]

    def test_directory_creation_is_idempotent(self, config):
        store = LocalStore(config)
        store.metrics_dir.mkdir(parents=True)

        store.save(b"x", RecordKind.METRICS)
        store.save(b"y", RecordKind.METRICS)

        assert len(list(store.metrics_dir.iterdir())) == 2

    def test_write_failure_is_persistence_error(self, config, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        config["storage"]["data_dir"] = str(blocker)
        store = LocalStore(config)

        with pytest.raises(PersistenceError):
            store.save(b"x", RecordKind.METRICS)

    def test_named_by_capture_instant(self, config):
        store = LocalStore(config, clock=lambda: FIXED_NOW)

        path = store.save(b"x", RecordKind.METRICS, captured_at=datetime(2023, 12, 31, 23, 59, 58, 7))

        assert path.name == "metrics_20231231_235958_000007.json"

    @pytest.mark.asyncio
    async def test_save_async(self, config):
        store = LocalStore(config)

        path = await store.save_async(b"async", RecordKind.METRICS)

        assert path.read_bytes() == b"async"


class TestLogFiles:
    """Test the durable operator log."""

    def test_log_lines_are_appended(self, config):
        store = LocalStore(config, clock=lambda: FIXED_NOW)

        store.save(b"first", RecordKind.ERROR_LOG)
        path = store.save(b"second\n", RecordKind.ERROR_LOG)

        assert path == store.logs_dir / "log_20240102.txt"
        assert path.read_text() == "[09:05:03] first\n[09:05:03] second\n"

    def test_logs_partitioned_by_day(self, config):
        days = iter([datetime(2024, 1, 2, 23, 59, 59), datetime(2024, 1, 3, 0, 0, 1)])
        store = LocalStore(config, clock=lambda: next(days))

        first = store.save(b"late", RecordKind.ERROR_LOG)
        second = store.save(b"early", RecordKind.ERROR_LOG)

        assert first.name == "log_20240102.txt"
        assert second.name == "log_20240103.txt"

    def test_durable_log_never_raises(self, config, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        config["storage"]["data_dir"] = str(blocker)

        assert DurableLog(LocalStore(config)).log("lost") is None

    def test_durable_log_writes(self, config):
        store = LocalStore(config, clock=lambda: FIXED_NOW)

        path = DurableLog(store).log("Data collection started")

        assert path.read_text() == "[09:05:03] Data collection started\n"

    @pytest.mark.asyncio
    async def test_durable_log_async(self, config):
        store = LocalStore(config, clock=lambda: FIXED_NOW)

        path = await DurableLog(store).log_async("Data sent via MQTT")

        assert path.read_text() == "[09:05:03] Data sent via MQTT\n"

    def test_record_kind_values(self):
        assert RecordKind.METRICS.value == "metrics"
        assert RecordKind.ERROR_LOG.value == "errorLog"
