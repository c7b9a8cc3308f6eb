"""
Metrics Agent - Local Storage

Durable fallback for snapshots that could not be published, plus the
operator-facing log. Layout under the data directory:

    metrics_data/metrics_YYYYMMDD_HHMMSS_ffffff.json   one snapshot per file
    logs/log_YYYYMMDD.txt                               "[HH:MM:SS] message" lines
"""

import asyncio
import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import structlog

from ..errors import PersistenceError

logger = structlog.get_logger(__name__)


class RecordKind(str, Enum):
    """What is being written."""
    METRICS = "metrics"
    ERROR_LOG = "errorLog"


class LocalStore:
    """Writes metrics files and log lines under the agent data directory."""

    def __init__(self, config: dict, clock: Callable[[], datetime] = datetime.now):
        self.config = config.get("storage", {})
        self._data_dir = Path(self.config.get("data_dir", "./data"))
        self._metrics_dir = self._data_dir / self.config.get("metrics_dir", "metrics_data")
        self._logs_dir = self._data_dir / self.config.get("logs_dir", "logs")
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    @property
    def metrics_dir(self) -> Path:
        return self._metrics_dir

    @property
    def logs_dir(self) -> Path:
        return self._logs_dir

    def save(self, data: bytes, kind: RecordKind, captured_at: Optional[datetime] = None) -> Path:
        """Write a record and return the file it went to.

        Metrics files are named after captured_at when given, otherwise after
        the store clock.
        """
        try:
            with self._lock:
                if kind == RecordKind.METRICS:
                    return self._write_metrics(data, captured_at or self._clock())
                return self._append_log(data)
        except OSError as e:
            raise PersistenceError(f"Cannot write {kind.value} record: {e}") from e

    async def save_async(
        self, data: bytes, kind: RecordKind, captured_at: Optional[datetime] = None
    ) -> Path:
        """Same as save(), run in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.save, data, kind, captured_at)

    def _write_metrics(self, data: bytes, now: datetime) -> Path:
        self._metrics_dir.mkdir(parents=True, exist_ok=True)
        stem = f"metrics_{now.strftime('%Y%m%d_%H%M%S')}_{now.microsecond:06d}"

        path = self._metrics_dir / f"{stem}.json"
        suffix = 1
        while path.exists():
            path = self._metrics_dir / f"{stem}-{suffix}.json"
            suffix += 1

        with open(path, "wb") as f:
            f.write(data)
            f.flush()

        logger.info("Metrics saved locally", path=str(path))
        return path

    def _append_log(self, data: bytes) -> Path:
        self._logs_dir.mkdir(parents=True, exist_ok=True)
        now = self._clock()
        path = self._logs_dir / f"log_{now.strftime('%Y%m%d')}.txt"
        message = data.decode("utf-8", errors="replace").rstrip("\n")

        with open(path, "a", encoding="utf-8") as f:
            f.write(f"[{now.strftime('%H:%M:%S')}] {message}\n")
            f.flush()

        return path


class DurableLog:
    """Operator log backed by LocalStore. Never raises."""

    def __init__(self, store: LocalStore):
        self._store = store

    def log(self, message: str) -> Optional[Path]:
        try:
            return self._store.save(message.encode("utf-8"), RecordKind.ERROR_LOG)
        except PersistenceError as e:
            logger.error("Durable log write failed", error=str(e), message=message)
            return None

    async def log_async(self, message: str) -> Optional[Path]:
        """Same as log(), run in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.log, message)
