"""
Metrics Agent - Collection Loop

Runs one tick every collection interval: sample, build a snapshot, publish it
when the broker is connected, otherwise save it locally, then notify
observers. Ticks run sequentially on a single task and never overlap.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

import structlog

from ..config import resolve_device_id
from ..delivery import ConnectionStatus, DeliveryBackend, DeliveryOutcome, OutcomeKind
from ..display import DisplayValues, format_display
from ..errors import CredentialError, PersistenceError, SerializationError, TransportError
from ..storage import DurableLog, LocalStore, RecordKind
from .sampler import MetricsSampler, NetworkCounters
from .snapshot import MetricsSnapshot, build, serialize

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TickReport:
    """What observers receive after each tick."""
    tick: int
    snapshot: MetricsSnapshot
    outcome: DeliveryOutcome
    connection_status: ConnectionStatus
    display: DisplayValues


Observer = Callable[[TickReport], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CollectionLoop:
    """Periodic sample-and-deliver loop."""

    def __init__(
        self,
        config: dict,
        sampler: MetricsSampler,
        backend: DeliveryBackend,
        store: LocalStore,
        durable_log: Optional[DurableLog] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config.get("collection", {})
        self._interval = self.config.get("interval", 5)
        self._stop_timeout = config.get("mqtt", {}).get("publish_timeout", 10) + 5
        self._device_id = resolve_device_id(config)

        self._sampler = sampler
        self._backend = backend
        self._store = store
        self._durable_log = durable_log or DurableLog(store)
        self._clock = clock

        self._running = False
        self._stop_requested = False
        self._stop_event: Optional[asyncio.Event] = None
        self._collection_task: Optional[asyncio.Task] = None
        self._counters = NetworkCounters.zero()
        self._observers: List[Observer] = []
        self._tick_count = 0
        self._latest: Optional[TickReport] = None
        self._status_text = "Monitoring stopped"

        self._backend.add_status_listener(self._on_status_change)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def latest(self) -> Optional[TickReport]:
        return self._latest

    @property
    def status_text(self) -> str:
        return self._status_text

    @property
    def connection_status(self) -> ConnectionStatus:
        return self._backend.status

    def add_observer(self, observer: Observer) -> None:
        self._observers.append(observer)

    async def start(self) -> None:
        """Start collecting. Connects the backend first; failures do not stop the loop."""
        if self._running:
            return

        self._running = True
        self._stop_requested = False
        self._stop_event = asyncio.Event()
        self._status_text = "Collecting data..."
        await self._durable_log.log_async("Data collection started")

        if not self._stop_requested:
            try:
                await self._backend.start()
            except CredentialError as e:
                await self._report_failure(f"Credential error: {e}")
            except TransportError as e:
                await self._report_failure(f"Connection error: {e}")

        if self._stop_requested:
            logger.info("Stopped while starting, collection loop not started")
            return

        self._collection_task = asyncio.create_task(self._collection_loop())
        logger.info("Collection loop started", interval=self._interval, backend=self._backend.name)

    async def stop(self) -> None:
        """Stop collecting. No new tick starts after this is called."""
        if not self._running:
            return

        self._running = False
        self._stop_requested = True
        self._stop_event.set()

        if self._collection_task:
            try:
                await asyncio.wait_for(self._collection_task, timeout=self._stop_timeout)
            except asyncio.TimeoutError:
                logger.warning("Collection tick did not finish before stop timeout")
            self._collection_task = None

        try:
            await self._backend.stop()
        except TransportError as e:
            logger.warning("Backend stop failed", error=str(e))

        self._status_text = "Monitoring stopped"
        await self._durable_log.log_async("Data collection stopped")
        logger.info("Collection loop stopped", ticks=self._tick_count)

    async def _collection_loop(self) -> None:
        """Main collection loop."""
        while self._running:
            start_time = time.monotonic()
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Collection error", error=str(e))
                await self._durable_log.log_async(f"Collection error: {e}")

            elapsed = time.monotonic() - start_time
            if elapsed > self._interval:
                logger.warning("Collection tick overran interval", elapsed=round(elapsed, 3), interval=self._interval)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=max(0, self._interval - elapsed))
            except asyncio.TimeoutError:
                pass

    async def tick(self) -> Optional[TickReport]:
        """Run one unit of work. Returns None when a stop arrived mid-tick."""
        fields, self._counters = self._sampler.sample(self._counters)
        captured_at = self._clock()
        snapshot = build(fields, self._device_id, captured_at)

        try:
            payload = serialize(snapshot)
        except SerializationError as e:
            logger.error("Error creating payload", error=str(e))
            await self._durable_log.log_async(f"Error creating JSON payload: {e}")
            outcome = DeliveryOutcome.failed(str(e))
            status_text = f"Error creating payload: {e}"
        else:
            if self._stop_requested:
                logger.info("Stop requested, skipping delivery")
                return None
            outcome = await self._deliver(payload, captured_at)
            status_text = self._describe(outcome, snapshot)

        if self._stop_requested:
            logger.info("Discarding tick result after stop", outcome=outcome.kind.value)
            return None

        self._tick_count += 1
        report = TickReport(
            tick=self._tick_count,
            snapshot=snapshot,
            outcome=outcome,
            connection_status=self._backend.status,
            display=format_display(snapshot, status_text),
        )
        self._latest = report
        self._status_text = status_text
        self._notify(report)
        return report

    async def _deliver(self, payload: bytes, captured_at: datetime) -> DeliveryOutcome:
        status = self._backend.status
        if not status.is_connected:
            await self._backend.maintain()
            status = self._backend.status

        if status.is_connected:
            try:
                await self._backend.publish(payload, self._backend.topic)
                logger.info("Metrics published", topic=self._backend.topic, size=len(payload))
                await self._durable_log.log_async("Data sent via MQTT")
                return DeliveryOutcome.sent()
            except TransportError as e:
                logger.warning("Publish failed, saving locally", error=str(e))
                await self._durable_log.log_async(f"Failed to publish via MQTT: {e}")
        else:
            logger.debug("Broker not connected, saving locally", status=status.state.value)
            await self._durable_log.log_async(f"No broker connection ({status.describe()}), saved locally")

        try:
            # Named by local capture time, like the daily log files.
            path = await self._store.save_async(payload, RecordKind.METRICS, captured_at.astimezone())
            return DeliveryOutcome.saved_locally(path)
        except PersistenceError as e:
            logger.error("Error saving locally", error=str(e))
            await self._durable_log.log_async(f"Error saving locally: {e}")
            return DeliveryOutcome.failed(str(e))

    @staticmethod
    def _describe(outcome: DeliveryOutcome, snapshot: MetricsSnapshot) -> str:
        if outcome.kind == OutcomeKind.SENT:
            return f"Data sent at: {snapshot.timestamp_iso}"
        if outcome.kind == OutcomeKind.SAVED_LOCALLY:
            return f"Data saved locally: {outcome.path.name}"
        return f"Error saving locally: {outcome.reason}"

    def _notify(self, report: TickReport) -> None:
        for observer in list(self._observers):
            try:
                observer(report)
            except Exception as e:
                logger.exception("Observer failed", error=str(e))

    async def _report_failure(self, message: str) -> None:
        logger.error("Delivery unavailable", error=message)
        await self._durable_log.log_async(message)
        self._status_text = message

    def _on_status_change(self, previous: ConnectionStatus, current: ConnectionStatus) -> None:
        # Runs on whichever thread made the transition, usually paho's network
        # thread, so the write stays synchronous.
        self._durable_log.log(f"Connection status: {current.describe()}")
