"""
Metrics Agent - Metrics Snapshot

Immutable per-tick snapshot and its JSON wire format.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from ..errors import SerializationError
from .sampler import MetricsFields

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
MB = 1024 * 1024


@dataclass(frozen=True)
class MetricsSnapshot:
    """One tick's telemetry."""
    device_id: str
    timestamp_millis: int
    timestamp_iso: str
    cpu_usage_percent: float
    rx_bytes: int
    tx_bytes: int
    storage_available_bytes: int
    storage_total_bytes: int
    battery_level_percent: float
    battery_temp_celsius: float

    @property
    def rx_kb_per_sec(self) -> int:
        return self.rx_bytes // 1024

    @property
    def tx_kb_per_sec(self) -> int:
        return self.tx_bytes // 1024

    @property
    def storage_total_mb(self) -> int:
        return self.storage_total_bytes // MB

    @property
    def storage_available_mb(self) -> int:
        return self.storage_available_bytes // MB

    @property
    def storage_used_mb(self) -> int:
        return (self.storage_total_bytes - self.storage_available_bytes) // MB

    def to_payload(self) -> Dict[str, Any]:
        """Wire representation. Key order is part of the format."""
        return {
            "deviceId": self.device_id,
            "timestamp": self.timestamp_millis,
            "datetimeISO": self.timestamp_iso,
            "metrics": {
                "cpuUsage": self.cpu_usage_percent,
                "rxBytes": self.rx_bytes,
                "txBytes": self.tx_bytes,
                "batteryTemp": self.battery_temp_celsius,
                "batteryLevel": self.battery_level_percent,
                "storageAvailable": self.storage_available_bytes,
                "storageTotal": self.storage_total_bytes,
            },
        }


def build(fields: MetricsFields, device_id: str, now: datetime) -> MetricsSnapshot:
    """Attach identity and capture time to sampled fields."""
    if now.tzinfo is None:
        now = now.astimezone()
    now = now.astimezone(timezone.utc)

    return MetricsSnapshot(
        device_id=device_id,
        timestamp_millis=(now - EPOCH) // timedelta(milliseconds=1),
        timestamp_iso=now.strftime(ISO_FORMAT),
        cpu_usage_percent=float(fields.cpu_usage_percent),
        rx_bytes=int(fields.rx_bytes),
        tx_bytes=int(fields.tx_bytes),
        storage_available_bytes=int(fields.storage_available_bytes),
        storage_total_bytes=int(fields.storage_total_bytes),
        battery_level_percent=float(fields.battery_level_percent),
        battery_temp_celsius=float(fields.battery_temp_celsius),
    )


def serialize(snapshot: MetricsSnapshot) -> bytes:
    """Encode a snapshot as compact JSON."""
    try:
        return json.dumps(
            snapshot.to_payload(),
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        ).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Cannot serialize snapshot: {e}") from e


def deserialize(data: bytes) -> MetricsSnapshot:
    """Decode a payload produced by serialize()."""
    try:
        payload = json.loads(data)
        metrics = payload["metrics"]
        return MetricsSnapshot(
            device_id=str(payload["deviceId"]),
            timestamp_millis=int(payload["timestamp"]),
            timestamp_iso=str(payload["datetimeISO"]),
            cpu_usage_percent=float(metrics["cpuUsage"]),
            rx_bytes=int(metrics["rxBytes"]),
            tx_bytes=int(metrics["txBytes"]),
            storage_available_bytes=int(metrics["storageAvailable"]),
            storage_total_bytes=int(metrics["storageTotal"]),
            battery_level_percent=float(metrics["batteryLevel"]),
            battery_temp_celsius=float(metrics["batteryTemp"]),
        )
    except (ValueError, KeyError, TypeError) as e:
        raise SerializationError(f"Malformed metrics payload: {e}") from e
