"""
Metrics Agent - Display Values

Display-ready strings handed to the UI after each tick.
"""

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from .telemetry.snapshot import MetricsSnapshot

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DisplayValues:
    cpu_usage_text: str
    network_speed_text: str
    storage_text: str
    battery_text: str
    status_text: str

    def to_dict(self) -> dict:
        return asdict(self)


def format_display(snapshot: "MetricsSnapshot", status_text: str) -> DisplayValues:
    return DisplayValues(
        cpu_usage_text=f"CPU Usage: {snapshot.cpu_usage_percent:.2f}%",
        network_speed_text=(
            f"Network: Download: {snapshot.rx_kb_per_sec} KB/s"
            f" | Upload: {snapshot.tx_kb_per_sec} KB/s"
        ),
        storage_text=f"Storage: {snapshot.storage_used_mb} MB / {snapshot.storage_total_mb} MB",
        battery_text=(
            f"Battery: {snapshot.battery_level_percent:.1f}%"
            f" | Temp: {snapshot.battery_temp_celsius:.1f}°C"
        ),
        status_text=status_text,
    )


def console_observer(report) -> None:
    """Log each tick's display values; used by `metrics-agent --display`."""
    logger.info("Metrics", tick=report.tick, **report.display.to_dict())
