"""
Metrics Agent - Telemetry Package

Sampling, snapshot model and the periodic collection loop.
"""

from .collector import CollectionLoop, TickReport
from .sampler import MetricsFields, MetricsSampler, NetworkCounters
from .snapshot import MetricsSnapshot, build, deserialize, serialize

__all__ = [
    "CollectionLoop",
    "MetricsFields",
    "MetricsSampler",
    "MetricsSnapshot",
    "NetworkCounters",
    "TickReport",
    "build",
    "deserialize",
    "serialize",
]
