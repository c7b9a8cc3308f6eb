"""
Device Metrics Agent

Samples device telemetry on a fixed interval and delivers each snapshot to
an MQTT broker, falling back to local storage when the broker is unreachable.
"""

__version__ = "1.0.0"
