"""
Metrics Agent - Storage Package

Local persistence for undelivered snapshots and the operator log.
"""

from .local import DurableLog, LocalStore, RecordKind

__all__ = ["DurableLog", "LocalStore", "RecordKind"]
