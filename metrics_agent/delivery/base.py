"""
Metrics Agent - Base Delivery Interface

Delivery backends move serialized snapshots to a remote broker. Exactly one
backend is active per run, chosen by the `delivery.backend` config key.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from .status import ConnectionStatus, StatusHolder, StatusListener


class OutcomeKind(str, Enum):
    """Result of one delivery attempt."""
    SENT = "sent"
    SAVED_LOCALLY = "saved_locally"
    FAILED = "failed"


@dataclass(frozen=True)
class DeliveryOutcome:
    """Outcome of delivering one snapshot."""
    kind: OutcomeKind
    path: Optional[Path] = None
    reason: Optional[str] = None

    @classmethod
    def sent(cls) -> "DeliveryOutcome":
        return cls(kind=OutcomeKind.SENT)

    @classmethod
    def saved_locally(cls, path: Path) -> "DeliveryOutcome":
        return cls(kind=OutcomeKind.SAVED_LOCALLY, path=path)

    @classmethod
    def failed(cls, reason: str) -> "DeliveryOutcome":
        return cls(kind=OutcomeKind.FAILED, reason=reason)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "kind": self.kind.value,
            "path": str(self.path) if self.path else None,
            "reason": self.reason,
        }


class DeliveryBackend(ABC):
    """Base class for delivery backends."""

    def __init__(self, config: dict):
        self.config = config
        self._status = StatusHolder()

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name (e.g., 'mqtt')."""
        pass

    @property
    def status(self) -> ConnectionStatus:
        """Current connection status."""
        return self._status.current

    @property
    @abstractmethod
    def topic(self) -> str:
        """Default destination for published payloads."""
        pass

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status.add_listener(listener)

    @abstractmethod
    async def start(self) -> None:
        """Bootstrap credentials and begin connecting. Returns before the connection is up."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Tear down the connection."""
        pass

    async def maintain(self) -> None:
        """Called by the collection loop while not connected.

        Backends that give up after repeated failures restart their
        connection here.
        """
        pass

    @abstractmethod
    async def publish(self, payload: bytes, topic: Optional[str] = None) -> None:
        """Publish a payload. Only valid while connected."""
        pass
