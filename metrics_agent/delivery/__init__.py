"""
Metrics Agent - Delivery Package

Broker delivery backends, connection status and credential bootstrap.
"""

from typing import Dict, Type

from .base import DeliveryBackend, DeliveryOutcome, OutcomeKind
from .credentials import Credentials, CredentialStore
from .mqtt_backend import MQTTDelivery
from .status import ConnectionState, ConnectionStatus, StatusHolder

BACKENDS: Dict[str, Type[DeliveryBackend]] = {
    "mqtt": MQTTDelivery,
}


def create_backend(config: dict) -> DeliveryBackend:
    """Instantiate the backend named by `delivery.backend`."""
    name = config.get("delivery", {}).get("backend", "mqtt")
    return BACKENDS[name](config)


__all__ = [
    "BACKENDS",
    "ConnectionState",
    "ConnectionStatus",
    "Credentials",
    "CredentialStore",
    "DeliveryBackend",
    "DeliveryOutcome",
    "MQTTDelivery",
    "OutcomeKind",
    "StatusHolder",
    "create_backend",
]
