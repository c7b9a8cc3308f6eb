"""
Metrics Agent - Errors

Exception taxonomy shared by the sampling, delivery and storage layers.
"""


class MetricsAgentError(Exception):
    """Base class for all agent errors."""


class ConfigError(MetricsAgentError):
    """Configuration file is unreadable or holds invalid values."""


class SamplingUnavailable(MetricsAgentError):
    """A system probe could not be read; the field is defaulted."""


class SerializationError(MetricsAgentError):
    """A snapshot could not be encoded or a payload could not be decoded."""


class CredentialError(MetricsAgentError):
    """Broker credentials are missing or malformed. Blocks connection attempts."""


class TransportError(MetricsAgentError):
    """Broker connection failed."""


class NotConnectedError(TransportError):
    """Publish was requested while the connection is not established."""


class PublishError(TransportError):
    """A single publish did not complete."""


class PersistenceError(MetricsAgentError):
    """A local write failed."""
