"""
Metrics Agent - MQTT Delivery

Publishes snapshots to the IoT broker over MQTT with TLS client-certificate
authentication. paho runs its network loop on a background thread; its
callbacks drive the connection status.

After max_reconnect_attempts consecutive failures the network loop is
stopped and the status left at error or connection_lost. The collection loop
calls maintain() while disconnected, which starts a fresh client once
retry_interval seconds have passed. Credential failures are never retried.
"""

import asyncio
import time
from pathlib import Path
from typing import Callable, Optional

import paho.mqtt.client as mqtt
import structlog

from ..config import resolve_device_id
from ..errors import CredentialError, NotConnectedError, PublishError, TransportError
from .base import DeliveryBackend
from .credentials import Credentials, CredentialStore
from .status import ConnectionState

logger = structlog.get_logger(__name__)

RETRYABLE_STATES = (ConnectionState.ERROR, ConnectionState.CONNECTION_LOST)


def _default_client_factory(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
    )


class MQTTDelivery(DeliveryBackend):
    """MQTT delivery backend."""

    def __init__(
        self,
        config: dict,
        credential_store: Optional[CredentialStore] = None,
        client_factory: Optional[Callable[[str], mqtt.Client]] = None,
    ):
        super().__init__(config)
        self.mqtt_config = config.get("mqtt", {})
        self._host = self.mqtt_config.get("host", "localhost")
        self._port = self.mqtt_config.get("port", 8883)
        self._client_id = self.mqtt_config.get("client_id") or f"metrics-agent-{resolve_device_id(config)}"
        self._topic = self.mqtt_config.get("topic", "device/metrics/data")
        self._qos = self.mqtt_config.get("qos", 1)
        self._keepalive = self.mqtt_config.get("keepalive", 60)
        self._publish_timeout = self.mqtt_config.get("publish_timeout", 10)
        self._max_attempts = self.mqtt_config.get("max_reconnect_attempts", 5)
        self._reconnect_delay = (
            self.mqtt_config.get("reconnect_min_delay", 1),
            self.mqtt_config.get("reconnect_max_delay", 30),
        )
        self._retry_interval = self.mqtt_config.get("retry_interval", 30)

        data_dir = Path(config.get("storage", {}).get("data_dir", "./data"))
        self._credential_store = credential_store or CredentialStore(config, data_dir)
        self._client_factory = client_factory or _default_client_factory

        self._client: Optional[mqtt.Client] = None
        self._credentials: Optional[Credentials] = None
        self._closing = False
        self._failed_attempts = 0
        self._gave_up_at: Optional[float] = None

    @property
    def name(self) -> str:
        return "mqtt"

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def qos(self) -> int:
        return self._qos

    @property
    def credential_store(self) -> CredentialStore:
        return self._credential_store

    async def start(self) -> None:
        """Bootstrap credentials, then start an asynchronous connect."""
        if self._client is not None:
            return

        self._closing = False
        loop = asyncio.get_running_loop()
        try:
            credentials = await loop.run_in_executor(
                None, self._credential_store.ensure_credentials
            )
        except CredentialError as e:
            self._status.transition(ConnectionState.ERROR, str(e))
            raise

        self._credentials = credentials
        if self._closing:
            logger.info("Stopped during credential bootstrap, not connecting")
            return

        self.connect(credentials)

    def connect(self, credentials: Credentials) -> None:
        """Begin connecting. Status transitions arrive through paho callbacks."""
        if not self._status.transition(ConnectionState.CONNECTING):
            raise TransportError(f"Cannot connect while {self.status.state.value}")

        client = self._client_factory(self._client_id)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_connect_fail = self._on_connect_fail

        self._failed_attempts = 0
        self._gave_up_at = None
        try:
            client.tls_set_context(credentials.ssl_context)
            client.reconnect_delay_set(*self._reconnect_delay)
            client.connect_async(self._host, self._port, keepalive=self._keepalive)
            rc = client.loop_start()
            if rc != mqtt.MQTT_ERR_SUCCESS:
                raise TransportError(f"Network loop failed to start: {mqtt.error_string(rc)}")
        except (OSError, ValueError, TransportError) as e:
            self._status.transition(ConnectionState.ERROR, str(e))
            self._gave_up_at = time.monotonic()
            logger.error("Failed to start MQTT connection", error=str(e))
            raise TransportError(str(e)) from e

        self._client = client
        logger.info("MQTT connection starting", host=self._host, port=self._port, client_id=self._client_id)

    async def maintain(self) -> None:
        """Start a new connection once retry_interval has passed since giving up."""
        if self._closing or self._credentials is None:
            return
        if self.status.state not in RETRYABLE_STATES:
            return
        if self._gave_up_at is not None and time.monotonic() - self._gave_up_at < self._retry_interval:
            return

        client, self._client = self._client, None
        if client is not None:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._discard, client)
        if self._closing:
            return

        logger.info("Retrying MQTT connection", previous=self.status.describe())
        try:
            self.connect(self._credentials)
        except TransportError as e:
            logger.warning("MQTT retry failed", error=str(e))

    async def stop(self) -> None:
        """Disconnect from the broker."""
        self._closing = True
        client, self._client = self._client, None
        if client is None:
            return

        self._status.transition(ConnectionState.DISCONNECTED)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._teardown, client)
        logger.info("MQTT delivery stopped")

    @staticmethod
    def _teardown(client: mqtt.Client) -> None:
        client.disconnect()
        client.loop_stop()

    @classmethod
    def _discard(cls, client: mqtt.Client) -> None:
        # Detached first so the old client cannot touch the status.
        client.on_connect = None
        client.on_disconnect = None
        client.on_connect_fail = None
        cls._teardown(client)

    async def publish(self, payload: bytes, topic: Optional[str] = None) -> None:
        """Publish a payload and wait up to publish_timeout for it to complete."""
        topic = topic or self._topic
        client = self._client
        status = self.status
        if client is None or not status.is_connected:
            raise NotConnectedError(f"Cannot publish while {status.state.value}")

        info = client.publish(topic, payload, qos=self._qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(f"Publish failed: {mqtt.error_string(info.rc)}")

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, info.wait_for_publish, self._publish_timeout)
        except (RuntimeError, ValueError) as e:
            raise PublishError(str(e)) from e

        if not info.is_published():
            raise PublishError(f"Publish not completed within {self._publish_timeout}s")

        logger.debug("Payload published", topic=topic, qos=self._qos, size=len(payload))

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        """Handle CONNACK."""
        if reason_code.is_failure:
            self._give_up(client, ConnectionState.ERROR, f"Connection refused: {reason_code}")
            return

        self._failed_attempts = 0
        self._status.transition(ConnectionState.CONNECTED)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        """Handle a dropped connection. paho reconnects on its own."""
        if self._closing:
            return

        state = self.status.state
        if state == ConnectionState.CONNECTED:
            logger.warning("MQTT disconnected unexpectedly", reason=str(reason_code))
            self._status.transition(ConnectionState.RECONNECTING, str(reason_code))
        elif state in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
            self._record_failure(client, f"Disconnected: {reason_code}")

    def _on_connect_fail(self, client, userdata):
        """Handle a connect attempt that never reached CONNACK."""
        if self._closing:
            return
        self._record_failure(client, "Broker unreachable")

    def _record_failure(self, client, reason: str) -> None:
        self._failed_attempts += 1
        logger.warning(
            "MQTT connect attempt failed",
            attempt=self._failed_attempts,
            max_attempts=self._max_attempts,
            reason=reason,
        )
        if self._failed_attempts < self._max_attempts:
            return

        message = f"{reason} after {self._failed_attempts} attempts"
        if self.status.state == ConnectionState.RECONNECTING:
            self._give_up(client, ConnectionState.CONNECTION_LOST, message)
        else:
            self._give_up(client, ConnectionState.ERROR, message)

    def _give_up(self, client, state: ConnectionState, message: str) -> None:
        # Runs on the paho network thread; loop_stop() does not join itself.
        self._gave_up_at = time.monotonic()
        self._status.transition(state, message)
        client.loop_stop()
        logger.warning("MQTT connection abandoned", state=state.value, retry_in=self._retry_interval)
