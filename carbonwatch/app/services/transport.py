from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from ..config import Settings
from ..errors import TransportConnectionError
from .gateway import SUBSCRIPTIONS, IngestionGateway


logger = logging.getLogger("carbonwatch.transport")


def _default_client_factory(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        client_id=client_id,
        protocol=mqtt.MQTTv311,
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
    )


class MqttTransport:
    """MQTT subscription feeding the ingestion gateway.

    paho runs its network loop on a background thread and reconnects with a
    bounded exponential delay. The gateway is paused while disconnected and
    resumed on every successful (re)connect.
    """

    def __init__(
        self,
        gateway: IngestionGateway,
        *,
        host: str,
        port: int = 1883,
        client_id: str = "carbonwatch-ingest",
        username: str | None = None,
        password: str | None = None,
        qos: int = 1,
        keepalive_s: int = 60,
        reconnect_min_delay_s: int = 1,
        reconnect_max_delay_s: int = 60,
        client_factory: Callable[[str], Any] = _default_client_factory,
    ) -> None:
        self.gateway = gateway
        self.host = host
        self.port = port
        self.client_id = client_id
        self.username = username
        self.password = password
        self.qos = qos
        self.keepalive_s = keepalive_s
        self.reconnect_min_delay_s = reconnect_min_delay_s
        self.reconnect_max_delay_s = reconnect_max_delay_s
        self._client_factory = client_factory

        self._client: Optional[Any] = None
        self._connected = threading.Event()

    @classmethod
    def from_settings(cls, gateway: IngestionGateway, settings: Settings) -> "MqttTransport":
        return cls(
            gateway,
            host=settings.mqtt_host,
            port=settings.mqtt_port,
            client_id=settings.mqtt_client_id,
            username=settings.mqtt_username,
            password=settings.mqtt_password,
            qos=settings.mqtt_qos,
            keepalive_s=settings.mqtt_keepalive_s,
            reconnect_min_delay_s=settings.mqtt_reconnect_min_delay_s,
            reconnect_max_delay_s=settings.mqtt_reconnect_max_delay_s,
        )

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    def start(self) -> None:
        """Connect and start the network loop.

        On an unreachable broker the loop still starts (paho keeps retrying in
        the background) and TransportConnectionError is raised so the caller
        can report the degraded state.
        """

        client = self._client_factory(self.client_id)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.reconnect_delay_set(min_delay=self.reconnect_min_delay_s, max_delay=self.reconnect_max_delay_s)
        if self.username:
            client.username_pw_set(self.username, self.password)
        self._client = client

        # Nothing is accepted until the broker acknowledges the session.
        self.gateway.pause("transport_connecting")

        logger.info("mqtt_connecting", extra={"fields": {"host": self.host, "port": self.port}})
        try:
            client.connect(self.host, self.port, keepalive=self.keepalive_s)
        except (OSError, ValueError) as exc:
            client.connect_async(self.host, self.port, keepalive=self.keepalive_s)
            client.loop_start()
            raise TransportConnectionError(f"MQTT broker {self.host}:{self.port} unreachable: {exc}") from exc

        client.loop_start()

    def stop(self) -> None:
        client = self._client
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()
            self._client = None
            self._connected.clear()
        logger.info("mqtt_stopped")

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code != 0:
            self._connected.clear()
            logger.error("mqtt_connect_refused", extra={"fields": {"reason_code": str(reason_code)}})
            return

        self._connected.set()
        for pattern in SUBSCRIPTIONS:
            client.subscribe(pattern, qos=self.qos)
        logger.info(
            "mqtt_connected",
            extra={"fields": {"host": self.host, "subscriptions": list(SUBSCRIPTIONS), "qos": self.qos}},
        )
        self.gateway.resume()

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None) -> None:
        self._connected.clear()
        self.gateway.pause("transport_disconnected")
        logger.warning("mqtt_disconnected", extra={"fields": {"reason_code": str(reason_code)}})

    def _on_message(self, client, userdata, msg) -> None:
        try:
            self.gateway.handle_message(msg.topic, msg.payload)
        except Exception:
            # Never let one message kill paho's network thread.
            logger.exception("mqtt_message_handler_failed", extra={"fields": {"topic": msg.topic}})
