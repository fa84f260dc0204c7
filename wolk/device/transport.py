"""Publish/subscribe transport used by the device protocols.

The protocols only need three things from a transport: the device key that
scopes every topic, ``publish`` and ``subscribe``. ``MqttTransport`` adapts
an already connected paho-mqtt client; creating and connecting that client
(broker address, TLS, credentials) is left to the application.

Handlers registered with ``subscribe`` are plain callables
``handler(topic, payload)`` invoked on the event loop thread, one message at
a time in arrival order. Long-running work must be moved to a task by the
handler itself.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Protocol

import paho.mqtt.client as mqtt
from loguru import logger

from wolk.device.errors import PublishError, SubscribeError

# Callback type: receives topic and raw payload, returns nothing.
MessageHandler = Callable[[str, bytes], Any]


class Transport(Protocol):
    """Minimal publish/subscribe surface."""

    @property
    def device_key(self) -> str: ...

    async def publish(self, topic: str, payload: bytes) -> None: ...

    async def subscribe(self, topic: str, handler: MessageHandler) -> None: ...


def _log_payload(direction: str, topic: str, payload: bytes) -> None:
    if len(payload) > 1000:
        logger.debug("[Transport] {} {!r} -> {} bytes", direction, topic, len(payload))
    else:
        logger.debug("[Transport] {} {!r} -> {!r}", direction, topic, payload)


class MqttTransport:
    """Transport over a connected ``paho.mqtt.client.Client``.

    Parameters
    ----------
    client:
        Connected paho client with its network loop running
        (``loop_start()``).
    device_key:
        Device identity appended to every topic.
    qos:
        QoS level for publishes and subscriptions.
    """

    def __init__(self, client: mqtt.Client, device_key: str, qos: int = 0) -> None:
        if not device_key:
            raise ValueError("device_key must not be empty")
        self._client = client
        self._device_key = device_key
        self.qos = qos

    @property
    def device_key(self) -> str:
        return self._device_key

    async def publish(self, topic: str, payload: bytes) -> None:
        """Publish one message. Raises ``PublishError`` if paho refuses it."""
        _log_payload("publish", topic, payload)
        info = self._client.publish(topic, payload, qos=self.qos, retain=False)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(topic, mqtt.error_string(info.rc))

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        """Subscribe *handler* to *topic*.

        paho delivers messages on its network thread; they are handed to the
        running event loop with ``call_soon_threadsafe``.
        """
        loop = asyncio.get_running_loop()

        def _deliver(msg_topic: str, payload: bytes) -> None:
            _log_payload("received", msg_topic, payload)
            try:
                handler(msg_topic, payload)
            except Exception as exc:
                logger.error("[Transport] handler for {!r} raised: {!r}", msg_topic, exc)

        def _on_message(client: Any, userdata: Any, message: mqtt.MQTTMessage) -> None:
            loop.call_soon_threadsafe(_deliver, message.topic, bytes(message.payload))

        self._client.message_callback_add(topic, _on_message)
        rc, _mid = self._client.subscribe(topic, qos=self.qos)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            self._client.message_callback_remove(topic)
            raise SubscribeError(topic, mqtt.error_string(rc))
        logger.debug("[Transport] subscribed to {!r}", topic)
