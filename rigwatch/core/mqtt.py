"""
MQTT client for telemetry export
"""
import json
import logging
from typing import Callable, Optional

import paho.mqtt.client as mqtt_lib

from rigwatch.core.config import AppConfig, app_config
from rigwatch.core.events import Event, EventBus

logger = logging.getLogger(__name__)


class MQTTClient:
    """Publishes poller events to <topic_prefix>/<device_id>/<event>"""

    def __init__(self, config: AppConfig = app_config):
        self.config = config
        self.client: Optional[mqtt_lib.Client] = None
        self.connected = False
        self.enabled = False
        self._unsubscribe: Optional[Callable[[], None]] = None

    async def start(self, events: Optional[EventBus] = None):
        """Connect if enabled and start forwarding events"""
        self.enabled = self.config.get("mqtt.enabled", False)

        if not self.enabled:
            logger.info("📡 MQTT disabled in config")
            return

        broker = self.config.get("mqtt.broker", "localhost")
        port = self.config.get("mqtt.port", 1883)

        self.client = mqtt_lib.Client(mqtt_lib.CallbackAPIVersion.VERSION2)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect

        try:
            self.client.connect(broker, port, 60)
            self.client.loop_start()
            logger.info(f"📡 MQTT client connecting to {broker}:{port}")
        except OSError as e:
            logger.error(f"❌ Failed to connect to MQTT broker: {e}")
            self.enabled = False
            return

        if events is not None:
            self._unsubscribe = events.subscribe(self.handle_event)

    async def stop(self):
        """Stop MQTT client"""
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self.client:
            self.client.loop_stop()
            self.client.disconnect()

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        """MQTT connection callback"""
        if reason_code == 0:
            self.connected = True
            logger.info("📡 MQTT connected")
        else:
            logger.error(f"❌ MQTT connection failed: {reason_code}")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        """MQTT disconnection callback"""
        self.connected = False
        logger.info("📡 MQTT disconnected")

    def handle_event(self, event: Event):
        """Event bus subscriber"""
        self.publish(f"{event.device_id}/{event.name}", event.to_dict())

    def publish(self, topic: str, payload: dict):
        """Publish message to MQTT topic"""
        if not self.enabled or not self.connected:
            return

        topic_prefix = self.config.get("mqtt.topic_prefix", "rigwatch")
        full_topic = f"{topic_prefix}/{topic}"

        info = self.client.publish(full_topic, json.dumps(payload, default=str))
        if info.rc != mqtt_lib.MQTT_ERR_SUCCESS:
            logger.warning(f"⚠️ MQTT publish to {full_topic} failed: {mqtt_lib.error_string(info.rc)}")


mqtt_client = MQTTClient()
