"""MQTT publisher for framed records.

Frames go to ``{root_topic}/{session_id}/frames`` as one JSON document each.
``{root_topic}/{session_id}/status`` holds a retained ``online``/``offline``
marker, with ``offline`` registered as the last will so it is also set
when the process dies.
"""

import json
import logging

import paho.mqtt.client as mqtt

from .config import MqttConfig
from .session import FrameRecord

logger = logging.getLogger(__name__)

RECONNECT_BACKOFF = (1, 120)  # seconds, min and max

STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"


def record_to_json(record: FrameRecord) -> str:
    """Serialise a frame record as published on the frames topic."""
    frame = record.frame
    return json.dumps(
        {
            "index": frame.index,
            "offset": frame.start_offset,
            "timestamp": frame.timestamp,
            "incomplete": frame.incomplete,
            "crc_valid": frame.crc_valid,
            "frame_id": record.frame_id,
            "source_address": record.source_address,
            "data": frame.data.hex(),
        }
    )


class FramePublisher:
    """Streams frame records to a broker for downstream tools.

    Records offered while the broker is unreachable are counted as skipped
    rather than queued; the framing loop never blocks on the network.
    """

    def __init__(self, config: MqttConfig) -> None:
        self._config = config
        self.published = 0
        self.skipped = 0

        base = f"{config.root_topic}/{config.session_id}"
        self.frames_topic = f"{base}/frames"
        self.status_topic = f"{base}/status"

        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2, client_id=f"serialframe-{config.session_id}"
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.will_set(self.status_topic, STATUS_OFFLINE, qos=1, retain=True)
        self._client.reconnect_delay_set(*RECONNECT_BACKOFF)
        if config.username:
            self._client.username_pw_set(config.username, config.password)

    @property
    def connected(self) -> bool:
        return self._client.is_connected()

    def connect(self) -> None:
        """Start the network loop; the broker connection completes in the background."""
        logger.info("Connecting to MQTT broker %s:%d", self._config.broker, self._config.port)
        self._client.connect_async(self._config.broker, self._config.port)
        self._client.loop_start()

    def disconnect(self) -> None:
        """Mark the session offline, then close the connection."""
        if self.connected:
            self._client.publish(self.status_topic, STATUS_OFFLINE, qos=1, retain=True).wait_for_publish(1.0)
        self._client.disconnect()
        self._client.loop_stop()
        logger.info("MQTT publisher stopped: %d frames published, %d skipped", self.published, self.skipped)

    def publish(self, record: FrameRecord) -> bool:
        """Publish one frame record; returns False if it was not handed to the client."""
        if not self.connected:
            self.skipped += 1
            logger.debug("Broker unavailable, skipping frame %d", record.frame.index)
            return False

        info = self._client.publish(self.frames_topic, record_to_json(record), qos=self._config.qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self.skipped += 1
            logger.warning("Failed to publish frame %d: %s", record.frame.index, mqtt.error_string(info.rc))
            return False

        self.published += 1
        return True

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            logger.error("MQTT broker refused connection: %s", reason_code)
            return
        logger.info("Connected to MQTT broker, publishing to %s", self.frames_topic)
        client.publish(self.status_topic, STATUS_ONLINE, qos=1, retain=True)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            logger.warning("Lost MQTT broker connection: %s, reconnecting", reason_code)
        else:
            logger.info("Disconnected from MQTT broker")
