import json
from unittest.mock import MagicMock, patch

import paho.mqtt.client as mqtt
import pytest

from serialframe.config import MqttConfig
from serialframe.framing import Frame
from serialframe.publisher import FramePublisher, record_to_json
from serialframe.session import FrameRecord

RECORD = FrameRecord(Frame(b"\x01\x02", 12.5, 3, 40, crc_valid=True), frame_id=0x0102, source_address=1)


@pytest.fixture
def client():
    with patch("serialframe.publisher.mqtt.Client") as client_cls:
        instance = client_cls.return_value
        instance.is_connected.return_value = True
        instance.publish.return_value.rc = mqtt.MQTT_ERR_SUCCESS
        yield instance


def reason(failure: bool) -> MagicMock:
    code = MagicMock()
    code.is_failure = failure
    return code


def test_record_to_json():
    assert json.loads(record_to_json(RECORD)) == {
        "index": 3,
        "offset": 40,
        "timestamp": 12.5,
        "incomplete": False,
        "crc_valid": True,
        "frame_id": 0x0102,
        "source_address": 1,
        "data": "0102",
    }


def test_client_setup(client):
    publisher = FramePublisher(MqttConfig(broker="localhost", username="user", password="secret", session_id="bench"))

    assert publisher.frames_topic == "serialframe/bench/frames"
    assert publisher.status_topic == "serialframe/bench/status"
    client.username_pw_set.assert_called_once_with("user", "secret")
    client.will_set.assert_called_once_with("serialframe/bench/status", "offline", qos=1, retain=True)


def test_publish(client):
    publisher = FramePublisher(MqttConfig(broker="localhost", session_id="bench", qos=1))

    assert publisher.publish(RECORD)
    client.publish.assert_called_once_with("serialframe/bench/frames", record_to_json(RECORD), qos=1)
    assert publisher.published == 1


def test_publish_skipped_while_disconnected(client):
    client.is_connected.return_value = False
    publisher = FramePublisher(MqttConfig(broker="localhost"))

    assert not publisher.publish(RECORD)
    client.publish.assert_not_called()
    assert publisher.skipped == 1


def test_publish_failure_is_logged(client, caplog):
    client.publish.return_value.rc = mqtt.MQTT_ERR_NO_CONN
    publisher = FramePublisher(MqttConfig(broker="localhost"))

    assert not publisher.publish(RECORD)
    assert "Failed to publish frame 3" in caplog.text
    assert publisher.skipped == 1
    assert publisher.published == 0


def test_online_status_on_connect(client):
    publisher = FramePublisher(MqttConfig(broker="localhost", session_id="bench"))

    publisher._on_connect(client, None, None, reason(False), None)
    client.publish.assert_called_once_with("serialframe/bench/status", "online", qos=1, retain=True)

    client.publish.reset_mock()
    publisher._on_connect(client, None, None, reason(True), None)
    client.publish.assert_not_called()


def test_connect_and_disconnect(client):
    publisher = FramePublisher(MqttConfig(broker="broker.local", port=1884))

    publisher.connect()
    client.connect_async.assert_called_once_with("broker.local", 1884)
    client.loop_start.assert_called_once()

    publisher.disconnect()
    client.publish.assert_called_once_with("serialframe/capture/status", "offline", qos=1, retain=True)
    client.disconnect.assert_called_once()
    client.loop_stop.assert_called_once()
