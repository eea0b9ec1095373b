from unittest.mock import patch

import pytest
import serial

from serialframe.config import SourceConfig
from serialframe.source import SerialSource, SourceDisconnected, replay_file


@pytest.fixture
def loop_source():
    source = SerialSource(SourceConfig(url="loop://", baud=9600))
    source.open()
    yield source
    source.close()


def test_reads_loopback(loop_source):
    assert loop_source.connected
    loop_source._port.write(b"\x01\x02\x03")
    received = b""
    for _ in range(10):
        received += loop_source.read_chunk()
        if len(received) == 3:
            break
    assert received == b"\x01\x02\x03"


def test_read_when_closed_returns_nothing():
    source = SerialSource(SourceConfig(url="loop://"))
    assert not source.connected
    assert source.read_chunk() == b""


def test_read_error_disconnects(loop_source):
    with patch.object(loop_source._port, "read", side_effect=serial.SerialException("device gone")):
        with pytest.raises(SourceDisconnected):
            loop_source.read_chunk()
    assert not loop_source.connected


@patch("serialframe.source.time.sleep")
def test_reconnect(sleep, loop_source):
    loop_source.close()
    assert loop_source.try_reconnect()
    assert loop_source.connected
    sleep.assert_called_once_with(1)


@patch("serialframe.source.time.sleep")
def test_reconnect_backoff(sleep):
    source = SerialSource(SourceConfig(url="loop://"))
    with patch("serialframe.source.serial.serial_for_url", side_effect=serial.SerialException("no port")):
        assert not source.try_reconnect()
        assert not source.try_reconnect()
    assert [c.args[0] for c in sleep.call_args_list] == [1, 2]


def test_replay_file(tmp_path):
    path = tmp_path / "capture.bin"
    path.write_bytes(bytes(range(10)))
    assert list(replay_file(path, chunk_size=4)) == [b"\x00\x01\x02\x03", b"\x04\x05\x06\x07", b"\x08\x09"]
