from serialframe.bits import FieldLocation
from serialframe.framing import ModbusRtuFraming, RawFraming, SlipFraming, append_modbus_crc, slip_encode
from serialframe.session import FramingSession, frame_capture


def test_frame_id_from_location():
    stream = slip_encode(b"\x01\x10\xaa") + slip_encode(b"\x02\x20\xbb")
    records = frame_capture(stream, SlipFraming(), frame_id=FieldLocation(0, 2, True))
    assert [r.frame_id for r in records] == [0x0110, 0x0220]


def test_frame_id_falls_back_to_index():
    records = frame_capture(b"a\nbc\n", RawFraming(), frame_id=FieldLocation(0, 2))
    assert [r.frame_id for r in records] == [0, 0x6263]

    records = frame_capture(b"a\nb\n", RawFraming())
    assert [r.frame_id for r in records] == [0, 1]


def test_source_address():
    request = append_modbus_crc(bytes.fromhex("01030000000A"))
    records = frame_capture(request, ModbusRtuFraming(), source_address=FieldLocation(0, 1))
    assert records[0].source_address == 1
    assert records[0].frame.crc_valid


def test_min_length_drops_short_frames():
    session = FramingSession(RawFraming(), min_length=3, clock=lambda: 5.0)
    records = session.feed(b"ab\nabc\nabcd\n")

    assert [r.frame.data for r in records] == [b"abc", b"abcd"]
    assert session.stats.frames_out == 2
    assert session.stats.frames_dropped == 1
    assert session.stats.bytes_in == 12
    assert all(r.frame.timestamp == 5.0 for r in records)


def test_flush_counts_incomplete():
    session = FramingSession(RawFraming())
    session.feed(b"one\ntw")
    last = session.flush()
    assert last.frame.data == b"tw"
    assert last.frame.incomplete
    assert session.stats.incomplete == 1
    assert session.flush() is None


def test_reset_clears_stats():
    session = FramingSession(RawFraming())
    session.feed(b"one\n")
    session.reset()
    assert session.stats.bytes_in == 0
    assert session.feed(b"two\n")[0].frame.start_offset == 0
