import pytest

from serialframe.bits import FieldLocation, extract_bits, extract_field


def test_full_byte_big_endian():
    assert extract_bits(b"\xab", 0, 8, "big") == 0xAB


def test_full_byte_signed_big_endian():
    assert extract_bits(b"\xff", 0, 8, "big", signed=True) == -1


def test_sixteen_bit_fields():
    assert extract_bits(b"\x34\x12", 0, 16, "little") == 0x1234
    assert extract_bits(b"\x12\x34", 0, 16, "big") == 0x1234


def test_nibbles():
    assert extract_bits(b"\xab", 0, 4, "little") == 0xB
    assert extract_bits(b"\xab", 4, 4, "little") == 0xA
    assert extract_bits(b"\xab", 0, 4, "big") == 0xA
    assert extract_bits(b"\xab", 4, 4, "big") == 0xB


def test_field_spanning_bytes():
    assert extract_bits(b"\xf0\x0f", 4, 8, "little") == 0xFF
    assert extract_bits(b"\x0f\xf0", 4, 8, "big") == 0xFF


def test_single_bits():
    data = bytes([0b00000101])
    assert [extract_bits(data, i, 1, "little") for i in range(3)] == [1, 0, 1]
    assert [extract_bits(data, i, 1, "big") for i in range(5, 8)] == [1, 0, 1]


def test_sign_extension_uses_field_width():
    assert extract_bits(b"\xff\x0f", 0, 12, "little", signed=True) == -1
    assert extract_bits(b"\x00\x08", 0, 12, "little", signed=True) == -2048
    assert extract_bits(b"\xff\x07", 0, 12, "little", signed=True) == 2047


def test_64_bit_values_keep_precision():
    data = b"\x01" + b"\x00" * 6 + b"\x80"
    assert extract_bits(data, 0, 64, "little") == 0x8000000000000001
    assert extract_bits(data, 0, 64, "little", signed=True) == -(2**63) + 1
    assert extract_bits(b"\xff" * 8, 0, 64, "big") == 2**64 - 1
    assert extract_bits(b"\xff" * 8, 0, 64, "big", signed=True) == -1


def test_accepts_int_lists():
    assert extract_bits([0x12, 0x34], 0, 16, "big") == 0x1234


@pytest.mark.parametrize("bit_length", [0, 65, -1])
def test_rejects_bad_bit_length(bit_length):
    with pytest.raises(ValueError):
        extract_bits(b"\x00" * 16, 0, bit_length, "little")


def test_rejects_window_past_end():
    with pytest.raises(ValueError):
        extract_bits(b"\x00\x00", 9, 8, "little")


def test_rejects_unknown_endianness():
    with pytest.raises(ValueError):
        extract_bits(b"\x00", 0, 8, "middle")


def test_extract_field():
    data = b"\x12\x34\x56"
    assert extract_field(data, FieldLocation(0, 2, True)) == 0x1234
    assert extract_field(data, FieldLocation(0, 2, False)) == 0x3412
    assert extract_field(data, FieldLocation(-1, 1)) == 0x56


def test_extract_field_outside_frame():
    data = b"\x12\x34\x56"
    assert extract_field(data, FieldLocation(2, 2)) is None
    assert extract_field(data, FieldLocation(-4, 1)) is None


def test_field_location_width():
    with pytest.raises(ValueError):
        FieldLocation(0, 5)
