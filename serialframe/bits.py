"""Bit field extraction from frame payloads."""

from collections.abc import Sequence
from dataclasses import dataclass

from .checksums import ByteRangeError, resolve_byte_index

MAX_BIT_LENGTH = 64


def extract_bits(
    data: bytes | bytearray | Sequence[int],
    start_bit: int,
    bit_length: int,
    endianness: str = "little",
    signed: bool = False,
) -> int:
    """Extract a ``bit_length``-wide field starting at ``start_bit``.

    Little-endian fields number bits LSB-first within each byte and are
    reassembled least significant bit first. Big-endian fields number bits
    MSB-first and are reassembled most significant bit first. Bytes are
    always taken in array order.

    Raises ValueError for a bit length outside 1..64, an unknown endianness
    or a window that runs past the end of ``data``.
    """
    if not 1 <= bit_length <= MAX_BIT_LENGTH:
        raise ValueError(f"bit length must be 1..{MAX_BIT_LENGTH}, got {bit_length}")
    if start_bit < 0:
        raise ValueError(f"start bit must not be negative, got {start_bit}")
    if endianness not in ("little", "big"):
        raise ValueError(f"endianness must be 'little' or 'big', got {endianness!r}")

    total_bits = len(data) * 8
    if start_bit + bit_length > total_bits:
        raise ValueError(
            f"bits [{start_bit}, {start_bit + bit_length}) exceed {total_bits}-bit payload"
        )

    mask = (1 << bit_length) - 1
    whole = int.from_bytes(bytes(data), endianness)
    if endianness == "little":
        value = (whole >> start_bit) & mask
    else:
        value = (whole >> (total_bits - start_bit - bit_length)) & mask

    if signed and value & (1 << (bit_length - 1)):
        value -= 1 << bit_length
    return value


@dataclass(frozen=True)
class FieldLocation:
    """Whole-byte integer field inside a frame, such as a frame ID."""

    start_byte: int = 0
    num_bytes: int = 1
    big_endian: bool = True

    def __post_init__(self) -> None:
        if not 1 <= self.num_bytes <= 4:
            raise ValueError(f"field width must be 1..4 bytes, got {self.num_bytes}")


def extract_field(data: bytes | bytearray | Sequence[int], location: FieldLocation) -> int | None:
    """Read the field at ``location``, or None if the frame is too short for it."""
    try:
        start = resolve_byte_index(location.start_byte, len(data))
    except ByteRangeError:
        return None
    end = start + location.num_bytes
    if end > len(data):
        return None
    return int.from_bytes(bytes(data[start:end]), "big" if location.big_endian else "little")
