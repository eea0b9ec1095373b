"""Checksum and CRC calculation, validation and batch testing.

Named algorithms reproduce the published catalogue constants bit for bit.
Polynomials are written in normal (MSB-first) notation; reflection follows
the Rocksoft model: input bytes are reflected, ``init`` is not, and the
final register is reflected before ``xor_out`` is applied.

Byte ranges accept negative indices counted from the end of the data,
so ``-1`` is the last byte. Range ends are exclusive.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache


class ChecksumError(ValueError):
    """Raised when a checksum function is given invalid input."""


class UnknownAlgorithmError(ChecksumError):
    """Raised for an algorithm identifier that is not in the catalogue."""


class ByteRangeError(ChecksumError):
    """Raised when a byte index or range falls outside the data."""


class ChecksumAlgorithm(str, Enum):
    XOR = "xor"
    SUM8 = "sum8"
    CRC8 = "crc8"
    CRC8_SAE_J1850 = "crc8_sae_j1850"
    CRC8_AUTOSAR = "crc8_autosar"
    CRC8_MAXIM = "crc8_maxim"
    CRC8_CDMA2000 = "crc8_cdma2000"
    CRC8_DVB_S2 = "crc8_dvb_s2"
    CRC8_NISSAN = "crc8_nissan"
    CRC16_MODBUS = "crc16_modbus"
    CRC16_CCITT = "crc16_ccitt"


@dataclass(frozen=True)
class AlgorithmInfo:
    name: str
    description: str
    output_bytes: int


ALGORITHMS: dict[ChecksumAlgorithm, AlgorithmInfo] = {
    ChecksumAlgorithm.XOR: AlgorithmInfo("XOR", "XOR of all bytes (8-bit)", 1),
    ChecksumAlgorithm.SUM8: AlgorithmInfo(
        "Sum (8-bit)", "Simple sum of bytes modulo 256", 1
    ),
    ChecksumAlgorithm.CRC8: AlgorithmInfo(
        "CRC-8", "CRC-8 polynomial 0x07 (ITU/SMBUS)", 1
    ),
    ChecksumAlgorithm.CRC8_SAE_J1850: AlgorithmInfo(
        "CRC-8 SAE-J1850", "CRC-8 polynomial 0x1D (automotive OBD-II)", 1
    ),
    ChecksumAlgorithm.CRC8_AUTOSAR: AlgorithmInfo(
        "CRC-8 AUTOSAR", "CRC-8 polynomial 0x2F (AUTOSAR E2E)", 1
    ),
    ChecksumAlgorithm.CRC8_MAXIM: AlgorithmInfo(
        "CRC-8 Maxim", "CRC-8 polynomial 0x31 (1-Wire devices)", 1
    ),
    ChecksumAlgorithm.CRC8_CDMA2000: AlgorithmInfo(
        "CRC-8 CDMA2000", "CRC-8 polynomial 0x9B (telecom)", 1
    ),
    ChecksumAlgorithm.CRC8_DVB_S2: AlgorithmInfo(
        "CRC-8 DVB-S2", "CRC-8 polynomial 0xD5 (satellite)", 1
    ),
    ChecksumAlgorithm.CRC8_NISSAN: AlgorithmInfo(
        "CRC-8 Nissan", "CRC-8 polynomial 0x85 (Nissan CAN)", 1
    ),
    ChecksumAlgorithm.CRC16_MODBUS: AlgorithmInfo(
        "CRC-16 Modbus", "CRC-16 polynomial 0xA001 (Modbus)", 2
    ),
    ChecksumAlgorithm.CRC16_CCITT: AlgorithmInfo(
        "CRC-16 CCITT", "CRC-16 polynomial 0x1021 (CCITT)", 2
    ),
}

_REFLECT8 = bytes(int(f"{i:08b}"[::-1], 2) for i in range(256))


def _reflect(value: int, width: int) -> int:
    return int(f"{value:0{width}b}"[::-1], 2)


@lru_cache(maxsize=4096)
def _crc_table(width: int, polynomial: int) -> tuple[int, ...]:
    """MSB-first lookup table for one polynomial."""
    top = 1 << (width - 1)
    mask = (1 << width) - 1
    table = []
    for byte in range(256):
        crc = byte << (width - 8)
        for _ in range(8):
            if crc & top:
                crc = ((crc << 1) ^ polynomial) & mask
            else:
                crc = (crc << 1) & mask
        table.append(crc)
    return tuple(table)


@dataclass(frozen=True)
class CrcParameters:
    """Parameter set of an 8- or 16-bit CRC."""

    width: int
    polynomial: int
    init: int = 0
    xor_out: int = 0
    reflect_in: bool = False
    reflect_out: bool = False

    def __post_init__(self) -> None:
        if self.width not in (8, 16):
            raise ChecksumError(f"unsupported CRC width {self.width}, expected 8 or 16")
        mask = (1 << self.width) - 1
        if not 0 < self.polynomial <= mask:
            raise ChecksumError(
                f"polynomial 0x{self.polynomial:X} out of range for CRC-{self.width}"
            )
        for name in ("init", "xor_out"):
            value = getattr(self, name)
            if not 0 <= value <= mask:
                raise ChecksumError(f"{name} 0x{value:X} out of range for CRC-{self.width}")

    def compute(self, data: bytes | bytearray | Sequence[int]) -> int:
        """Return the CRC of ``data``."""
        table = _crc_table(self.width, self.polynomial)
        mask = (1 << self.width) - 1
        shift = self.width - 8
        data = bytes(data)
        if self.reflect_in:
            data = data.translate(_REFLECT8)

        crc = self.init
        for byte in data:
            crc = ((crc << 8) & mask) ^ table[((crc >> shift) ^ byte) & 0xFF]

        if self.reflect_out:
            crc = _reflect(crc, self.width)
        return crc ^ self.xor_out


NAMED_CRCS: dict[ChecksumAlgorithm, CrcParameters] = {
    ChecksumAlgorithm.CRC8: CrcParameters(8, 0x07),
    ChecksumAlgorithm.CRC8_SAE_J1850: CrcParameters(8, 0x1D, 0xFF, 0xFF),
    ChecksumAlgorithm.CRC8_AUTOSAR: CrcParameters(8, 0x2F, 0xFF, 0xFF),
    ChecksumAlgorithm.CRC8_MAXIM: CrcParameters(8, 0x31, 0x00, 0x00, True, True),
    ChecksumAlgorithm.CRC8_CDMA2000: CrcParameters(8, 0x9B, 0xFF, 0x00),
    ChecksumAlgorithm.CRC8_DVB_S2: CrcParameters(8, 0xD5),
    ChecksumAlgorithm.CRC8_NISSAN: CrcParameters(8, 0x85),
    ChecksumAlgorithm.CRC16_MODBUS: CrcParameters(16, 0x8005, 0xFFFF, 0x0000, True, True),
    ChecksumAlgorithm.CRC16_CCITT: CrcParameters(16, 0x1021, 0xFFFF, 0x0000),
}


def _modbus_table() -> tuple[int, ...]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ 0xA001
            else:
                crc >>= 1
        table.append(crc)
    return tuple(table)


_MODBUS_TABLE = _modbus_table()


def crc16_modbus(data: bytes | bytearray | Sequence[int], crc: int = 0xFFFF) -> int:
    """Calculate CRC-16/MODBUS (reflected polynomial 0xA001, seed 0xFFFF).

    ``crc`` continues a running calculation, so feeding data in pieces
    gives the same result as one call over the whole sequence.
    """
    for byte in data:
        crc = (crc >> 8) ^ _MODBUS_TABLE[(crc ^ byte) & 0xFF]
    return crc


def xor8(data: bytes | bytearray | Sequence[int]) -> int:
    """XOR of all bytes."""
    result = 0
    for byte in data:
        result ^= byte
    return result


def sum8(data: bytes | bytearray | Sequence[int]) -> int:
    """Sum of all bytes modulo 256."""
    return sum(data) & 0xFF


def crc8_parameterised(
    data: bytes | bytearray | Sequence[int],
    polynomial: int,
    init: int,
    xor_out: int,
    reflect: bool,
) -> int:
    """CRC-8 with arbitrary parameters; ``reflect`` applies to input and output."""
    return CrcParameters(8, polynomial, init, xor_out, reflect, reflect).compute(data)


def crc16_parameterised(
    data: bytes | bytearray | Sequence[int],
    polynomial: int,
    init: int,
    xor_out: int,
    reflect_in: bool,
    reflect_out: bool,
) -> int:
    """CRC-16 with arbitrary parameters."""
    return CrcParameters(16, polynomial, init, xor_out, reflect_in, reflect_out).compute(data)


def resolve_byte_index(index: int, length: int) -> int:
    """Resolve a possibly negative byte index against a data length.

    Raises ByteRangeError if the resolved index lies outside [0, length].
    """
    resolved = index if index >= 0 else length + index
    if not 0 <= resolved <= length:
        raise ByteRangeError(f"byte index {index} out of range for length {length}")
    return resolved


def coerce_algorithm(
    algorithm: "ChecksumAlgorithm | CrcParameters | str",
) -> "ChecksumAlgorithm | CrcParameters":
    """Turn an algorithm identifier into a catalogue entry or CRC parameter set."""
    if isinstance(algorithm, CrcParameters):
        return algorithm
    try:
        return ChecksumAlgorithm(algorithm)
    except ValueError:
        raise UnknownAlgorithmError(f"unknown checksum algorithm: {algorithm!r}") from None


def algorithm_output_bytes(algorithm: "ChecksumAlgorithm | CrcParameters | str") -> int:
    """Number of bytes a checksum of this algorithm occupies."""
    algorithm = coerce_algorithm(algorithm)
    if isinstance(algorithm, CrcParameters):
        return algorithm.width // 8
    return ALGORITHMS[algorithm].output_bytes


def _compute(algorithm: "ChecksumAlgorithm | CrcParameters", data: bytes) -> int:
    if isinstance(algorithm, CrcParameters):
        return algorithm.compute(data)
    if algorithm is ChecksumAlgorithm.XOR:
        return xor8(data)
    if algorithm is ChecksumAlgorithm.SUM8:
        return sum8(data)
    if algorithm is ChecksumAlgorithm.CRC16_MODBUS:
        return crc16_modbus(data)
    return NAMED_CRCS[algorithm].compute(data)


def calculate(
    algorithm: "ChecksumAlgorithm | CrcParameters | str",
    data: bytes | bytearray | Sequence[int],
    calc_start_byte: int = 0,
    calc_end_byte: int | None = None,
) -> int:
    """Calculate a checksum over ``data[calc_start_byte:calc_end_byte]``.

    ``calc_end_byte`` is exclusive; None means the end of the data.

    Raises:
        UnknownAlgorithmError: ``algorithm`` is not a known identifier.
        ByteRangeError: a bound is out of range or the range is empty.
    """
    algorithm = coerce_algorithm(algorithm)
    length = len(data)
    start = resolve_byte_index(calc_start_byte, length)
    end = length if calc_end_byte is None else resolve_byte_index(calc_end_byte, length)
    if start >= end:
        raise ByteRangeError(
            f"empty calculation range [{calc_start_byte}, {calc_end_byte}) "
            f"for length {length}"
        )
    return _compute(algorithm, bytes(data[start:end]))


@dataclass(frozen=True)
class ValidationResult:
    extracted: int
    calculated: int
    valid: bool


def validate(
    algorithm: "ChecksumAlgorithm | CrcParameters | str",
    data: bytes | bytearray | Sequence[int],
    start_byte: int,
    byte_length: int,
    big_endian: bool,
    calc_start_byte: int,
    calc_end_byte: int | None,
) -> ValidationResult:
    """Compare the checksum stored in ``data`` with a freshly calculated one.

    Args:
        algorithm: Catalogue identifier or CRC parameter set.
        data: Complete frame bytes.
        start_byte: Offset of the stored checksum (may be negative).
        byte_length: Width of the stored checksum, 1 or 2 bytes.
        big_endian: Byte order of a 2-byte stored checksum.
        calc_start_byte: First byte covered by the checksum.
        calc_end_byte: Exclusive end of the covered range.
    """
    if byte_length not in (1, 2):
        raise ChecksumError(f"checksum byte length must be 1 or 2, got {byte_length}")
    algorithm = coerce_algorithm(algorithm)

    length = len(data)
    start = resolve_byte_index(start_byte, length)
    if start + byte_length > length:
        raise ByteRangeError(
            f"{byte_length}-byte checksum at {start_byte} overruns length {length}"
        )

    extracted = int.from_bytes(
        bytes(data[start : start + byte_length]), "big" if big_endian else "little"
    )
    calculated = calculate(algorithm, data, calc_start_byte, calc_end_byte)
    return ValidationResult(extracted, calculated, extracted == calculated)


@dataclass(frozen=True)
class BatchResult:
    match_count: int
    total_count: int

    @property
    def match_rate(self) -> float:
        """Percentage of matching samples, 0 for an empty corpus."""
        if not self.total_count:
            return 0.0
        return self.match_count / self.total_count * 100


def batch_test(
    payloads: Sequence[bytes | bytearray | Sequence[int]],
    expected_checksums: Sequence[int],
    checksum_bits: int,
    polynomial: int,
    init: int,
    xor_out: int,
    reflect: bool,
) -> BatchResult:
    """Count how many payloads a candidate CRC reproduces the checksum for.

    Meant to be called once per candidate parameter set over the whole
    sample corpus.
    """
    if checksum_bits not in (8, 16):
        raise ChecksumError(f"checksum bits must be 8 or 16, got {checksum_bits}")
    if len(payloads) != len(expected_checksums):
        raise ChecksumError(
            f"{len(payloads)} payloads but {len(expected_checksums)} expected checksums"
        )

    params = CrcParameters(checksum_bits, polynomial, init, xor_out, reflect, reflect)
    match_count = 0
    for payload, expected in zip(payloads, expected_checksums):
        if params.compute(payload) == expected:
            match_count += 1
    return BatchResult(match_count, len(payloads))
