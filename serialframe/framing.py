"""Stream framing for raw serial captures.

Three framing disciplines are supported:

- Raw delimiter: frames end with a configurable byte sequence, e.g. CR LF.
  A maximum length forces a split on streams that never deliver one.
- SLIP (RFC 1055): frames end with END (0xC0); END and ESC (0xDB) inside
  a frame are escaped as ESC ESC_END (0xDB 0xDC) and ESC ESC_ESC
  (0xDB 0xDD).
- Modbus RTU: [address][function][data...][crc_low][crc_high]. Frames are
  delimited on the wire by a silence of 3.5 characters, which is not
  visible in a buffered capture, so boundaries are recovered by searching
  for a length whose trailing CRC-16/MODBUS matches. Two adjacent frames
  can be merged when their concatenation happens to match at an
  intermediate length.

  The search runs on every feed and drops the leading byte whenever the
  buffered bytes hold no matching CRC yet. Feeding a frame in pieces
  smaller than the frame therefore loses it; byte-at-a-time input never
  yields a frame. Feed whole reads (e.g. everything ``in_waiting`` after
  the inter-frame gap) or complete captures.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from .checksums import crc16_modbus

logger = logging.getLogger(__name__)

SLIP_END = 0xC0
SLIP_ESC = 0xDB
SLIP_ESC_END = 0xDC
SLIP_ESC_ESC = 0xDD

MODBUS_MIN_FRAME = 4  # address + function + crc (2)
MODBUS_MAX_FRAME = 256
MODBUS_EXTRA_ITERATIONS = 1000


@dataclass(frozen=True)
class Frame:
    data: bytes
    timestamp: float
    index: int
    start_offset: int
    incomplete: bool = False
    crc_valid: bool | None = None


@dataclass
class _Pending:
    """Frame found by a strategy, before the facade numbers and stamps it."""

    data: bytes
    start_offset: int
    crc_valid: bool | None = None


@dataclass(frozen=True)
class RawFraming:
    delimiter: bytes = b"\n"
    max_length: int = 1024
    include_delimiter: bool = False

    def __post_init__(self) -> None:
        if not self.delimiter:
            raise ValueError("delimiter must not be empty")
        if self.max_length < 1:
            raise ValueError(f"max_length must be at least 1, got {self.max_length}")
        object.__setattr__(self, "delimiter", bytes(self.delimiter))

    def make_framer(self) -> "RawDelimiterFramer":
        return RawDelimiterFramer(self)


@dataclass(frozen=True)
class SlipFraming:
    def make_framer(self) -> "SlipFramer":
        return SlipFramer()


@dataclass(frozen=True)
class ModbusRtuFraming:
    device_address: int | None = None
    validate_crc: bool = True

    def __post_init__(self) -> None:
        if self.device_address is not None and not 1 <= self.device_address <= 247:
            raise ValueError(f"device address must be 1..247, got {self.device_address}")

    def make_framer(self) -> "ModbusRtuFramer":
        return ModbusRtuFramer(self)


FramingConfig = RawFraming | SlipFraming | ModbusRtuFraming


class RawDelimiterFramer:
    """Splits a stream on a delimiter sequence."""

    def __init__(self, config: RawFraming) -> None:
        self._delimiter = config.delimiter
        self._max_length = config.max_length
        self._include_delimiter = config.include_delimiter
        self._buffer = bytearray()
        self._start = 0

    def feed(self, data: bytes, base_offset: int) -> list[_Pending]:
        frames = []
        delim_len = len(self._delimiter)

        for i, byte in enumerate(data):
            self._buffer.append(byte)

            if self._buffer.endswith(self._delimiter):
                end = len(self._buffer) if self._include_delimiter else len(self._buffer) - delim_len
                if end > 0:
                    frames.append(_Pending(bytes(self._buffer[:end]), self._start))
                self._buffer.clear()
                self._start = base_offset + i + 1

            if len(self._buffer) >= self._max_length:
                frames.append(_Pending(bytes(self._buffer), self._start))
                self._buffer.clear()
                self._start = base_offset + i + 1

        return frames

    def flush(self) -> _Pending | None:
        if not self._buffer:
            return None
        frame = _Pending(bytes(self._buffer), self._start)
        self._buffer.clear()
        return frame

    def reset(self) -> None:
        self._buffer.clear()
        self._start = 0


class SlipFramer:
    """RFC 1055 decoder, tolerant of protocol errors."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._escaped = False
        self._start = 0

    def feed(self, data: bytes, base_offset: int) -> list[_Pending]:
        frames = []

        for i, byte in enumerate(data):
            if byte == SLIP_END:
                if self._buffer:
                    frames.append(_Pending(bytes(self._buffer), self._start))
                    self._buffer.clear()
                self._start = base_offset + i + 1
                self._escaped = False
            elif byte == SLIP_ESC:
                self._escaped = True
            elif byte == SLIP_ESC_END and self._escaped:
                self._buffer.append(SLIP_END)
                self._escaped = False
            elif byte == SLIP_ESC_ESC and self._escaped:
                self._buffer.append(SLIP_ESC)
                self._escaped = False
            else:
                if self._escaped:
                    # Non-conformant escape, keep both bytes
                    self._buffer.append(SLIP_ESC)
                    self._escaped = False
                self._buffer.append(byte)

        return frames

    def flush(self) -> _Pending | None:
        self._escaped = False
        if not self._buffer:
            return None
        frame = _Pending(bytes(self._buffer), self._start)
        self._buffer.clear()
        return frame

    def reset(self) -> None:
        self._buffer.clear()
        self._escaped = False
        self._start = 0


class ModbusRtuFramer:
    """Recovers Modbus RTU frame boundaries from CRC matches."""

    def __init__(self, config: ModbusRtuFraming) -> None:
        self._device_address = config.device_address
        self._validate_crc = config.validate_crc
        self._buffer = bytearray()
        self._start = 0

    def feed(self, data: bytes, base_offset: int) -> list[_Pending]:
        self._buffer.extend(data)
        frames = []

        iterations = 0
        max_iterations = len(self._buffer) + MODBUS_EXTRA_ITERATIONS

        while len(self._buffer) >= MODBUS_MIN_FRAME and iterations < max_iterations:
            iterations += 1
            frame = self._try_extract()
            if frame is not None:
                frames.append(frame)
                self._start += len(frame.data)
            else:
                logger.debug("Modbus resync: dropping 0x%02x at offset %d", self._buffer[0], self._start)
                del self._buffer[:1]
                self._start += 1

        if iterations >= max_iterations:
            logger.warning(
                "Modbus RTU framer hit iteration limit, discarding %d buffered bytes",
                len(self._buffer),
            )
            self._start += len(self._buffer)
            self._buffer.clear()

        return frames

    def _try_extract(self) -> _Pending | None:
        buf = self._buffer
        if self._device_address is not None and buf[0] != self._device_address:
            return None

        if not self._validate_crc:
            frame = bytes(buf[:MODBUS_MIN_FRAME])
            del buf[:MODBUS_MIN_FRAME]
            return _Pending(frame, self._start, validate_modbus_crc(frame))

        # Running CRC over buf[:length - 2] for each candidate length
        crc = crc16_modbus(buf[: MODBUS_MIN_FRAME - 2])
        for length in range(MODBUS_MIN_FRAME, min(MODBUS_MAX_FRAME, len(buf)) + 1):
            if crc == buf[length - 2] | (buf[length - 1] << 8):
                frame = bytes(buf[:length])
                del buf[:length]
                return _Pending(frame, self._start, True)
            crc = crc16_modbus(buf[length - 2 : length - 1], crc)

        return None

    def flush(self) -> _Pending | None:
        frame = None
        if len(self._buffer) >= MODBUS_MIN_FRAME:
            data = bytes(self._buffer)
            crc_valid = validate_modbus_crc(data)
            if crc_valid or not self._validate_crc:
                frame = _Pending(data, self._start, crc_valid)
        if frame is None and self._buffer:
            logger.debug("Modbus flush: dropping %d bytes without a valid CRC", len(self._buffer))
        self._start += len(self._buffer)
        self._buffer.clear()
        return frame

    def reset(self) -> None:
        self._buffer.clear()
        self._start = 0


class SerialFramer:
    """Stateful framer for one byte stream.

    Numbers frames, tracks the cumulative stream offset and stamps each
    frame with its capture time. Not safe for concurrent use.
    """

    def __init__(self, config: FramingConfig, clock: Callable[[], float] = time.time) -> None:
        self._config = config
        self._clock = clock
        self._framer = config.make_framer()
        self._frame_count = 0
        self._byte_offset = 0

    @property
    def config(self) -> FramingConfig:
        return self._config

    @property
    def bytes_fed(self) -> int:
        """Total number of bytes fed since construction or the last reset."""
        return self._byte_offset

    def feed(self, data: bytes, timestamp: float | None = None) -> list[Frame]:
        """Feed a chunk of bytes, return the frames it completes."""
        pending = self._framer.feed(data, self._byte_offset)
        self._byte_offset += len(data)
        if not pending:
            return []
        if timestamp is None:
            timestamp = self._clock()
        return [self._emit(p, timestamp, incomplete=False) for p in pending]

    def flush(self) -> Frame | None:
        """Emit remaining buffered bytes as an incomplete frame.

        Call when the stream ends.
        """
        pending = self._framer.flush()
        if pending is None:
            return None
        return self._emit(pending, self._clock(), incomplete=True)

    def reset(self) -> None:
        """Discard buffered bytes and restart numbering and offsets."""
        self._framer.reset()
        self._frame_count = 0
        self._byte_offset = 0

    def _emit(self, pending: _Pending, timestamp: float, incomplete: bool) -> Frame:
        frame = Frame(
            data=pending.data,
            timestamp=timestamp,
            index=self._frame_count,
            start_offset=pending.start_offset,
            incomplete=incomplete,
            crc_valid=pending.crc_valid,
        )
        self._frame_count += 1
        return frame


def frame_bytes(data: bytes, config: FramingConfig) -> list[Frame]:
    """Frame a complete capture in one call (feed and flush)."""
    framer = SerialFramer(config)
    frames = framer.feed(data)
    last = framer.flush()
    if last is not None:
        frames.append(last)
    return frames


def slip_encode(data: bytes) -> bytes:
    """Encode a payload as a SLIP frame.

    The frame starts with END as well, to flush any line noise at the
    receiver.
    """
    encoded = bytearray([SLIP_END])
    for byte in data:
        if byte == SLIP_END:
            encoded += bytes([SLIP_ESC, SLIP_ESC_END])
        elif byte == SLIP_ESC:
            encoded += bytes([SLIP_ESC, SLIP_ESC_ESC])
        else:
            encoded.append(byte)
    encoded.append(SLIP_END)
    return bytes(encoded)


def append_modbus_crc(data: bytes) -> bytes:
    """Append the CRC-16/MODBUS of ``data``, low byte first."""
    return bytes(data) + crc16_modbus(data).to_bytes(2, "little")


def validate_modbus_crc(frame: bytes) -> bool:
    """Return True if the trailing two bytes are the frame's Modbus CRC."""
    if len(frame) < MODBUS_MIN_FRAME:
        return False
    return crc16_modbus(frame[:-2]) == frame[-2] | (frame[-1] << 8)


def parse_delimiter_hex(text: str) -> bytes:
    """Parse a hex delimiter such as "0D0A" or "0x0d 0a"."""
    cleaned = "".join(text.split())
    if cleaned[:2].lower() == "0x":
        cleaned = cleaned[2:]
    if not cleaned or len(cleaned) % 2:
        raise ValueError(f"hex delimiter must have an even, non-zero number of digits: {text!r}")
    try:
        return bytes.fromhex(cleaned)
    except ValueError:
        raise ValueError(f"invalid hex delimiter: {text!r}") from None
