"""Framing session: framer plus per-frame filtering and ID extraction."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .bits import FieldLocation, extract_field
from .framing import Frame, FramingConfig, SerialFramer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FrameRecord:
    frame: Frame
    frame_id: int
    source_address: int | None = None


@dataclass
class SessionStats:
    bytes_in: int = 0
    frames_out: int = 0
    frames_dropped: int = 0
    incomplete: int = 0


@dataclass
class FramingSession:
    """Frames one capture and annotates each frame.

    Frames shorter than ``min_length`` are dropped. ``frame_id`` falls back
    to the frame index when no location is configured or the frame is too
    short to hold it.
    """

    framing: FramingConfig
    min_length: int = 1
    frame_id: FieldLocation | None = None
    source_address: FieldLocation | None = None
    clock: Callable[[], float] = time.time
    stats: SessionStats = field(default_factory=SessionStats)

    def __post_init__(self) -> None:
        self._framer = SerialFramer(self.framing, clock=self.clock)

    def feed(self, data: bytes, timestamp: float | None = None) -> list[FrameRecord]:
        self.stats.bytes_in += len(data)
        records = []
        for frame in self._framer.feed(data, timestamp):
            record = self._annotate(frame)
            if record is not None:
                records.append(record)
        return records

    def flush(self) -> FrameRecord | None:
        frame = self._framer.flush()
        if frame is None:
            return None
        self.stats.incomplete += 1
        return self._annotate(frame)

    def reset(self) -> None:
        self._framer.reset()
        self.stats = SessionStats()

    def _annotate(self, frame: Frame) -> FrameRecord | None:
        if len(frame.data) < self.min_length:
            self.stats.frames_dropped += 1
            logger.debug(
                "Dropping %d-byte frame at offset %d (min length %d)",
                len(frame.data),
                frame.start_offset,
                self.min_length,
            )
            return None

        frame_id = None
        if self.frame_id is not None:
            frame_id = extract_field(frame.data, self.frame_id)
        if frame_id is None:
            frame_id = frame.index

        source_address = None
        if self.source_address is not None:
            source_address = extract_field(frame.data, self.source_address)

        self.stats.frames_out += 1
        return FrameRecord(frame, frame_id, source_address)


def frame_capture(
    data: bytes,
    framing: FramingConfig,
    min_length: int = 1,
    frame_id: FieldLocation | None = None,
    source_address: FieldLocation | None = None,
) -> list[FrameRecord]:
    """Frame and annotate a complete capture in one call."""
    session = FramingSession(framing, min_length, frame_id, source_address)
    records = session.feed(data)
    last = session.flush()
    if last is not None:
        records.append(last)
    return records
