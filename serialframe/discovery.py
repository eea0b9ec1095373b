"""Checksum discovery over captured frames.

Finds the checksum algorithm protecting a message type by testing the
named catalogue first and then brute-forcing CRC parameters. Candidate
parameter sets are evaluated in parallel chunks; every chunk scans the
whole sample corpus with ``batch_test``.
"""

import logging
import os
import threading
from collections import Counter, deque
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from itertools import islice

from .checksums import (
    ALGORITHMS,
    ByteRangeError,
    ChecksumAlgorithm,
    CrcParameters,
    algorithm_output_bytes,
    batch_test,
    calculate,
    resolve_byte_index,
)

logger = logging.getLogger(__name__)

COMMON_CRC16_POLYNOMIALS = (
    0x8005,  # IBM/ANSI (USB, Modbus)
    0x1021,  # CCITT (X.25, HDLC)
    0x8BB7,  # T10-DIF
    0x3D65,  # DNP
    0x1DCF,  # MCRF4XX
    0x0589,  # DECT
    0x080D,  # ARINC
    0xC867,  # CDMA2000
    0x755B,  # DARC
    0x5935,  # DDS-110
    0x0599,  # DECT-R
    0xA097,  # RIELLO
    0x29B1,  # TELEDISK
    0x6F63,  # TMS37157
    0x8408,  # KERMIT (reflected 0x1021)
    0xA001,  # MODBUS (reflected 0x8005)
)

CRC8_INIT_VALUES = (0x00, 0xFF)
CRC8_XOR_VALUES = (0x00, 0xFF)
CRC16_INIT_VALUES = (0x0000, 0xFFFF)
CRC16_XOR_VALUES = (0x0000, 0xFFFF)

CHUNK_SIZE = 64


class DiscoveryCancelled(Exception):
    """Raised when a discovery run is cancelled by its caller."""


@dataclass(frozen=True)
class AlgorithmMatch:
    algorithm: ChecksumAlgorithm
    match_count: int
    total_count: int
    match_rate: float
    endianness: str


@dataclass(frozen=True)
class CrcMatch:
    params: CrcParameters
    match_count: int
    total_count: int

    @property
    def match_rate(self) -> float:
        return self.match_count / self.total_count * 100 if self.total_count else 0.0


def read_checksum(payload: bytes, position: int, num_bytes: int, endianness: str) -> int:
    """Read a 1- or 2-byte checksum at a resolved position."""
    return int.from_bytes(payload[position : position + num_bytes], endianness)


def auto_detect(
    payloads: Sequence[bytes],
    checksum_position: int | None = None,
    checksum_bytes: int | None = None,
    calc_start_byte: int = 0,
    calc_end_byte: int | None = None,
    max_samples: int = 20,
) -> list[AlgorithmMatch]:
    """Test every named algorithm against sample frames.

    The checksum defaults to the last byte(s) of each frame and the
    calculation range to everything before it. Returns the algorithms
    with at least one match, best match rate first.
    """
    samples = list(payloads[:max_samples])
    results = []

    for algorithm, info in ALGORITHMS.items():
        width = info.output_bytes
        if checksum_bytes is not None and width != checksum_bytes:
            continue

        for endianness in ("little", "big") if width == 2 else ("big",):
            match_count = 0
            tested = 0
            for payload in samples:
                if len(payload) < width + 1:
                    continue
                try:
                    if checksum_position is not None:
                        start = resolve_byte_index(checksum_position, len(payload))
                    else:
                        start = len(payload) - width
                    end = start if calc_end_byte is None else resolve_byte_index(calc_end_byte, len(payload))
                    calc_start = resolve_byte_index(calc_start_byte, len(payload))
                except ByteRangeError:
                    continue
                if start + width > len(payload) or calc_start >= end:
                    continue

                tested += 1
                expected = calculate(algorithm, payload, calc_start, end)
                if expected == read_checksum(payload, start, width, endianness):
                    match_count += 1

            if match_count:
                results.append(
                    AlgorithmMatch(
                        algorithm=algorithm,
                        match_count=match_count,
                        total_count=tested,
                        match_rate=match_count / tested * 100,
                        endianness=endianness,
                    )
                )

    results.sort(key=lambda m: (m.match_rate, m.match_count), reverse=True)
    return results


def best_match(matches: Iterable[AlgorithmMatch], min_match_rate: float = 80.0) -> AlgorithmMatch | None:
    for match in matches:
        if match.match_rate >= min_match_rate:
            return match
    return None


def crc8_search_space() -> list[CrcParameters]:
    """All CRC-8 polynomials with the common init/xor-out values."""
    return [
        CrcParameters(8, poly, init, xor_out, reflect, reflect)
        for init in CRC8_INIT_VALUES
        for xor_out in CRC8_XOR_VALUES
        for reflect in (False, True)
        for poly in range(1, 0x100)
    ]


def crc16_search_space(full: bool = False) -> list[CrcParameters]:
    """CRC-16 candidates: the common polynomials, or all 65535 if ``full``."""
    polynomials = range(1, 0x10000) if full else COMMON_CRC16_POLYNOMIALS
    return [
        CrcParameters(16, poly, init, xor_out, reflect, reflect)
        for init in CRC16_INIT_VALUES
        for xor_out in CRC16_XOR_VALUES
        for reflect in (False, True)
        for poly in polynomials
    ]


def _evaluate_chunk(
    payloads: Sequence[bytes],
    expected: Sequence[int],
    candidates: Sequence[CrcParameters],
    min_match_rate: float,
) -> list[CrcMatch]:
    matches = []
    for params in candidates:
        result = batch_test(
            payloads,
            expected,
            params.width,
            params.polynomial,
            params.init,
            params.xor_out,
            params.reflect_in,
        )
        if result.total_count and result.match_rate >= min_match_rate:
            matches.append(CrcMatch(params, result.match_count, result.total_count))
    return matches


def _chunks(items: Sequence[CrcParameters], size: int) -> Iterable[list[CrcParameters]]:
    it = iter(items)
    while chunk := list(islice(it, size)):
        yield chunk


def search_crc(
    payloads: Sequence[bytes],
    expected: Sequence[int],
    candidates: Sequence[CrcParameters],
    min_match_rate: float = 95.0,
    executor: Executor | None = None,
    workers: int | None = None,
    cancel: threading.Event | None = None,
    on_progress: Callable[[int, int], None] | None = None,
    stop_at_first: bool = True,
) -> list[CrcMatch]:
    """Evaluate CRC candidates against a sample corpus in parallel.

    Results are returned in candidate order. With ``stop_at_first`` the
    search ends at the first chunk holding a match and only that chunk's
    matches are returned. At most two chunks per worker are queued at a
    time, so chunks after a cancellation or a match are never submitted.

    Args:
        payloads: Bytes covered by the checksum, one entry per sample.
        expected: Checksum captured with each sample.
        candidates: Parameter sets to try; all must share one width.
        min_match_rate: Percentage of samples a candidate must reproduce.
        executor: Executor to run on, e.g. a ProcessPoolExecutor; a thread
            pool is created if omitted.
        workers: Worker count of the executor.
        cancel: Checked between candidate chunks.
        on_progress: Called with (tested, total) after each chunk.

    Raises:
        DiscoveryCancelled: ``cancel`` was set before the search finished.
    """
    payloads = [bytes(p) for p in payloads]
    expected = list(expected)
    total = len(candidates)
    if not total or not payloads:
        return []

    tested = 0

    def check_cancel() -> None:
        if cancel is not None and cancel.is_set():
            raise DiscoveryCancelled(f"CRC search cancelled after {tested} of {total} candidates")

    check_cancel()

    own_executor = executor is None
    if own_executor:
        executor = ThreadPoolExecutor(max_workers=workers)

    chunks = _chunks(candidates, CHUNK_SIZE)
    pending: deque[tuple[Future, int]] = deque()

    def submit_next() -> None:
        chunk = next(chunks, None)
        if chunk is not None:
            future = executor.submit(_evaluate_chunk, payloads, expected, chunk, min_match_rate)
            pending.append((future, len(chunk)))

    matches: list[CrcMatch] = []
    try:
        for _ in range(2 * (workers or os.cpu_count() or 1)):
            submit_next()

        while pending:
            future, size = pending.popleft()
            matches.extend(future.result())
            tested += size
            if on_progress is not None:
                on_progress(tested, total)
            if stop_at_first and matches:
                break
            check_cancel()
            submit_next()
    finally:
        for future, _ in pending:
            future.cancel()
        if own_executor:
            executor.shutdown(wait=True, cancel_futures=True)

    return matches


@dataclass
class DiscoveryOptions:
    min_samples: int = 10
    min_match_rate: float = 95.0
    checksum_positions: tuple[int, ...] = (-1, -2)
    try_simple_first: bool = True
    brute_force_crc16: bool = False
    max_samples_per_frame_id: int = 100
    workers: int | None = None
    executor: Executor | None = None  # e.g. a ProcessPoolExecutor; a thread pool if None
    cancel: threading.Event | None = None
    on_progress: Callable[[str, int, int], None] | None = None


@dataclass(frozen=True)
class ChecksumCandidate:
    frame_id: int
    position: int
    length: int
    kind: str  # xor, sum8, crc8 or crc16
    endianness: str
    includes_frame_id: bool
    match_count: int
    total_count: int
    params: CrcParameters | None = None
    algorithm: ChecksumAlgorithm | None = None

    @property
    def match_rate(self) -> float:
        return self.match_count / self.total_count * 100 if self.total_count else 0.0

    @property
    def name(self) -> str:
        if self.algorithm is not None:
            return ALGORITHMS[self.algorithm].name
        return self.kind


@dataclass
class DiscoveryResult:
    frame_count: int
    unique_frame_ids: int
    candidates: dict[int, list[ChecksumCandidate]] = field(default_factory=dict)

    @property
    def frame_ids_with_checksum(self) -> int:
        return len(self.candidates)

    @property
    def frame_ids_without_checksum(self) -> int:
        return self.unique_frame_ids - len(self.candidates)

    @property
    def most_common_type(self) -> str | None:
        counts = Counter(c.name for found in self.candidates.values() for c in found)
        if not counts:
            return None
        return counts.most_common(1)[0][0]


@dataclass
class _Corpus:
    data: list[bytes]
    data_with_id: list[bytes]
    frames: list[bytes]
    positions: list[int]

    def expected(self, length: int, endianness: str) -> list[int]:
        return [read_checksum(f, p, length, endianness) for f, p in zip(self.frames, self.positions)]


def _group_by_frame_id(
    samples: Iterable[tuple[int, bytes]], min_samples: int, max_samples: int
) -> dict[int, list[bytes]]:
    groups: dict[int, list[bytes]] = {}
    for frame_id, payload in samples:
        group = groups.setdefault(frame_id, [])
        if len(group) < max_samples:
            group.append(bytes(payload))
    return {frame_id: group for frame_id, group in groups.items() if len(group) >= min_samples}


def _prepare(frame_id: int, frames: list[bytes], position: int, length: int) -> _Corpus:
    corpus = _Corpus([], [], [], [])
    id_bytes = (frame_id & 0xFFFF).to_bytes(2, "little")
    for frame in frames:
        if len(frame) < length + 1:
            continue
        try:
            start = resolve_byte_index(position, len(frame))
        except ByteRangeError:
            continue
        if start + length > len(frame) or start == 0:
            continue
        corpus.data.append(frame[:start])
        corpus.data_with_id.append(id_bytes + frame[:start])
        corpus.frames.append(frame)
        corpus.positions.append(start)
    return corpus


def _check_cancel(options: DiscoveryOptions) -> None:
    if options.cancel is not None and options.cancel.is_set():
        raise DiscoveryCancelled("checksum discovery cancelled")


def _try_simple(
    frame_id: int, corpus: _Corpus, position: int, length: int, options: DiscoveryOptions
) -> ChecksumCandidate | None:
    expected = corpus.expected(length, "little")
    for includes_frame_id, payloads in ((False, corpus.data), (True, corpus.data_with_id)):
        for algorithm, kind in ((ChecksumAlgorithm.XOR, "xor"), (ChecksumAlgorithm.SUM8, "sum8")):
            match_count = sum(
                1 for payload, value in zip(payloads, expected) if calculate(algorithm, payload) == value
            )
            if match_count / len(payloads) * 100 >= options.min_match_rate:
                return ChecksumCandidate(
                    frame_id=frame_id,
                    position=position,
                    length=length,
                    kind=kind,
                    endianness="little",
                    includes_frame_id=includes_frame_id,
                    match_count=match_count,
                    total_count=len(payloads),
                    algorithm=algorithm,
                )
    return None


def _try_named(
    frame_id: int, corpus: _Corpus, position: int, length: int, options: DiscoveryOptions
) -> ChecksumCandidate | None:
    best = None
    for algorithm, info in ALGORITHMS.items():
        if info.output_bytes != length or algorithm in (ChecksumAlgorithm.XOR, ChecksumAlgorithm.SUM8):
            continue
        for endianness in ("little", "big") if length == 2 else ("big",):
            expected = corpus.expected(length, endianness)
            match_count = sum(
                1 for payload, value in zip(corpus.data, expected) if calculate(algorithm, payload) == value
            )
            if best is None or match_count > best[0]:
                best = (match_count, algorithm, endianness)

    if best is None:
        return None
    match_count, algorithm, endianness = best
    if match_count / len(corpus.data) * 100 < options.min_match_rate:
        return None
    return ChecksumCandidate(
        frame_id=frame_id,
        position=position,
        length=length,
        kind=f"crc{algorithm_output_bytes(algorithm) * 8}",
        endianness=endianness,
        includes_frame_id=False,
        match_count=match_count,
        total_count=len(corpus.data),
        algorithm=algorithm,
    )


def _brute_force(
    frame_id: int,
    corpus: _Corpus,
    position: int,
    length: int,
    options: DiscoveryOptions,
    executor: Executor,
) -> ChecksumCandidate | None:
    if length == 1:
        candidates = crc8_search_space()
        phase = "brute-force-crc8"
        endiannesses = ("big",)
    else:
        candidates = crc16_search_space(full=options.brute_force_crc16)
        phase = "brute-force-crc16"
        endiannesses = ("little", "big")

    def progress(tested: int, total: int) -> None:
        if options.on_progress is not None:
            options.on_progress(phase, tested, total)

    for endianness in endiannesses:
        expected = corpus.expected(length, endianness)
        for includes_frame_id, payloads in ((False, corpus.data), (True, corpus.data_with_id)):
            matches = search_crc(
                payloads,
                expected,
                candidates,
                min_match_rate=options.min_match_rate,
                executor=executor,
                workers=options.workers,
                cancel=options.cancel,
                on_progress=progress,
            )
            if matches:
                match = matches[0]
                return ChecksumCandidate(
                    frame_id=frame_id,
                    position=position,
                    length=length,
                    kind=f"crc{length * 8}",
                    endianness=endianness,
                    includes_frame_id=includes_frame_id,
                    match_count=match.match_count,
                    total_count=match.total_count,
                    params=match.params,
                )
    return None


def discover_checksums(
    samples: Iterable[tuple[int, bytes]], options: DiscoveryOptions | None = None
) -> DiscoveryResult:
    """Discover checksum algorithms per frame ID.

    ``samples`` are ``(frame_id, frame_bytes)`` pairs. For each frame ID
    with enough samples and each configured checksum position (a 1-byte
    checksum at -1, a 2-byte one otherwise) the search tries XOR and Sum8,
    then the named CRCs, then brute-forces CRC parameters. Simple and
    brute-force checks are also tried with the frame ID prepended as two
    little-endian bytes.
    """
    options = options or DiscoveryOptions()
    samples = list(samples)
    groups = _group_by_frame_id(samples, options.min_samples, options.max_samples_per_frame_id)
    result = DiscoveryResult(frame_count=len(samples), unique_frame_ids=len(groups))

    executor = options.executor
    own_executor = executor is None
    if own_executor:
        executor = ThreadPoolExecutor(max_workers=options.workers)
    try:
        for frame_id, frames in groups.items():
            found = _discover_frame_id(frame_id, frames, options, executor)
            if found:
                result.candidates[frame_id] = found
    finally:
        if own_executor:
            executor.shutdown(wait=True, cancel_futures=True)

    return result


def _discover_frame_id(
    frame_id: int, frames: list[bytes], options: DiscoveryOptions, executor: Executor
) -> list[ChecksumCandidate]:
    found = []
    for position in options.checksum_positions:
        _check_cancel(options)
        length = 1 if position == -1 else 2
        corpus = _prepare(frame_id, frames, position, length)
        if not corpus.data or len(corpus.data) < options.min_samples:
            continue

        logger.debug("Frame ID 0x%X: testing %d-byte checksum at %d", frame_id, length, position)
        candidate = None
        if options.try_simple_first and length == 1:
            candidate = _try_simple(frame_id, corpus, position, length, options)
        if candidate is None:
            candidate = _try_named(frame_id, corpus, position, length, options)
        if candidate is None:
            candidate = _brute_force(frame_id, corpus, position, length, options, executor)
        if candidate is not None:
            logger.info(
                "Frame ID 0x%X: %s at %d matches %d/%d",
                frame_id,
                candidate.name,
                position,
                candidate.match_count,
                candidate.total_count,
            )
            found.append(candidate)
    return found
