"""Main entry point for the serialframe command."""

import argparse
import logging
import signal
import sys
import threading
import time
from concurrent.futures import ProcessPoolExecutor
from pathlib import Path

import serial

from .config import Config, FramingSettings, framing_from_dict, load_config
from .discovery import DiscoveryCancelled, DiscoveryOptions, discover_checksums
from .publisher import FramePublisher
from .session import FrameRecord, FramingSession, frame_capture
from .source import SerialSource, SourceDisconnected, replay_file

logger = logging.getLogger(__name__)

# Initial connection retry settings
INITIAL_RETRY_DELAY = 5  # seconds


def main(argv: list[str] | None = None) -> None:
    """Entry point for serialframe command."""
    parser = argparse.ArgumentParser(description="Frame and analyse raw serial captures")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run_parser = commands.add_parser("run", help="Frame a live serial source")
    run_parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to configuration file (default: config.yaml)",
    )

    frame_parser = commands.add_parser("frame", help="Frame a capture file")
    frame_parser.add_argument("input", type=Path, help="Raw capture file")
    frame_parser.add_argument("-c", "--config", type=Path, help="Take framing settings from this file")
    frame_parser.add_argument("--mode", choices=["raw", "slip", "modbus_rtu"], help="Framing mode")
    frame_parser.add_argument("--delimiter", default="0A", help="Raw mode delimiter as hex (default: 0A)")
    frame_parser.add_argument("--max-length", type=int, default=1024, help="Raw mode forced split length")
    frame_parser.add_argument("--include-delimiter", action="store_true", help="Keep delimiters in frames")
    frame_parser.add_argument("--device-address", type=int, help="Modbus RTU address filter")
    frame_parser.add_argument("--no-crc", action="store_true", help="Modbus RTU: do not require valid CRCs")
    frame_parser.add_argument("--min-length", type=int, default=1, help="Drop shorter frames")

    discover_parser = commands.add_parser("discover", help="Discover checksums in a frame corpus")
    discover_parser.add_argument("corpus", type=Path, help="One hex frame per line, optional 'ID:' prefix")
    discover_parser.add_argument(
        "--positions", type=int, nargs="+", default=[-1, -2], help="Checksum positions to try (default: -1 -2)"
    )
    discover_parser.add_argument("--min-samples", type=int, default=10, help="Minimum frames per ID")
    discover_parser.add_argument("--min-match-rate", type=float, default=95.0, help="Percentage to report")
    discover_parser.add_argument("--full-crc16", action="store_true", help="Brute-force all CRC-16 polynomials")
    discover_parser.add_argument("--workers", type=int, help="Worker processes for CRC search")

    args = parser.parse_args(argv)

    # Setup logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "run":
            config = load_config(args.config)
            if not args.verbose:
                logging.getLogger().setLevel(config.log_level)
            run(config)
        elif args.command == "frame":
            sys.exit(frame_file(args))
        else:
            sys.exit(discover_file(args))
    except FileNotFoundError as e:
        logger.error("File not found: %s", e.filename)
        sys.exit(1)
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)


def format_record(record: FrameRecord) -> str:
    """One line of CLI output per frame."""
    frame = record.frame
    flags = "I" if frame.incomplete else "-"
    if frame.crc_valid is not None:
        flags += "C" if frame.crc_valid else "!"
    return f"{frame.start_offset:>10} #{frame.index:<6} id={record.frame_id:<6} {flags:<2} {frame.data.hex(' ')}"


def _settings_from_args(args: argparse.Namespace) -> FramingSettings:
    if args.mode is None and args.config is not None:
        return load_config(args.config).framing
    framing = framing_from_dict(
        {
            "mode": args.mode or "raw",
            "delimiter": args.delimiter,
            "max_length": args.max_length,
            "include_delimiter": args.include_delimiter,
            "device_address": args.device_address,
            "validate_crc": not args.no_crc,
        }
    )
    return FramingSettings(framing=framing, min_length=args.min_length)


def frame_file(args: argparse.Namespace) -> int:
    """Frame a capture file and print the frames."""
    settings = _settings_from_args(args)
    data = b"".join(replay_file(args.input))
    records = frame_capture(
        data,
        settings.framing,
        min_length=settings.min_length,
        frame_id=settings.frame_id,
        source_address=settings.source_address,
    )
    for record in records:
        print(format_record(record))
    logger.info("%d frames from %d bytes", len(records), len(data))
    return 0


def parse_corpus_line(line: str) -> tuple[int | None, bytes] | None:
    """Parse ``[ID:]HEX`` into (frame_id, bytes); None for blank/comment lines."""
    line = line.strip()
    if not line or line.startswith("#"):
        return None
    frame_id = None
    if ":" in line:
        id_text, line = line.split(":", 1)
        frame_id = int(id_text.strip(), 16)
    return frame_id, bytes.fromhex("".join(line.split()))


def discover_file(args: argparse.Namespace) -> int:
    """Run checksum discovery over a corpus file and print candidates."""
    samples = []
    with open(args.corpus) as f:
        for lineno, line in enumerate(f, 1):
            try:
                parsed = parse_corpus_line(line)
            except ValueError as e:
                raise ValueError(f"{args.corpus}:{lineno}: {e}") from e
            if parsed is not None:
                frame_id, payload = parsed
                samples.append((0 if frame_id is None else frame_id, payload))

    cancel = threading.Event()
    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: cancel.set())

    # Workers ignore SIGINT; the parent cancels between chunks instead
    executor = ProcessPoolExecutor(
        max_workers=args.workers, initializer=signal.signal, initargs=(signal.SIGINT, signal.SIG_IGN)
    )
    options = DiscoveryOptions(
        min_samples=args.min_samples,
        min_match_rate=args.min_match_rate,
        checksum_positions=tuple(args.positions),
        brute_force_crc16=args.full_crc16,
        workers=args.workers,
        executor=executor,
        cancel=cancel,
        on_progress=lambda phase, tested, total: logger.debug("%s: %d/%d", phase, tested, total),
    )
    try:
        result = discover_checksums(samples, options)
    except DiscoveryCancelled:
        logger.warning("Discovery cancelled")
        return 130
    finally:
        executor.shutdown(wait=True, cancel_futures=True)
        signal.signal(signal.SIGINT, previous_handler)

    for frame_id, candidates in result.candidates.items():
        for c in candidates:
            detail = ""
            if c.params is not None:
                p = c.params
                detail = f" poly=0x{p.polynomial:X} init=0x{p.init:X} xor_out=0x{p.xor_out:X} reflect={p.reflect_in}"
            print(
                f"0x{frame_id:X} pos={c.position} len={c.length} {c.name}{detail} "
                f"endian={c.endianness} with_id={c.includes_frame_id} "
                f"{c.match_count}/{c.total_count} ({c.match_rate:.1f}%)"
            )
    logger.info(
        "%d frames, %d IDs: %d with checksum, %d without (most common: %s)",
        result.frame_count,
        result.unique_frame_ids,
        result.frame_ids_with_checksum,
        result.frame_ids_without_checksum,
        result.most_common_type,
    )
    return 0


def run(config: Config) -> None:
    """Frame a live source with loaded configuration."""
    if config.source is None:
        raise ValueError("missing 'source' section")

    source = SerialSource(config.source)
    session = FramingSession(
        config.framing.framing,
        min_length=config.framing.min_length,
        frame_id=config.framing.frame_id,
        source_address=config.framing.source_address,
    )
    publisher = FramePublisher(config.mqtt) if config.mqtt else None

    # Graceful shutdown
    shutdown_requested = False

    def handle_signal(signum, frame):
        nonlocal shutdown_requested
        logger.info("Shutdown requested")
        shutdown_requested = True

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    def emit(record: FrameRecord) -> None:
        logger.info("%s", format_record(record))
        if publisher is not None:
            publisher.publish(record)

    try:
        # Initial connection with retry
        while not shutdown_requested:
            try:
                source.open()
                break
            except serial.SerialException as e:
                logger.error("Failed to open %s: %s (retrying in %ds)", config.source.url, e, INITIAL_RETRY_DELAY)
                time.sleep(INITIAL_RETRY_DELAY)

        if shutdown_requested:
            return

        if publisher is not None:
            publisher.connect()

        logger.info("Framing %s with %s", config.source.url, config.framing.framing)

        while not shutdown_requested:
            if not source.connected:
                if source.try_reconnect():
                    logger.info("Source reconnected")
                continue

            try:
                chunk = source.read_chunk()
            except SourceDisconnected:
                logger.warning("Source lost, will attempt reconnection")
                # A partial frame cannot be completed across the drop
                last = session.flush()
                if last is not None:
                    emit(last)
                continue
            for record in session.feed(chunk):
                emit(record)

        last = session.flush()
        if last is not None:
            emit(last)

    except Exception as e:
        logger.error("Unexpected error: %s", e)
        sys.exit(1)
    finally:
        if publisher is not None:
            publisher.disconnect()
        source.close()
        stats = session.stats
        logger.info(
            "Stopped: %d bytes in, %d frames out, %d dropped",
            stats.bytes_in,
            stats.frames_out,
            stats.frames_dropped,
        )


if __name__ == "__main__":
    main()
