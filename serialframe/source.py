"""Byte sources feeding the framers: pyserial URLs and capture files."""

import logging
import time
from collections.abc import Iterator
from pathlib import Path

import serial

from .config import SourceConfig

logger = logging.getLogger(__name__)

# Reconnection settings
RECONNECT_DELAY_MIN = 1  # seconds
RECONNECT_DELAY_MAX = 60  # seconds

READ_TIMEOUT = 0.1  # seconds


class SourceDisconnected(Exception):
    """Raised when the serial source becomes unavailable."""


class SerialSource:
    """Reads raw byte chunks from a pyserial URL.

    Any URL pyserial understands works: a device path, ``socket://``,
    ``rfc2217://`` or ``loop://`` for testing.
    """

    def __init__(self, config: SourceConfig) -> None:
        self._config = config
        self._port: serial.SerialBase | None = None
        self._reconnect_delay = RECONNECT_DELAY_MIN

    @property
    def connected(self) -> bool:
        """Return True if the port is open."""
        return self._port is not None and self._port.is_open

    def open(self) -> None:
        """Open the port."""
        self._port = serial.serial_for_url(
            self._config.url,
            baudrate=self._config.baud,
            timeout=READ_TIMEOUT,
        )
        self._reconnect_delay = RECONNECT_DELAY_MIN
        logger.info("Opened %s at %d baud", self._config.url, self._config.baud)

    def close(self) -> None:
        """Close the port."""
        if self._port and self._port.is_open:
            self._port.close()
            logger.info("Closed %s", self._config.url)
        self._port = None

    def try_reconnect(self) -> bool:
        """
        Attempt to reopen the port.

        Returns True if reconnection successful, False otherwise.
        Uses exponential backoff between attempts.
        """
        self.close()

        logger.info("Attempting reconnection in %d seconds...", self._reconnect_delay)
        time.sleep(self._reconnect_delay)

        try:
            self.open()
            return True
        except serial.SerialException as e:
            logger.warning("Reconnection failed: %s", e)
            self._reconnect_delay = min(self._reconnect_delay * 2, RECONNECT_DELAY_MAX)
            return False

    def read_chunk(self) -> bytes:
        """
        Read whatever bytes are available.

        Returns an empty chunk if nothing arrived within the read timeout.
        Raises SourceDisconnected if the port is no longer available.
        """
        if not self.connected:
            return b""

        try:
            data = self._port.read(self._port.in_waiting or 1)
        except serial.SerialException as e:
            logger.error("Serial read error: %s", e)
            self.close()
            raise SourceDisconnected() from e

        if data:
            logger.debug("Read %d bytes from %s", len(data), self._config.url)
        return data


def replay_file(path: Path, chunk_size: int = 4096) -> Iterator[bytes]:
    """Yield a capture file in chunks, as a transport would deliver it."""
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            yield chunk
