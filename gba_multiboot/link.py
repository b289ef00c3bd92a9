# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Link layer for multiboot communication.

Defines the byte channel the session drives and a serial realization
for USB link-cable adapters.
"""

import logging
import time
from enum import Enum
from typing import Optional

import serial
import serial.tools.list_ports

logger = logging.getLogger(__name__)

# USB vendor ids of known link-cable adapters
ADAPTER_VENDOR_IDS = {
    0xCAFE: "TinyUSB link adapter",
    0x239A: "Adafruit",
}

# Shared 32-byte prefix of adapter magic packets
MAGIC_PREFIX = bytes([0xCA, 0xFE] * 8 + [0xDE, 0xAD, 0xBE, 0xEF] * 4)

# Adapter acknowledgement wait after a magic packet
MAGIC_ACK_TIMEOUT = 0.5

# Per-read wait while discarding stale input, and the most reads one drain makes
DRAIN_TIMEOUT = 0.01
DRAIN_MAX_READS = 16


class LinkError(Exception):
    """The link is not ready or the underlying channel failed."""
    pass


class LinkVoltage(Enum):
    """Link signalling level."""
    V3_3 = "3v3"
    V5 = "5v"

    @property
    def suffix(self) -> bytes:
        return b"V3V3" if self is LinkVoltage.V3_3 else b"V5V0"


def build_voltage_packet(mode: LinkVoltage) -> bytes:
    """Build the 36-byte voltage switch packet for `mode`."""
    return MAGIC_PREFIX + LinkVoltage(mode).suffix


class ByteLink:
    """
    Duplex byte channel consumed by the multiboot session.

    Subclasses implement `write` and `read`. The default `drain` is built
    on `read`; links with a driver-side buffer should also flush it. Links
    without voltage selection may keep the default no-op `set_link_voltage`.
    """

    def write(self, data: bytes) -> None:
        """
        Send bytes to the console.

        Raises:
            LinkError: If the channel is not ready
        """
        raise NotImplementedError

    def read(self, max_length: int, timeout: float) -> bytes:
        """
        Read up to `max_length` bytes.

        Returns whatever arrived within `timeout` seconds, possibly empty.
        Never blocks past the timeout.
        """
        raise NotImplementedError

    def drain(self, timeout: float = DRAIN_TIMEOUT) -> int:
        """
        Discard input left over from earlier exchanges.

        Reads until the link stays quiet for `timeout` seconds, so a late
        or partial reply cannot be taken for the answer to the next word.

        Returns:
            Number of bytes discarded
        """
        discarded = 0
        for _ in range(DRAIN_MAX_READS):
            data = self.read(64, timeout)
            if not data:
                break
            discarded += len(data)
        return discarded

    def set_link_voltage(self, mode: LinkVoltage) -> None:
        """Select the signalling level. No-op by default."""
        return None


class SerialLink(ByteLink):
    """
    Serial (USB CDC) link to a link-cable adapter.

    Can be used as a context manager:
        with SerialLink("/dev/ttyACM0") as link:
            result = run_multiboot(link, image)
    """

    def __init__(
        self,
        port: str,
        baudrate: int = 115200,
        timeout: float = 0.1,
    ):
        """
        Open a connection to the adapter.

        Args:
            port: Serial port path (e.g., "/dev/ttyACM0")
            baudrate: Baud rate (default 115200)
            timeout: Default read timeout in seconds (default 0.1)

        Raises:
            LinkError: If the port cannot be opened
        """
        try:
            self._ser = serial.Serial(port, baudrate, timeout=timeout)
        except serial.SerialException as e:
            raise LinkError(f"Cannot open {port}: {e}") from e
        self._timeout = timeout
        time.sleep(0.1)  # Let the device settle
        logger.debug("Opened %s at %d baud", port, baudrate)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def close(self):
        """Close the serial connection."""
        if self._ser and self._ser.is_open:
            self._ser.close()

    @property
    def port(self) -> str:
        """Return the serial port name."""
        return self._ser.port

    @property
    def is_open(self) -> bool:
        return bool(self._ser and self._ser.is_open)

    def write(self, data: bytes) -> None:
        if not self.is_open:
            raise LinkError("Not connected")
        try:
            self._ser.write(data)
            self._ser.flush()
        except serial.SerialException as e:
            raise LinkError(f"Write failed: {e}") from e

    def read(self, max_length: int, timeout: Optional[float] = None) -> bytes:
        if not self.is_open:
            raise LinkError("Not connected")
        if timeout is None:
            timeout = self._timeout

        try:
            # Assigning the timeout reconfigures the port
            if self._ser.timeout != timeout:
                self._ser.timeout = timeout
            return bytes(self._ser.read(max_length))
        except serial.SerialException as e:
            raise LinkError(f"Read failed: {e}") from e

    def drain(self, timeout: float = DRAIN_TIMEOUT) -> int:
        """Drop the driver's input buffer, then discard bytes still arriving."""
        if not self.is_open:
            raise LinkError("Not connected")
        try:
            self._ser.reset_input_buffer()
        except serial.SerialException as e:
            raise LinkError(f"Drain failed: {e}") from e
        return super().drain(timeout)

    def set_link_voltage(self, mode: LinkVoltage) -> None:
        """
        Switch the adapter's link voltage.

        Older adapter firmware does not acknowledge the packet; a missing
        acknowledgement is not an error.
        """
        self.write(build_voltage_packet(mode))
        if not self.read(64, MAGIC_ACK_TIMEOUT):
            logger.debug("No acknowledgement for voltage switch")
        logger.info("Voltage switched to %s", LinkVoltage(mode).value)


def find_adapter_port() -> Optional[str]:
    """
    Find the serial port of a connected link-cable adapter.

    Returns:
        Device path of the first port with a known adapter vendor id,
        or None if no adapter is connected.
    """
    for port in serial.tools.list_ports.comports():
        if port.vid in ADAPTER_VENDOR_IDS:
            logger.debug(
                "Found adapter %s on %s (vid=%04X)",
                ADAPTER_VENDOR_IDS[port.vid], port.device, port.vid,
            )
            return port.device
    return None
