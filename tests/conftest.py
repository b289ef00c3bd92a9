# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""Pytest configuration: simulated console and hardware options."""

from pathlib import Path
from unittest.mock import patch

import pytest

from gba_multiboot.checksum import ChecksumAccumulator
from gba_multiboot.keystream import KeystreamGenerator, decrypt_word
from gba_multiboot.link import ByteLink
from gba_multiboot.protocol import (
    HEADER_HALFWORDS,
    HEADER_SIZE,
    header_ack,
    pack_word,
    unpack_word,
)


def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--device",
        action="store",
        default=None,
        help="Serial port of the link adapter (e.g., /dev/ttyACM0)",
    )
    parser.addoption(
        "--rom",
        action="store",
        default=None,
        help="Multiboot ROM to send in hardware tests",
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: requires a link adapter and a console")


def make_image(size: int) -> bytes:
    """Deterministic test image of `size` bytes."""
    return bytes((i * 7 + 3) & 0xFF for i in range(size))


class FakeConsole(ByteLink):
    """
    Simulated GBA BIOS on the slave end of the link.

    Every 4-byte write is one transfer; the reply is queued for the next
    read. The console decrypts and checksums the payload independently,
    so a completed transfer proves both ends agree.

    Fault injection:
        ready_after: sync transfers answered with 0 before the console appears
        palette_delay: palette polls answered with 7202h before client data
        crc_busy: CRC requests answered with 0074h before 0075h
        drop: transfer numbers (1-based) lost on the wire
        silent_in: console state in which nothing is answered
        crc_error: value XORed into the reported CRC
    """

    def __init__(
        self,
        client=0x2A,
        random_data=0x5C,
        ready_after=0,
        palette_delay=0,
        crc_busy=0,
        drop=(),
        silent_in=None,
        crc_error=0,
    ):
        self.client = client
        self.random_data = random_data
        self.ready_after = ready_after
        self.palette_delay = palette_delay
        self.crc_busy = crc_busy
        self.drop = set(drop)
        self.silent_in = silent_in
        self.crc_error = crc_error

        self.state = "wait"
        self.writes = []
        self.reads = 0
        self.voltage = None
        self.pending = b""

        self.header = bytearray()
        self.payload = bytearray()
        self.syncs = 0
        self.palette_polls = 0
        self.crc_polls = 0
        self.palette = None
        self.words_left = 0
        self.offset = HEADER_SIZE
        self.keystream = KeystreamGenerator()
        self.checksum = ChecksumAccumulator()
        self.booted = False

    def set_link_voltage(self, mode):
        self.voltage = mode

    def write(self, data: bytes) -> None:
        self.writes.append(unpack_word(data))
        if len(self.writes) in self.drop or self.state == self.silent_in:
            return
        code = self._receive(self.writes[-1])
        if code is not None:
            self.pending += pack_word((code << 16) | (self.writes[-1] & 0xFFFF))

    def read(self, max_length: int, timeout: float) -> bytes:
        self.reads += 1
        data, self.pending = self.pending[:max_length], self.pending[max_length:]
        return data

    def _receive(self, word):
        """Process one transfer and return the reply halfword."""
        state = self.state

        if state == "wait":
            if word == 0x6202:
                self.syncs += 1
                if self.syncs > self.ready_after:
                    self.state = "recognition"
                    return 0x7202
            return 0x0000

        if state == "recognition":
            if word == 0x6202:
                return 0x7202
            if word == 0x6102:
                self.state = "header"
                return 0x7202
            return 0x0000

        if state == "header":
            index = len(self.header) // 2
            self.header += (word & 0xFFFF).to_bytes(2, "little")
            if index + 1 == HEADER_HALFWORDS:
                self.state = "header_done"
            return header_ack(index)

        if state == "header_done":
            if word == 0x6200:
                self.state = "info"
                return 0x0002
            return 0x0000

        if state == "info":
            if word == 0x6202:
                self.state = "palette"
                return 0x7202
            return 0x0000

        if state == "palette":
            if word & 0xFF00 == 0x6300:
                if self.palette_polls < self.palette_delay:
                    self.palette_polls += 1
                    return 0x7202
                self.palette = word & 0xFF
                self.state = "handshake"
                return 0x7300 | self.client
            return 0x0000

        if state == "handshake":
            if word == 0x6400 | ((self.client + 0x0F) & 0xFF):
                self.state = "length"
                return 0x7300
            return 0x0000

        if state == "length":
            self.words_left = (word + 0x34) & 0xFFFF
            self.keystream.seed(0xFFFF0000 | (self.client << 8) | self.palette)
            self.state = "payload" if self.words_left else "crc_wait"
            return 0x7300 | self.random_data

        if state == "payload":
            ack = self.offset & 0xFFFF
            plain = decrypt_word(word, self.keystream.next(), self.offset)
            self.payload += plain.to_bytes(4, "little")
            self.checksum.absorb(plain)
            self.offset += 4
            self.words_left -= 1
            if not self.words_left:
                self.state = "crc_wait"
            return ack

        if state == "crc_wait":
            if word == 0x0065:
                if self.crc_polls < self.crc_busy:
                    self.crc_polls += 1
                    return 0x0074
                self.state = "crc_follows"
                return 0x0075
            return self.offset & 0xFFFF

        if state == "crc_follows":
            if word == 0x0066:
                self.state = "crc"
                return 0x0075
            return 0x0075

        if state == "crc":
            hh = (self.client + 0x0F) & 0xFF
            self.checksum.absorb(0xFFFF0000 | (self.random_data << 8) | hh)
            crc = self.checksum.value()
            self.booted = word == crc and not self.crc_error
            self.state = "done"
            return crc ^ self.crc_error

        return None

    @property
    def image(self) -> bytes:
        """Header and decrypted payload as received."""
        return bytes(self.header + self.payload)


class TimeoutLink(ByteLink):
    """Link on which every read times out."""

    def __init__(self):
        self.writes = 0
        self.reads = 0
        self.voltage = None

    def set_link_voltage(self, mode):
        self.voltage = mode

    def write(self, data: bytes) -> None:
        self.writes += 1

    def read(self, max_length: int, timeout: float) -> bytes:
        self.reads += 1
        return b""


@pytest.fixture
def no_sleep():
    """Skip protocol delays."""
    with patch("gba_multiboot.session.time.sleep") as mock_sleep:
        yield mock_sleep


@pytest.fixture
def console():
    return FakeConsole()


@pytest.fixture(scope="session")
def device_port(request):
    """Get the adapter port from command line."""
    return request.config.getoption("--device")


@pytest.fixture(scope="session")
def rom_path(request):
    """Get the ROM to send in hardware tests."""
    path = request.config.getoption("--rom")
    return Path(path) if path else None
