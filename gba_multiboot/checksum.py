# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Multiboot CRC-16 implementation.

This is the running checksum the GBA BIOS computes over the received
payload. It is a reflected CRC with polynomial 0xC37B and initial value
0xC387, fed one 32-bit word at a time, least significant bit first.
"""

CRC_POLY = 0xC37B
CRC_INIT = 0xC387

# Pre-computed lookup table (one step per byte)
_CRC16_TABLE = []


def _init_table():
    """Initialize the CRC-16 lookup table."""
    global _CRC16_TABLE
    _CRC16_TABLE = []
    for i in range(256):
        crc = i
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ CRC_POLY
            else:
                crc >>= 1
        _CRC16_TABLE.append(crc)


_init_table()


class ChecksumAccumulator:
    """
    Running CRC over transferred words.

    Words are absorbed in transmission order. Feeding a word LSB first
    is the same as feeding its four little-endian bytes in order, so the
    byte table can be used.
    """

    def __init__(self):
        self._crc = CRC_INIT

    def reset(self) -> None:
        self._crc = CRC_INIT

    def absorb(self, word: int) -> None:
        """
        Absorb one 32-bit word.

        Raises:
            ValueError: If word does not fit in 32 bits
        """
        if not 0 <= word <= 0xFFFFFFFF:
            raise ValueError(f"Word out of range: {word:#x}")

        crc = self._crc
        for _ in range(4):
            crc = _CRC16_TABLE[(crc ^ word) & 0xFF] ^ (crc >> 8)
            word >>= 8
        self._crc = crc

    def value(self) -> int:
        """Return the current 16-bit checksum."""
        return self._crc


def multiboot_crc(words) -> int:
    """
    Compute the multiboot CRC of a sequence of 32-bit words.

    Args:
        words: Iterable of 32-bit words in transfer order

    Returns:
        16-bit CRC value
    """
    acc = ChecksumAccumulator()
    for word in words:
        acc.absorb(word)
    return acc.value()
