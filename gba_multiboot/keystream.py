# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Payload keystream and word cipher.

The BIOS decrypts every payload word with a 32-bit linear-congruential
keystream seeded from the session seed. Both ends step the generator once
per word, so a single skipped or repeated step desynchronizes the rest of
the transfer.
"""

KEYSTREAM_MULT = 0x6F646573  # "sedo"
KEYSTREAM_INC = 1

# Fixed XOR mask applied on top of the keystream ("// C")
CIPHER_MASK = 0x43202F2F

# Payload words are addressed from the start of EWRAM
EWRAM_BASE = 0x02000000

_MASK32 = 0xFFFFFFFF


class KeystreamGenerator:
    """Deterministic 32-bit LCG keystream."""

    def __init__(self, seed: int = 0):
        self._state = seed & _MASK32

    def seed(self, value: int) -> None:
        """Reset the generator to a new seed."""
        self._state = value & _MASK32

    def next(self) -> int:
        """Advance the generator and return the new state."""
        self._state = (self._state * KEYSTREAM_MULT + KEYSTREAM_INC) & _MASK32
        return self._state

    def __iter__(self):
        return self

    def __next__(self) -> int:
        return self.next()


def _address_mask(offset: int) -> int:
    return -(EWRAM_BASE + offset) & _MASK32


def encrypt_word(word: int, key: int, offset: int) -> int:
    """
    Encrypt one payload word.

    Args:
        word: Plaintext 32-bit word
        key: Keystream word drawn for this position
        offset: Byte offset of the word in the image

    Returns:
        Encrypted 32-bit word
    """
    return (word ^ key ^ _address_mask(offset) ^ CIPHER_MASK) & _MASK32


def decrypt_word(word: int, key: int, offset: int) -> int:
    """Decrypt one payload word (the transform is its own inverse)."""
    return encrypt_word(word, key, offset)
