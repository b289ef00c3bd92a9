# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
GBA multiboot protocol definitions and serialization.

This module defines the command words, reply patterns and image layout of
the normal-mode (32-bit) multiboot protocol. Every exchange is one 32-bit
transfer; the console's answer sits in the upper halfword of the reply.
"""

import struct
from enum import IntEnum
from typing import Iterator, Tuple

HEADER_SIZE = 0xC0
MAX_IMAGE_SIZE = 0x40000
WORD_SIZE = 4

HEADER_HALFWORDS = HEADER_SIZE // 2

# Client 1 bit, carried in the low byte of most console replies
CLIENT_ID = 0x02

DEFAULT_PALETTE = 0xD1

# Payloads shorter than this are padded by the BIOS itself
BIOS_MIN_PAYLOAD = 0xD0


class Command(IntEnum):
    """Master command words."""
    SYNC = 0x6202
    RECOGNITION = 0x6102
    HEADER_DONE = 0x6200
    PALETTE = 0x6300
    HANDSHAKE = 0x6400
    CRC_REQUEST = 0x0065
    CRC_FOLLOWS = 0x0066


class Reply(IntEnum):
    """Console reply patterns (upper halfword)."""
    SLAVE_READY = 0x7202
    HEADER_DONE = 0x0002
    CLIENT_DATA = 0x7300
    CRC_BUSY = 0x0074
    CRC_READY = 0x0075


def pack_word(value: int) -> bytes:
    """Serialize a 32-bit transfer word, most significant byte first."""
    if not 0 <= value <= 0xFFFFFFFF:
        raise ValueError(f"Word out of range: {value:#x}")
    return struct.pack(">I", value)


def unpack_word(data: bytes) -> int:
    """
    Deserialize a 32-bit transfer word.

    Raises:
        ValueError: If data is not exactly 4 bytes
    """
    if len(data) != WORD_SIZE:
        raise ValueError(f"Expected {WORD_SIZE} bytes, got {len(data)}")
    return struct.unpack(">I", data)[0]


def reply_code(reply: int) -> int:
    """Return the console's halfword from a 32-bit reply."""
    return (reply >> 16) & 0xFFFF


def is_slave_ready(reply: int) -> bool:
    return reply_code(reply) == Reply.SLAVE_READY


def header_ack(index: int) -> int:
    """Expected reply code for header halfword `index` (counts down)."""
    return ((HEADER_HALFWORDS - index) << 8) | CLIENT_ID


def client_data(reply: int) -> int:
    """
    Extract the client data byte from a `73cc` reply.

    Raises:
        ValueError: If the reply is not a client data reply
    """
    code = reply_code(reply)
    if code & 0xFF00 != Reply.CLIENT_DATA:
        raise ValueError(f"Not a client data reply: {reply:#010x}")
    return code & 0xFF


def palette_command(palette: int) -> int:
    return Command.PALETTE | (palette & 0xFF)


def handshake_data(client: int) -> int:
    """Handshake byte derived from the client data of the single client."""
    return (client + 0x0F) & 0xFF


def handshake_command(client: int) -> int:
    return Command.HANDSHAKE | handshake_data(client)


def session_seed(client: int, palette: int) -> int:
    """Keystream seed agreed during the palette exchange."""
    return 0xFFFF0000 | ((client & 0xFF) << 8) | (palette & 0xFF)


def final_key(random_data: int, client: int) -> int:
    """Word absorbed into the CRC after the last payload word."""
    return 0xFFFF0000 | ((random_data & 0xFF) << 8) | handshake_data(client)


def length_word(payload_size: int) -> int:
    """Length information sent before the payload."""
    return (payload_size // WORD_SIZE - 0x34) & 0xFFFF


def payload_ack(offset: int) -> int:
    """Expected reply code for the payload word at byte `offset`."""
    return offset & 0xFFFF


def validate_image(image: bytes) -> None:
    """
    Check image size limits.

    Raises:
        ValueError: If the image is empty, shorter than the header or
            larger than 256 KiB
    """
    if not image:
        raise ValueError("Image is empty")
    if len(image) < HEADER_SIZE:
        raise ValueError(
            f"Image too short: {len(image)} bytes, header needs {HEADER_SIZE}"
        )
    if len(image) > MAX_IMAGE_SIZE:
        raise ValueError(
            f"Image too large: {len(image)} bytes, maximum is {MAX_IMAGE_SIZE}"
        )


def prepare_image(image: bytes) -> bytes:
    """
    Validate an image and zero-pad it to a multiple of 4 bytes.

    Padding an already aligned image returns it unchanged.
    """
    image = bytes(image)
    validate_image(image)
    remainder = len(image) % WORD_SIZE
    if remainder:
        image += b"\x00" * (WORD_SIZE - remainder)
    return image


def header_halfwords(image: bytes) -> Iterator[int]:
    """Yield the header as little-endian halfwords."""
    for (value,) in struct.iter_unpack("<H", image[:HEADER_SIZE]):
        yield value


def payload_words(image: bytes) -> Iterator[Tuple[int, int]]:
    """Yield `(offset, word)` pairs for the payload of a padded image."""
    payload = image[HEADER_SIZE:]
    for i, (word,) in enumerate(struct.iter_unpack("<I", payload)):
        yield HEADER_SIZE + i * WORD_SIZE, word
