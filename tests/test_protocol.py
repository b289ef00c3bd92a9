# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""Tests for protocol encoding and image layout."""

import pytest

from gba_multiboot.protocol import (
    Command,
    Reply,
    HEADER_SIZE,
    MAX_IMAGE_SIZE,
    client_data,
    final_key,
    handshake_command,
    handshake_data,
    header_ack,
    header_halfwords,
    is_slave_ready,
    length_word,
    pack_word,
    palette_command,
    payload_ack,
    payload_words,
    prepare_image,
    reply_code,
    session_seed,
    unpack_word,
    validate_image,
)


class TestCommandValues:
    """Tests for command and reply constants."""

    def test_command_values(self):
        assert Command.SYNC == 0x6202
        assert Command.RECOGNITION == 0x6102
        assert Command.HEADER_DONE == 0x6200
        assert Command.CRC_REQUEST == 0x0065
        assert Command.CRC_FOLLOWS == 0x0066

    def test_reply_values(self):
        assert Reply.SLAVE_READY == 0x7202
        assert Reply.CRC_BUSY == 0x0074
        assert Reply.CRC_READY == 0x0075


class TestWordPacking:
    """Tests for pack_word / unpack_word."""

    def test_pack_msb_first(self):
        """Words go on the wire most significant byte first."""
        assert pack_word(0x00006202) == b"\x00\x00\x62\x02"
        assert pack_word(0x12345678) == b"\x12\x34\x56\x78"

    def test_unpack(self):
        assert unpack_word(b"\x72\x02\x62\x02") == 0x72026202

    def test_pack_rejects_out_of_range(self):
        with pytest.raises(ValueError, match="out of range"):
            pack_word(0x1_0000_0000)
        with pytest.raises(ValueError):
            pack_word(-1)

    def test_unpack_rejects_wrong_length(self):
        with pytest.raises(ValueError, match="Expected 4 bytes"):
            unpack_word(b"\x00\x01\x02")
        with pytest.raises(ValueError):
            unpack_word(b"")


class TestReplies:
    """Tests for reply decoding."""

    def test_reply_code_is_upper_half(self):
        assert reply_code(0x72026202) == 0x7202

    def test_slave_ready(self):
        assert is_slave_ready(0x72026202) is True
        assert is_slave_ready(0x00006202) is False
        assert is_slave_ready(0xFFFFFFFF) is False

    def test_header_ack_counts_down(self):
        """Header replies count down from 60h with the client bit set."""
        assert header_ack(0) == 0x6002
        assert header_ack(1) == 0x5F02
        assert header_ack(95) == 0x0102

    def test_client_data(self):
        assert client_data(0x732A63D1) == 0x2A

    def test_client_data_rejects_other_replies(self):
        with pytest.raises(ValueError, match="Not a client data reply"):
            client_data(0x720263D1)

    def test_payload_ack(self):
        assert payload_ack(0xC0) == 0x00C0
        assert payload_ack(0x100C0) == 0x00C0


class TestKeyExchange:
    """Tests for key exchange values."""

    def test_palette_command(self):
        assert palette_command(0xD1) == 0x63D1

    def test_handshake_data_wraps(self):
        assert handshake_data(0x2A) == 0x39
        assert handshake_data(0xF5) == 0x04

    def test_handshake_command(self):
        assert handshake_command(0x2A) == 0x6439

    def test_session_seed(self):
        assert session_seed(0x2A, 0xD1) == 0xFFFF2AD1

    def test_final_key(self):
        assert final_key(0x5C, 0x2A) == 0xFFFF5C39

    def test_length_word(self):
        """Length is the payload word count minus 34h."""
        assert length_word(0x100) == 0x000C
        assert length_word(MAX_IMAGE_SIZE - HEADER_SIZE) == 0xFFD0 - 0x34

    def test_length_word_empty_payload(self):
        """An empty payload wraps to 16 bits."""
        assert length_word(0) == 0xFFCC


class TestImageLayout:
    """Tests for image validation and splitting."""

    def test_validate_empty(self):
        with pytest.raises(ValueError, match="empty"):
            validate_image(b"")

    def test_validate_too_short(self):
        with pytest.raises(ValueError, match="too short"):
            validate_image(b"\x00" * (HEADER_SIZE - 1))

    def test_validate_too_large(self):
        with pytest.raises(ValueError, match="too large"):
            validate_image(b"\x00" * (MAX_IMAGE_SIZE + 1))

    def test_validate_limits_accepted(self):
        validate_image(b"\x00" * HEADER_SIZE)
        validate_image(b"\x00" * MAX_IMAGE_SIZE)

    def test_prepare_pads_to_word(self):
        image = b"\xAA" * (HEADER_SIZE + 5)
        padded = prepare_image(image)
        assert len(padded) == HEADER_SIZE + 8
        assert padded[: len(image)] == image
        assert padded[len(image):] == b"\x00\x00\x00"

    def test_prepare_is_idempotent(self):
        image = b"\x55" * (HEADER_SIZE + 13)
        once = prepare_image(image)
        assert prepare_image(once) == once

    def test_prepare_aligned_unchanged(self):
        image = bytes(range(256))
        assert prepare_image(image) == image

    def test_prepare_accepts_bytearray(self):
        assert prepare_image(bytearray(HEADER_SIZE)) == bytes(HEADER_SIZE)

    def test_header_halfwords_little_endian(self):
        image = bytes(range(HEADER_SIZE))
        halfwords = list(header_halfwords(image))
        assert len(halfwords) == 96
        assert halfwords[0] == 0x0100
        assert halfwords[-1] == 0xBFBE

    def test_payload_words(self):
        image = bytes(HEADER_SIZE) + b"\x78\x56\x34\x12\x01\x00\x00\x00"
        assert list(payload_words(image)) == [(0xC0, 0x12345678), (0xC4, 0x00000001)]

    def test_payload_words_empty(self):
        assert list(payload_words(bytes(HEADER_SIZE))) == []
