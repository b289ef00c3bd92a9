# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
GBA Multiboot - Python client library.

This package sends a program image to a Game Boy Advance over a
link-cable adapter, acting as the multiboot master.

Example usage:
    from gba_multiboot import SerialLink, run_multiboot

    with SerialLink("/dev/ttyACM0") as link:
        result = run_multiboot(
            link,
            Path("game.gba").read_bytes(),
            sink=lambda event: print(event.message),
        )
        print("OK" if result.ok else f"Failed: {result.reason}")
"""

from .checksum import ChecksumAccumulator, multiboot_crc
from .keystream import KeystreamGenerator, encrypt_word, decrypt_word
from .link import (
    ByteLink,
    SerialLink,
    LinkError,
    LinkVoltage,
    find_adapter_port,
)
from .protocol import (
    Command,
    Reply,
    HEADER_SIZE,
    MAX_IMAGE_SIZE,
    prepare_image,
    validate_image,
)
from .session import (
    ProtocolSession,
    SessionConfig,
    SessionState,
    FailureReason,
    MultibootError,
    MultibootResult,
    LinkBusyError,
    ReportEvent,
    Severity,
    TransferReport,
    run_multiboot,
)

__version__ = "0.1.0"

__all__ = [
    # Checksum
    "ChecksumAccumulator",
    "multiboot_crc",
    # Keystream
    "KeystreamGenerator",
    "encrypt_word",
    "decrypt_word",
    # Link
    "ByteLink",
    "SerialLink",
    "LinkError",
    "LinkVoltage",
    "find_adapter_port",
    # Protocol
    "Command",
    "Reply",
    "HEADER_SIZE",
    "MAX_IMAGE_SIZE",
    "prepare_image",
    "validate_image",
    # Session
    "ProtocolSession",
    "SessionConfig",
    "SessionState",
    "FailureReason",
    "MultibootError",
    "MultibootResult",
    "LinkBusyError",
    "ReportEvent",
    "Severity",
    "TransferReport",
    "run_multiboot",
]
