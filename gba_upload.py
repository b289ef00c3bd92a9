#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Multiboot upload tool for a GBA link-cable adapter.

Usage:
    python gba_upload.py ports
    python gba_upload.py send game.gba
    python gba_upload.py --port /dev/ttyACM0 send game.gba --retries 20

Requirements:
    pip install pyserial
"""

import argparse
import logging
import sys
import threading
from datetime import datetime
from pathlib import Path

try:
    import serial.tools.list_ports
except ImportError:
    print("Error: pyserial not installed. Run: pip install pyserial")
    sys.exit(1)

from gba_multiboot import (
    LinkError,
    LinkVoltage,
    SerialLink,
    SessionConfig,
    Severity,
    find_adapter_port,
    run_multiboot,
)
from gba_multiboot.link import ADAPTER_VENDOR_IDS

ROM_SUFFIXES = (".gba", ".bin")

# Seconds to wait for the worker after Ctrl-C
CANCEL_GRACE = 5.0


def format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def print_event(event):
    """Print a report event as a timestamped log line."""
    time = datetime.now().strftime("%H:%M:%S")
    prefix = "" if event.severity == Severity.INFO else f"{event.severity.name.lower()}: "
    stream = sys.stderr if event.severity == Severity.ERROR else sys.stdout
    print(f"[{time}] {prefix}{event.message}", file=stream)


def cmd_ports():
    """List serial ports, marking known adapters."""
    ports = list(serial.tools.list_ports.comports())
    if not ports:
        print("No serial ports found")
        return
    for port in ports:
        adapter = ADAPTER_VENDOR_IDS.get(port.vid)
        mark = f"  <- {adapter}" if adapter else ""
        print(f"{port.device}: {port.description}{mark}")


def cmd_send(link: SerialLink, rom_path: Path, config: SessionConfig) -> bool:
    """Send a ROM with multiboot."""
    image = rom_path.read_bytes()

    print(f"ROM:  {rom_path} ({format_size(len(image))})")
    print(f"Port: {link.port}")
    print("=" * 40)

    cancel = threading.Event()
    outcome = {}

    def worker():
        outcome["result"] = run_multiboot(link, image, config, cancel, print_event)

    thread = threading.Thread(target=worker, daemon=True)
    thread.start()
    try:
        while thread.is_alive():
            thread.join(0.2)
    except KeyboardInterrupt:
        print("\nCancelling...")
        cancel.set()
        # The session stops at its next read timeout or wait
        thread.join(CANCEL_GRACE)
        if thread.is_alive():
            print("Error: Transfer did not stop", file=sys.stderr)
            return False

    result = outcome["result"]
    warnings = result.report.warnings()
    print("=" * 40)
    if warnings:
        print(f"{len(warnings)} warning(s) during transfer")
    if result.ok:
        print("Multiboot successful!")
        return True

    phase = result.phase.name if result.phase else "?"
    print(f"Multiboot failed: {result.reason} (during {phase})", file=sys.stderr)
    return False


def main():
    parser = argparse.ArgumentParser(
        description="Multiboot upload tool for GBA link-cable adapters"
    )
    parser.add_argument(
        "--port", "-p",
        help="Serial port (e.g., /dev/ttyACM0); auto-detected when omitted"
    )
    parser.add_argument("--baudrate", type=int, default=115200,
                        help="Baud rate (default 115200)")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # ports command
    subparsers.add_parser("ports", help="List serial ports")

    # send command
    send_parser = subparsers.add_parser("send", help="Send a ROM with multiboot")
    send_parser.add_argument("file", type=Path, help="ROM file (.gba or .bin)")
    send_parser.add_argument("--timeout", "-t", type=float, default=0.1,
                             help="Per-read timeout in seconds (default 0.1)")
    send_parser.add_argument("--retries", "-r", type=int, default=10,
                             help="Attempts per word before giving up (default 10)")
    send_parser.add_argument("--handshake-attempts", type=int, default=100,
                             help="Sync attempts while waiting for the console")
    send_parser.add_argument("--voltage", choices=[v.value for v in LinkVoltage],
                             default=LinkVoltage.V3_3.value,
                             help="Link voltage (default 3v3)")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    if args.command == "ports":
        cmd_ports()
        return

    if not args.file.exists():
        print(f"Error: File not found: {args.file}")
        sys.exit(1)
    if args.file.suffix.lower() not in ROM_SUFFIXES:
        print("Error: Please select a .gba or .bin file")
        sys.exit(1)

    try:
        config = SessionConfig(
            read_timeout=args.timeout,
            word_attempts=args.retries,
            handshake_attempts=args.handshake_attempts,
            voltage=LinkVoltage(args.voltage),
        )
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    port = args.port or find_adapter_port()
    if port is None:
        print("Error: No link adapter found, use --port")
        sys.exit(1)

    try:
        link = SerialLink(port, args.baudrate, timeout=args.timeout)
    except LinkError as e:
        print(f"Error: {e}")
        sys.exit(1)

    try:
        ok = cmd_send(link, args.file, config)
    finally:
        link.close()

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
