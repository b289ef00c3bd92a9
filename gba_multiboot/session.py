# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Multiboot session state machine.

A ProtocolSession delivers one image over one link, moving strictly
forward through handshake, header, key exchange, payload and finalize.
Any failure ends the session; a new attempt needs a new session.

Example usage:
    with SerialLink("/dev/ttyACM0") as link:
        result = run_multiboot(link, Path("game.gba").read_bytes())
        if not result.ok:
            print(f"Failed in {result.phase.name}: {result.reason.value}")
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Callable, List, Optional, Tuple

from .checksum import ChecksumAccumulator
from .keystream import KeystreamGenerator, encrypt_word
from .link import ByteLink, LinkError, LinkVoltage
from .protocol import (
    Command,
    Reply,
    DEFAULT_PALETTE,
    BIOS_MIN_PAYLOAD,
    HEADER_SIZE,
    WORD_SIZE,
    client_data,
    final_key,
    handshake_command,
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
)

logger = logging.getLogger(__name__)

# Bytes between payload progress events
PROGRESS_STEP = 0x2000


class SessionState(Enum):
    """Session states, in protocol order."""
    IDLE = 0
    HANDSHAKING = 1
    SENDING_HEADER = 2
    EXCHANGING_KEY = 3
    SENDING_PAYLOAD = 4
    FINALIZING = 5
    COMPLETED = 6
    FAILED = 7

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED)


class FailureReason(Enum):
    """Terminal failure reasons."""
    HANDSHAKE_TIMEOUT = "HandshakeTimeout"
    HEADER_TRANSFER_ERROR = "HeaderTransferError"
    KEY_EXCHANGE_ERROR = "KeyExchangeError"
    PAYLOAD_TRANSFER_ERROR = "PayloadTransferError"
    CHECKSUM_MISMATCH = "ChecksumMismatch"
    FINALIZE_TIMEOUT = "FinalizeTimeout"
    CANCELLED = "Cancelled"
    INVALID_IMAGE = "InvalidImage"
    LINK_ERROR = "LinkError"

    def __str__(self) -> str:
        return self.value


class MultibootError(Exception):
    """A phase failed; carries the reason reported to the caller."""

    def __init__(self, reason: FailureReason, message: str):
        super().__init__(message)
        self.reason = reason


class LinkBusyError(RuntimeError):
    """Another session is already using this link."""
    pass


class Severity(IntEnum):
    """Report event severity (values match logging levels)."""
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR


@dataclass(frozen=True)
class ReportEvent:
    """One progress or diagnostic record."""
    severity: Severity
    message: str
    phase: SessionState


class TransferReport:
    """
    Append-only log of session events.

    An optional sink is called with every event as it is appended, which
    is how a UI renders the log live.
    """

    def __init__(self, sink: Optional[Callable[[ReportEvent], None]] = None):
        self._events: List[ReportEvent] = []
        self._sink = sink

    def emit(self, severity: Severity, message: str, phase: SessionState) -> ReportEvent:
        event = ReportEvent(severity, message, phase)
        self._events.append(event)
        logger.log(severity, "[%s] %s", phase.name, message)
        if self._sink:
            self._sink(event)
        return event

    @property
    def events(self) -> Tuple[ReportEvent, ...]:
        return tuple(self._events)

    def warnings(self) -> List[ReportEvent]:
        return [e for e in self._events if e.severity == Severity.WARNING]

    def __iter__(self):
        return iter(tuple(self._events))

    def __len__(self) -> int:
        return len(self._events)


@dataclass
class SessionConfig:
    """
    Timeouts and retry budgets.

    Attempt counts are totals: an exchange is tried at most that many
    times before its phase fails.
    """
    read_timeout: float = 0.1
    handshake_attempts: int = 100
    poll_interval: float = 0.05
    word_attempts: int = 10
    key_attempts: int = 100
    key_delay: float = 1 / 16
    finalize_attempts: int = 100
    palette: int = DEFAULT_PALETTE
    voltage: LinkVoltage = LinkVoltage.V3_3

    def __post_init__(self):
        for name in ("handshake_attempts", "word_attempts", "key_attempts", "finalize_attempts"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.read_timeout <= 0:
            raise ValueError("read_timeout must be positive")
        if not 0 <= self.palette <= 0xFF:
            raise ValueError("palette must fit in one byte")


@dataclass
class MultibootResult:
    """Terminal outcome of a session."""
    state: SessionState
    reason: Optional[FailureReason] = None
    phase: Optional[SessionState] = None
    report: TransferReport = field(default_factory=TransferReport)

    @property
    def ok(self) -> bool:
        return self.state == SessionState.COMPLETED


_active_links = set()
_active_lock = threading.Lock()


@contextmanager
def _borrow(link: ByteLink):
    """Hold a link for the duration of one session."""
    with _active_lock:
        if id(link) in _active_links:
            raise LinkBusyError("Link is already in use by another session")
        _active_links.add(id(link))
    try:
        yield link
    finally:
        with _active_lock:
            _active_links.discard(id(link))


class ProtocolSession:
    """
    One multiboot attempt.

    The session is single use: create it, call `run()`, read the result.
    """

    def __init__(
        self,
        link: ByteLink,
        image: bytes,
        config: Optional[SessionConfig] = None,
        cancel: Optional[threading.Event] = None,
        sink: Optional[Callable[[ReportEvent], None]] = None,
    ):
        """
        Args:
            link: Link to the console, borrowed for the duration of `run()`
            image: Program image (header included)
            config: Timeouts and retry budgets (defaults if omitted)
            cancel: Event that aborts the transfer when set
            sink: Optional callback receiving each report event
        """
        self._link = link
        self._raw_image = image
        self._config = config or SessionConfig()
        self._cancel = cancel
        self.report = TransferReport(sink)

        self._state = SessionState.IDLE
        self._history = [SessionState.IDLE]
        self._failure: Optional[FailureReason] = None
        self._failed_phase: Optional[SessionState] = None

        self._keystream = KeystreamGenerator()
        self._checksum = ChecksumAccumulator()
        self._final_key = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def history(self) -> Tuple[SessionState, ...]:
        """States entered so far, in order."""
        return tuple(self._history)

    @property
    def failure(self) -> Optional[FailureReason]:
        return self._failure

    def result(self) -> MultibootResult:
        return MultibootResult(self._state, self._failure, self._failed_phase, self.report)

    def run(self) -> MultibootResult:
        """
        Run the transfer to a terminal state.

        Returns:
            MultibootResult (never raises for protocol failures)

        Raises:
            LinkBusyError: If another session is using the link
            RuntimeError: If this session has already run
        """
        if self._state != SessionState.IDLE:
            raise RuntimeError("Session has already run; create a new one")

        try:
            image = prepare_image(self._raw_image)
        except ValueError as e:
            self._fail(FailureReason.INVALID_IMAGE, str(e))
            return self.result()

        with _borrow(self._link):
            try:
                self._check_cancel()
                self._link.set_link_voltage(self._config.voltage)
                self._handshake()
                self._send_header(image)
                self._exchange_key(len(image) - HEADER_SIZE)
                self._send_payload(image)
                self._finalize()
            except MultibootError as e:
                self._fail(e.reason, str(e))
            except LinkError as e:
                self._fail(FailureReason.LINK_ERROR, str(e))

        return self.result()

    # State handling

    def _enter(self, state: SessionState) -> None:
        if not state.is_terminal:
            self._check_cancel()
        if state.value != self._state.value + 1:
            raise RuntimeError(f"Invalid transition {self._state.name} -> {state.name}")
        self._state = state
        self._history.append(state)
        self._info(f"Entered {state.name}")

    def _fail(self, reason: FailureReason, message: str) -> None:
        self._failed_phase = self._state
        self._failure = reason
        self.report.emit(Severity.ERROR, f"{reason}: {message}", self._state)
        self._state = SessionState.FAILED
        self._history.append(SessionState.FAILED)

    def _check_cancel(self) -> None:
        if self._cancel is not None and self._cancel.is_set():
            raise MultibootError(FailureReason.CANCELLED, "Transfer cancelled")

    def _info(self, message: str) -> None:
        self.report.emit(Severity.INFO, message, self._state)

    def _wait(self, seconds: float) -> None:
        """Sleep, waking early and failing if the transfer is cancelled."""
        if self._cancel is None:
            time.sleep(seconds)
            return
        self._cancel.wait(seconds)
        self._check_cancel()

    # Link exchanges

    def _exchange(self, word: int) -> Optional[int]:
        """
        Send one word and read the reply.

        A reply split across several reads is reassembled. Returns None if
        no complete reply arrived within the read timeout.
        """
        self._link.write(pack_word(word))
        deadline = time.monotonic() + self._config.read_timeout
        data = b""
        while len(data) < WORD_SIZE:
            remaining = max(deadline - time.monotonic(), 0.0)
            chunk = self._link.read(WORD_SIZE - len(data), remaining)
            if not chunk:
                break
            data += chunk
        if len(data) != WORD_SIZE:
            if data:
                logger.debug("Short reply %s to %#010x", data.hex(), word)
            return None
        return unpack_word(data)

    def _transfer(
        self,
        word: int,
        accept: Callable[[int], bool],
        attempts: int,
        reason: FailureReason,
        what: str,
        interval: float = 0.0,
        retry_severity: Severity = Severity.WARNING,
    ) -> int:
        """
        Exchange `word` until `accept` approves the reply.

        The same word is re-sent on every attempt. Before a retry the link
        is drained, so a late reply to the failed attempt is not read as
        the answer to the next one.

        Raises:
            MultibootError: With `reason` once `attempts` are used up, or
                CANCELLED if the cancel event is set between attempts
        """
        reply = None
        for attempt in range(1, attempts + 1):
            self._check_cancel()
            reply = self._exchange(word)
            if reply is not None and accept(reply):
                return reply

            got = "timeout" if reply is None else f"reply {reply:#010x}"
            self.report.emit(
                retry_severity,
                f"{what}: {got} (attempt {attempt}/{attempts})",
                self._state,
            )
            if attempt == attempts:
                break
            if interval:
                self._wait(interval)
            self._check_cancel()
            stale = self._link.drain()
            if stale:
                logger.debug("Discarded %d stale bytes before retrying %s", stale, what)

        last = "no reply" if reply is None else f"last reply {reply:#010x}"
        raise MultibootError(reason, f"{what} failed after {attempts} attempts, {last}")

    # Phases

    def _handshake(self) -> None:
        self._enter(SessionState.HANDSHAKING)
        cfg = self._config
        self._info("Waiting for console...")
        self._transfer(
            Command.SYNC, is_slave_ready, cfg.handshake_attempts,
            FailureReason.HANDSHAKE_TIMEOUT, "Sync",
            interval=cfg.poll_interval, retry_severity=Severity.INFO,
        )
        self._transfer(
            Command.RECOGNITION, is_slave_ready, cfg.word_attempts,
            FailureReason.HANDSHAKE_TIMEOUT, "Recognition",
        )
        self._info("Console found")

    def _send_header(self, image: bytes) -> None:
        self._enter(SessionState.SENDING_HEADER)
        attempts = self._config.word_attempts
        for index, halfword in enumerate(header_halfwords(image)):
            self._check_cancel()
            self._transfer(
                halfword, lambda r, i=index: reply_code(r) == header_ack(i),
                attempts, FailureReason.HEADER_TRANSFER_ERROR,
                f"Header halfword {index}",
            )
        self._transfer(
            Command.HEADER_DONE, lambda r: reply_code(r) == Reply.HEADER_DONE,
            attempts, FailureReason.HEADER_TRANSFER_ERROR, "Header done",
        )
        self._info(f"Header sent ({HEADER_SIZE} bytes)")

    def _exchange_key(self, payload_size: int) -> None:
        self._enter(SessionState.EXCHANGING_KEY)
        cfg = self._config
        reason = FailureReason.KEY_EXCHANGE_ERROR

        self._transfer(Command.SYNC, is_slave_ready, cfg.word_attempts, reason, "Master info")
        reply = self._transfer(
            palette_command(cfg.palette), _is_client_data, cfg.key_attempts,
            reason, "Palette", interval=cfg.poll_interval, retry_severity=Severity.INFO,
        )
        client = client_data(reply)
        seed = session_seed(client, cfg.palette)

        self._transfer(handshake_command(client), _is_client_data, cfg.word_attempts, reason, "Handshake data")
        self._wait(cfg.key_delay)

        if payload_size < BIOS_MIN_PAYLOAD:
            self.report.emit(
                Severity.WARNING,
                f"Payload of {payload_size} bytes is below the BIOS minimum of {BIOS_MIN_PAYLOAD}",
                self._state,
            )
        reply = self._transfer(length_word(payload_size), _is_client_data, cfg.word_attempts, reason, "Length")

        self._keystream.seed(seed)
        self._final_key = final_key(client_data(reply), client)
        self._info(f"Session seed {seed:#010x}")

    def _send_payload(self, image: bytes) -> None:
        self._enter(SessionState.SENDING_PAYLOAD)
        attempts = self._config.word_attempts
        total = len(image) - HEADER_SIZE
        sent = 0

        for offset, word in payload_words(image):
            self._check_cancel()
            encrypted = encrypt_word(word, self._keystream.next(), offset)
            self._checksum.absorb(word)
            self._transfer(
                encrypted, lambda r, o=offset: reply_code(r) == payload_ack(o),
                attempts, FailureReason.PAYLOAD_TRANSFER_ERROR,
                f"Payload word at {offset:#07x}",
            )
            sent += WORD_SIZE
            if sent % PROGRESS_STEP == 0 and sent < total:
                self._info(f"Sent {sent}/{total} bytes")

        self._info(f"Payload sent ({total} bytes)")

    def _finalize(self) -> None:
        self._enter(SessionState.FINALIZING)
        cfg = self._config
        reason = FailureReason.FINALIZE_TIMEOUT

        self._checksum.absorb(self._final_key)
        crc = self._checksum.value()

        self._transfer(
            Command.CRC_REQUEST, lambda r: reply_code(r) == Reply.CRC_READY,
            cfg.finalize_attempts, reason, "CRC request",
            interval=cfg.poll_interval, retry_severity=Severity.INFO,
        )
        self._transfer(
            Command.CRC_FOLLOWS, lambda r: reply_code(r) == Reply.CRC_READY,
            cfg.word_attempts, reason, "CRC follows",
        )
        reply = self._transfer(crc, lambda r: True, cfg.word_attempts, reason, "CRC")

        console_crc = reply_code(reply)
        if console_crc != crc:
            raise MultibootError(
                FailureReason.CHECKSUM_MISMATCH,
                f"console reported {console_crc:#06x}, expected {crc:#06x}",
            )
        self._info(f"Checksum {crc:#06x} accepted")
        self._enter(SessionState.COMPLETED)
        self._info("Multiboot complete, console is starting the image")


def _is_client_data(reply: int) -> bool:
    return reply_code(reply) & 0xFF00 == Reply.CLIENT_DATA


def run_multiboot(
    link: ByteLink,
    image: bytes,
    config: Optional[SessionConfig] = None,
    cancel: Optional[threading.Event] = None,
    sink: Optional[Callable[[ReportEvent], None]] = None,
) -> MultibootResult:
    """
    Deliver `image` to the console on `link`.

    Runs a fresh ProtocolSession to completion and returns its outcome.
    """
    return ProtocolSession(link, image, config, cancel, sink).run()
