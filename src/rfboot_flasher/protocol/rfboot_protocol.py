"""
rfboot Upload Protocol Implementation

Drives one firmware upload through the usb2rf bridge to the rfboot
bootloader on the remote ATmega.

Protocol sequence:
1. Drain, send COMMDZ (fast reset) -> expect "USB2RF" from the bridge
2. [If a reset string is known] switch to the application's channel and
   address, send the reset string -> expect it echoed (warning if not)
3. Switch to rfboot's address and channel
4. Send the 4-byte start signature until rfboot answers with an 8-byte IV
5. Send the XTEA-CBC encrypted 32-byte header until rfboot answers with
   a 3-byte status (4 = send packets, starting at the returned offset)
6. Send the encrypted image, 32 bytes at a time, from the top of the
   image down (see ``ImageTransporter``)
7. Switch back to the application's channel and address, update ledger

Header layout (little-endian):
[ signature u32 | length u16 | crc16 u16 | crc16_rev u16 | 0 u16 |
  signature u32 | nonce 16 bytes ]

The header and the image share one XTEA chain. rfboot writes flash from
the top of the application area downward, so the image blocks are
encrypted and sent last block first.
"""

import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from rfboot_flasher.core.config import AppSettings, SessionConfig
from rfboot_flasher.core.firmware import PAYLOAD, pad_image, validate_firmware
from rfboot_flasher.core.ledger import LedgerRecord, UploadLedger
from rfboot_flasher.core.parsing import format_address
from rfboot_flasher.core.retry import retry_until
from rfboot_flasher.utils.codec import (
    crc16,
    crc16_reversed,
    pack_le16,
    pack_le32,
    unpack_le16,
)
from rfboot_flasher.utils.crypto import ChainState, encrypt_buffer_cbc

from .usb2rf_transport import Usb2RfTransport, Usb2RfTransportError

logger = logging.getLogger(__name__)

# Protocol constants
START_SIGNATURE = 0xD20F6CDF
HEADER_SIZE = 32
NONCE_SIZE = 16
IV_SIZE = 8
REPLY_SIZE = 3
LEGACY_DUMP_SIZE = 100

# rfboot status codes (first byte of a 3-byte reply)
RFB_NO_SIGNATURE = 1
RFB_INVALID_CODE_SIZE = 2
RFB_SEND_PKT = 4
RFB_WRONG_CRC = 5
RFB_SUCCESS = 6

# usb2rf flow control codes (single bytes)
CTRL_PACKET = ord("P")
CTRL_ACK = ord("A")
CTRL_RESEND = ord("R")
CTRL_END = ord("E")

ProgressCallback = Callable[[int, int], None]


class RfbootError(Exception):
    """Base exception for upload protocol errors"""
    pass


class RfbootTimeout(RfbootError):
    """rfboot or usb2rf did not answer within a phase deadline"""
    pass


class RfbootProtocolError(RfbootError):
    """Reply that the protocol does not allow"""
    pass


class SignatureRejected(RfbootProtocolError):
    """rfboot could not decrypt the header (wrong key or address)"""
    pass


class InvalidCodeSize(RfbootProtocolError):
    """rfboot refused the image length"""
    pass


class WrongCrc(RfbootProtocolError):
    """rfboot reported a CRC mismatch after the last packet"""
    pass


@dataclass(frozen=True)
class UploadTimings:
    """
    Every timeout used during an upload, in seconds.

    Per-byte timeouts bound a single read; the ``*_timeout`` deadlines
    bound a whole retry loop.
    """
    drain_timeout: float = 0.005
    settle_timeout: float = 0.01
    bridge_timeout: float = 0.2
    reset_echo_timeout: float = 0.1
    reply_timeout: float = 0.1
    handshake_timeout: float = 10.0
    header_timeout: float = 10.0
    control_timeout: float = 0.1
    transfer_stall_timeout: float = 5.0
    end_byte_timeout: float = 0.25
    end_timeout: float = 5.0
    legacy_reply_timeout: float = 0.2
    legacy_final_timeout: float = 1.2
    restore_drain_timeout: float = 0.002


def build_upload_header(image: bytes, nonce: bytes) -> bytes:
    """
    Build the plaintext 32-byte upload header for a padded image.

    Raises:
        ValueError: If the image is not padded or the nonce is not 16 bytes
    """
    if len(image) % PAYLOAD:
        raise ValueError(f"Image must be padded to a multiple of {PAYLOAD} bytes")
    if len(image) > 0xFFFF:
        raise ValueError(f"Image too large for a 16-bit length: {len(image)}")
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
    header = (
        pack_le32(START_SIGNATURE)
        + pack_le16(len(image))
        + pack_le16(crc16(image))
        + pack_le16(crc16_reversed(image))
        + pack_le16(0)
        + pack_le32(START_SIGNATURE)
        + nonce
    )
    return header


def encrypt_image(image: bytes, key: Sequence[int], iv: ChainState) -> List[bytes]:
    """
    Encrypt a padded image, last 32-byte block first.

    The chain continues from ``iv`` (left where the header encryption
    ended) and is advanced in place.

    Returns:
        Ciphertext blocks indexed by block number (``blocks[0]`` holds
        image bytes 0..31), so the block ending at byte offset ``n`` is
        ``blocks[n // 32 - 1]``.
    """
    count = len(image) // PAYLOAD
    blocks: List[bytes] = [b""] * count
    for index in range(count - 1, -1, -1):
        start = index * PAYLOAD
        blocks[index] = encrypt_buffer_cbc(image[start:start + PAYLOAD], key, iv)
    return blocks


def resolve_reset_target(
    app: AppSettings,
    record: Optional[LedgerRecord],
) -> Tuple[AppSettings, List[str]]:
    """
    Choose the addressing used to reach the application on the target.

    The ledger reflects what the target actually runs, so it wins over a
    freshly edited app_settings.h. Every difference is returned as a
    warning message.
    """
    if record is None:
        return app, []

    warnings = []
    if app.channel != record.channel:
        warnings.append(
            f"appChannel changed to {app.channel}. "
            f"Using the old {record.channel} to send the reset signal"
        )
    if app.address != record.address:
        warnings.append(
            f"appAddress changed to {format_address(app.address)}. "
            f"Using the old {format_address(record.address)} to send the reset signal"
        )
    if app.reset_string != record.reset_string:
        warnings.append(
            f"resetString changed to {app.reset_string}. "
            f"Using the old {record.reset_string} to send the reset signal"
        )
    return record.as_app_settings(), warnings


class ImageTransporter(ABC):
    """
    Sends the encrypted image blocks once rfboot asked for them.

    ``blocks`` is indexed by block number; ``start_offset`` is the byte
    offset (from the start of the image) just above the first block to
    send. Blocks always go out from ``start_offset`` downward.
    """

    name = ""

    def __init__(
        self,
        timings: Optional[UploadTimings] = None,
        progress_cb: Optional[ProgressCallback] = None,
    ):
        self.timings = timings or UploadTimings()
        self.progress_cb = progress_cb

    @abstractmethod
    def transfer(self, transport: Usb2RfTransport, blocks: List[bytes], start_offset: int) -> None:
        """Send blocks until the remote side confirms the end of the upload."""

    def _report(self, remaining: int, total: int) -> None:
        if self.progress_cb:
            self.progress_cb(total - remaining, total)


class FlowControlledTransporter(ImageTransporter):
    """
    Upload with the packet exchange offloaded to usb2rf.

    After ``COMMD U <len>`` the bridge talks to rfboot on its own and
    only asks the host for data:

        'P'  send the next 32-byte block
        'A'  acknowledge (informational)
        'R'  resend the last block
        'E'  all packets delivered
    """

    name = "flow"

    def transfer(self, transport: Usb2RfTransport, blocks: List[bytes], start_offset: int) -> None:
        timings = self.timings
        offset = start_offset
        last_block: Optional[bytes] = None

        logger.info("Using the flow-controlled upload method")
        transport.begin_transfer(start_offset)

        while offset > 0:
            outcome = retry_until(
                lambda: transport.read_byte(timings.control_timeout),
                timings.transfer_stall_timeout,
            )
            if outcome.timed_out:
                raise RfbootTimeout(f"usb2rf stopped asking for packets at offset {offset}")

            code = outcome.value
            if code == CTRL_PACKET:
                last_block = blocks[offset // PAYLOAD - 1]
                transport.write(last_block)
                offset -= PAYLOAD
                self._report(offset, start_offset)
            elif code == CTRL_ACK:
                pass
            elif code == CTRL_RESEND:
                last_block = self._resend(transport, last_block)
            else:
                raise RfbootProtocolError(f"Got unknown response 0x{code:02X} at offset {offset}")

        def wait_for_end() -> Optional[bool]:
            nonlocal last_block
            code = transport.read_byte(timings.end_byte_timeout)
            if code is None or code == CTRL_ACK:
                return None
            if code == CTRL_RESEND:
                last_block = self._resend(transport, last_block)
                return None
            if code == CTRL_END:
                return True
            raise RfbootProtocolError(f"Got unknown response 0x{code:02X} after the last packet")

        if retry_until(wait_for_end, timings.end_timeout).timed_out:
            raise RfbootTimeout("usb2rf did not report the end of the upload")
        logger.info("All packets sent")

    @staticmethod
    def _resend(transport: Usb2RfTransport, last_block: Optional[bytes]) -> bytes:
        if last_block is None:
            raise RfbootProtocolError("Resend requested before any packet was sent")
        logger.info("Resend")
        transport.write(last_block)
        return last_block


class LegacyTransporter(ImageTransporter):
    """
    Upload with the host driving every packet exchange.

    Each block is answered by a 3-byte ``RFB_SEND_PKT`` reply carrying the
    next offset rfboot wants. The same offset again means "resend". After
    the last block rfboot checks the CRCs and answers ``RFB_SUCCESS`` or
    ``RFB_WRONG_CRC``.

    Any other offset is a fatal protocol error; the trailing bytes are
    dumped for diagnosis.
    """

    name = "legacy"

    def transfer(self, transport: Usb2RfTransport, blocks: List[bytes], start_offset: int) -> None:
        timings = self.timings
        offset = start_offset
        previous = offset

        logger.info("Using the legacy upload method")
        while offset >= PAYLOAD:
            transport.write(blocks[offset // PAYLOAD - 1])

            if offset == PAYLOAD:
                status, offset = self._read_reply(transport, timings.legacy_final_timeout, offset)
                if status == RFB_SUCCESS:
                    self._report(0, start_offset)
                    logger.info("rfboot reports success")
                    return
                if status == RFB_WRONG_CRC:
                    raise WrongCrc("CRC check failed")
                if status != RFB_SEND_PKT:
                    raise RfbootProtocolError(
                        f"Unexpected reply code at the end of the upload process: {status}"
                    )
            else:
                status, offset = self._read_reply(transport, timings.legacy_reply_timeout, offset)
                if status != RFB_SEND_PKT:
                    raise RfbootProtocolError(
                        f"Expected RFB_SEND_PKT at offset {previous}, got reply {status}"
                    )

            if offset == previous:
                logger.info("Resend")
            elif offset != previous - PAYLOAD:
                trailing = transport.read_packet(LEGACY_DUMP_SIZE, 1.0)
                raise RfbootProtocolError(
                    f"Protocol error: expected offset {previous - PAYLOAD}, got {offset}. "
                    f"Trailing bytes: {trailing.hex(' ').upper() or 'none'}"
                )
            else:
                self._report(offset, start_offset)
            previous = offset

        raise RfbootProtocolError(f"Upload ended at offset {offset} without a success reply")

    @staticmethod
    def _read_reply(transport: Usb2RfTransport, timeout: float, offset: int) -> Tuple[int, int]:
        reply = transport.read_packet(REPLY_SIZE, timeout)
        if not reply:
            raise RfbootTimeout(f"Got no reply at offset {offset}")
        if len(reply) != REPLY_SIZE:
            raise RfbootProtocolError(
                f"Wrong message length at offset {offset}: {len(reply)} ({reply.hex().upper()})"
            )
        return reply[0], unpack_le16(reply[1:])


TRANSPORTERS = {
    FlowControlledTransporter.name: FlowControlledTransporter,
    LegacyTransporter.name: LegacyTransporter,
}


def make_transporter(
    method: str = FlowControlledTransporter.name,
    timings: Optional[UploadTimings] = None,
    progress_cb: Optional[ProgressCallback] = None,
) -> ImageTransporter:
    """
    Create the image transporter for an upload method name.

    Raises:
        ValueError: If the method is unknown
    """
    try:
        cls = TRANSPORTERS[method.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown upload method '{method}'. Use one of: {', '.join(sorted(TRANSPORTERS))}"
        )
    return cls(timings=timings, progress_cb=progress_cb)


class UploadPhase(Enum):
    """Phases of one upload, in the order they run."""
    IDLE = "idle"
    CONTACT_BRIDGE = "contact_bridge"
    RESET_APP = "reset_app"
    ADDRESS_BOOTLOADER = "address_bootloader"
    HANDSHAKE = "handshake"
    SEND_HEADER = "send_header"
    TRANSFER = "transfer"
    FINALIZE = "finalize"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class UploadReport:
    """What happened during a completed upload."""
    image_len: int
    padded_len: int
    iv: Tuple[int, int] = (0, 0)
    start_offset: int = 0
    reset_acknowledged: Optional[bool] = None
    method: str = ""
    elapsed: float = 0.0
    phases: List[UploadPhase] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class RfbootUploader:
    """
    Runs the upload conversation on an open usb2rf transport.

    Callers are expected to skip the upload entirely when the ledger
    already holds a byte-identical image (see ``core.actions``).

    Example:
        uploader = RfbootUploader(transport, load_session_config("."), UploadLedger("."))
        report = uploader.upload(load_firmware("blink.bin"))
    """

    def __init__(
        self,
        transport: Usb2RfTransport,
        config: SessionConfig,
        ledger: Optional[UploadLedger] = None,
        transporter: Optional[ImageTransporter] = None,
        timings: Optional[UploadTimings] = None,
        nonce_source: Callable[[int], bytes] = os.urandom,
    ):
        self.transport = transport
        self.config = config
        self.ledger = ledger
        self.timings = timings or UploadTimings()
        self.transporter = transporter or FlowControlledTransporter(self.timings)
        self.nonce_source = nonce_source
        self.phase = UploadPhase.IDLE
        self._report: Optional[UploadReport] = None

    def _enter(self, phase: UploadPhase) -> None:
        logger.debug(f"Phase: {self.phase.value} -> {phase.value}")
        self.phase = phase
        if self._report is not None:
            self._report.phases.append(phase)

    def _warn(self, message: str) -> None:
        logger.warning(message)
        if self._report is not None:
            self._report.warnings.append(message)

    def upload(self, image: bytes) -> UploadReport:
        """
        Upload one application image.

        Raises:
            FirmwareImageError: If the image fails validation
            BridgeNoContact: If usb2rf does not identify itself
            RfbootTimeout: If rfboot does not answer in time
            RfbootProtocolError: On any reply the protocol does not allow
            Usb2RfTransportError: On serial I/O failure
        """
        validate_firmware(image)
        padded = pad_image(image)
        started = time.monotonic()
        self._report = UploadReport(
            image_len=len(image),
            padded_len=len(padded),
            method=self.transporter.name,
        )
        record = self.ledger.load() if self.ledger else None
        reset_target, warnings = resolve_reset_target(self.config.app, record)
        for message in warnings:
            self._warn(message)

        try:
            header = build_upload_header(padded, self.nonce_source(NONCE_SIZE))
            self._contact_bridge()
            if reset_target.reset_string:
                self._reset_running_app(reset_target)
            else:
                logger.info(
                    f"Contacting rfboot. Reset the module... "
                    f"(retrying for {self.timings.handshake_timeout:g} sec)"
                )
            self._address_bootloader()
            iv = self._handshake(reset_target)
            start_offset = self._send_header(header, iv, len(padded))
            blocks = encrypt_image(padded, self.config.bootloader.key, iv)

            self._enter(UploadPhase.TRANSFER)
            self.transporter.transfer(self.transport, blocks, start_offset)
            self._finalize(image)
        except Exception:
            self._enter(UploadPhase.FAILED)
            raise

        self._report.elapsed = time.monotonic() - started
        self._enter(UploadPhase.SUCCESS)
        logger.info(f"Upload time = {self._report.elapsed:.3f} sec")
        return self._report

    def _contact_bridge(self) -> None:
        self._enter(UploadPhase.CONTACT_BRIDGE)
        self.transport.identify_bridge(
            timeout=self.timings.bridge_timeout,
            drain_timeout=self.timings.drain_timeout,
        )

    def _set_app_addressing(self, app: AppSettings) -> None:
        logger.info(f"App channel = {app.channel}")
        self.transport.set_channel(app.channel, self.timings.settle_timeout)
        logger.info(f"App address = {format_address(app.address)}")
        self.transport.set_address(app.address, self.timings.settle_timeout)

    def _reset_running_app(self, app: AppSettings) -> None:
        self._enter(UploadPhase.RESET_APP)
        self._set_app_addressing(app)
        logger.info(f"Reset string = {app.reset_string}")
        reset = app.reset_string.encode("latin-1")
        self.transport.write(reset)
        echo = self.transport.read_packet(len(reset), self.timings.reset_echo_timeout)
        self._report.reset_acknowledged = echo == reset
        if echo == reset:
            logger.info("Ok the target reported reset")
        else:
            self._warn("Target did not answer the reset command, trying to send code anyway")

    def _address_bootloader(self) -> None:
        self._enter(UploadPhase.ADDRESS_BOOTLOADER)
        bootloader = self.config.bootloader
        logger.info(f"rfboot address = {format_address(bootloader.address)}")
        self.transport.set_address(bootloader.address, self.timings.settle_timeout)
        logger.info(f"rfboot channel = {bootloader.channel}")
        self.transport.set_channel(bootloader.channel, self.timings.settle_timeout)
        self.transport.drain(self.timings.drain_timeout)

    def _restore_app_addressing(self, app: AppSettings) -> None:
        try:
            self.transport.set_channel(app.channel, self.timings.settle_timeout)
            self.transport.set_address(app.address, self.timings.settle_timeout)
            self.transport.drain(self.timings.restore_drain_timeout)
        except Usb2RfTransportError as e:
            logger.warning(f"Could not switch usb2rf back to the application: {e}")

    def _exchange(self, packet: bytes, reply_size: int) -> Optional[bytes]:
        self.transport.write(packet)
        reply = self.transport.read_packet(reply_size, self.timings.reply_timeout)
        return reply or None

    def _handshake(self, app: AppSettings) -> ChainState:
        self._enter(UploadPhase.HANDSHAKE)
        signature = pack_le32(START_SIGNATURE)
        outcome = retry_until(
            lambda: self._exchange(signature, IV_SIZE),
            self.timings.handshake_timeout,
        )
        if outcome.timed_out:
            self._restore_app_addressing(app)
            raise RfbootTimeout(
                f"Cannot contact rfboot ({outcome.attempts} attempts in {outcome.elapsed:.1f} sec)"
            )

        reply = outcome.value
        if len(reply) != IV_SIZE:
            raise RfbootProtocolError(f"Wrong IV length from rfboot: {len(reply)}")
        iv = ChainState.from_bytes(reply)
        self._report.iv = iv.as_tuple()
        logger.info(f"IV = {{{iv.v0},{iv.v1}}}")
        return iv

    def _send_header(self, header: bytes, iv: ChainState, padded_len: int) -> int:
        self._enter(UploadPhase.SEND_HEADER)
        encrypted = encrypt_buffer_cbc(header, self.config.bootloader.key, iv)
        if len(encrypted) != HEADER_SIZE:
            raise RfbootError(f"Internal error, header is not {HEADER_SIZE} bytes long")

        outcome = retry_until(
            lambda: self._exchange(encrypted, REPLY_SIZE),
            self.timings.header_timeout,
        )
        if outcome.timed_out:
            raise RfbootTimeout("Cannot contact rfboot (no reply to the upload header)")

        reply = outcome.value
        if len(reply) != REPLY_SIZE:
            raise RfbootProtocolError(
                f"Invalid message from rfboot. len={len(reply)} ({reply.hex().upper()})"
            )
        status = reply[0]
        value = unpack_le16(reply[1:])
        if status == RFB_NO_SIGNATURE:
            raise SignatureRejected("rfboot reports wrong signature")
        if status == RFB_INVALID_CODE_SIZE:
            raise InvalidCodeSize("rfboot reports that application size is invalid")
        if status != RFB_SEND_PKT:
            raise RfbootProtocolError(f"Unknown response {status} data={value}")
        if value <= 0 or value % PAYLOAD or value > padded_len:
            raise RfbootProtocolError(
                f"Protocol error: start offset {value} is not valid for a {padded_len}-byte image"
            )

        self._report.start_offset = value
        logger.info(f"rfboot asks for packets from offset {value}")
        return value

    def _finalize(self, image: bytes) -> None:
        self._enter(UploadPhase.FINALIZE)
        app = self.config.app
        self._set_app_addressing(app)
        if self.ledger is not None:
            self.ledger.record(app, image)
