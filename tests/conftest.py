"""Shared fixtures: a fake pyserial port and a simulated usb2rf + rfboot pair."""

from typing import List, Optional, Sequence

import pytest

from rfboot_flasher.core.config import AppSettings, BootloaderSettings, SessionConfig
from rfboot_flasher.core.project import render_app_settings, render_bootloader_settings
from rfboot_flasher.protocol.rfboot_protocol import START_SIGNATURE, UploadTimings
from rfboot_flasher.protocol.usb2rf_transport import BRIDGE_IDENT, COMMAND_PREFIX, Usb2RfTransport
from rfboot_flasher.utils.codec import pack_le16, pack_le32, unpack_le16
from rfboot_flasher.utils.crypto import ChainState, decrypt_buffer_cbc

KEY = (0x01234567, 0x89ABCDEF, 0xFEDCBA98, 0x76543210)
APP = AppSettings(channel=1, address=b"\x12\x34", reset_string="RST_blink")
BOOTLOADER = BootloaderSettings(channel=4, address=b"\x56\x78", key=KEY)
SESSION = SessionConfig(bootloader=BOOTLOADER, app=APP)
IV_BYTES = b"\x01\x00\x00\x00\x02\x00\x00\x00"

FAST_TIMINGS = UploadTimings(
    handshake_timeout=0.02,
    header_timeout=0.02,
    transfer_stall_timeout=0.02,
    end_timeout=0.02,
)


class FakeSerial:
    """Just enough of serial.Serial: reads never block, writes go to a responder."""

    def __init__(self, responder=None):
        self.rx = bytearray()
        self.writes: List[bytes] = []
        self.timeout = None
        self.is_open = True
        self.responder = responder

    def write(self, data) -> int:
        data = bytes(data)
        self.writes.append(data)
        if self.responder is not None:
            self.responder(self, data)
        return len(data)

    def read(self, size: int = 1) -> bytes:
        chunk = bytes(self.rx[:size])
        del self.rx[:size]
        return chunk

    def feed(self, data: bytes) -> None:
        self.rx.extend(data)

    def close(self) -> None:
        self.is_open = False


class SimulatedRemote:
    """
    usb2rf bridge plus a target running the application and rfboot.

    Decrypts everything it receives with the bootloader key, so tests can
    compare what arrived with the image that was sent.
    """

    def __init__(
        self,
        app: AppSettings = APP,
        bootloader: BootloaderSettings = BOOTLOADER,
        mode: str = "flow",
        ident: bytes = BRIDGE_IDENT,
        iv: bytes = IV_BYTES,
        echo_reset: bool = True,
        handshake_drops: int = 0,
        header_reply: Optional[bytes] = None,
        resend_after: Sequence[int] = (),
        legacy_replies: Optional[List[bytes]] = None,
        control_bytes: Optional[bytes] = None,
    ):
        self.app = app
        self.bootloader = bootloader
        self.mode = mode
        self.ident = ident
        self.iv = iv
        self.echo_reset = echo_reset
        self.handshake_drops = handshake_drops
        self.header_reply = header_reply
        self.resend_after = set(resend_after)
        self.legacy_replies = legacy_replies
        self.control_bytes = control_bytes

        self.channel: Optional[int] = None
        self.address: Optional[bytes] = None
        self.commands: List[tuple] = []
        self.events: List[str] = []
        self.resets = 0
        self.chain: Optional[ChainState] = None
        self.header: Optional[bytes] = None
        self.start_offset = 0
        self.offset = 0
        self.cipher_blocks: List[bytes] = []
        self.blocks: List[bytes] = []
        self.flow_remaining = 0
        self._awaiting_resend = False

    # -- helpers used by tests --------------------------------------------

    def received_image(self) -> bytes:
        """Plaintext blocks reassembled in address order."""
        return b"".join(reversed(self.blocks))

    def _addressed(self, settings) -> bool:
        return self.channel == settings.channel and self.address == settings.address

    # -- wire handling ------------------------------------------------------

    def __call__(self, ser: FakeSerial, data: bytes) -> None:
        if data.startswith(COMMAND_PREFIX):
            self._command(ser, chr(data[5]), data[6:])
        elif self.flow_remaining or self._awaiting_resend:
            self._flow_block(ser, data)
        elif self._addressed(self.app) and data == self.app.reset_string.encode():
            self.resets += 1
            self.events.append("reset")
            if self.echo_reset:
                ser.feed(data)
        elif self._addressed(self.bootloader):
            self._bootloader(ser, data)

    def _command(self, ser: FakeSerial, letter: str, payload: bytes) -> None:
        self.commands.append((letter, payload))
        if letter == "Z":
            ser.feed(self.ident)
        elif letter == "C":
            self.channel = payload[0]
        elif letter == "A":
            self.address = payload[:2]
        elif letter == "U":
            self.flow_remaining = unpack_le16(payload)
            self.events.append("begin")
            ser.feed(self.control_bytes if self.control_bytes is not None else b"P")

    def _decrypt(self, data: bytes) -> None:
        self.cipher_blocks.append(data)
        self.blocks.append(decrypt_buffer_cbc(data, self.bootloader.key, self.chain))
        self.events.append("block")

    def _flow_block(self, ser: FakeSerial, data: bytes) -> None:
        if self._awaiting_resend:
            assert data == self.cipher_blocks[-1]
            self._awaiting_resend = False
            self.events.append("resent")
        else:
            self._decrypt(data)
            self.flow_remaining -= len(data)
            if len(self.blocks) in self.resend_after:
                self.resend_after.discard(len(self.blocks))
                self._awaiting_resend = True
                ser.feed(b"R")
                return
        ser.feed(b"AP" if self.flow_remaining else b"AE")

    def _bootloader(self, ser: FakeSerial, data: bytes) -> None:
        if data == pack_le32(START_SIGNATURE):
            self.events.append("handshake")
            if self.handshake_drops:
                self.handshake_drops -= 1
                return
            if len(self.iv) == 8:
                self.chain = ChainState.from_bytes(self.iv)
            ser.feed(self.iv)
        elif len(data) == 32 and self.header is None:
            self.header = decrypt_buffer_cbc(data, self.bootloader.key, self.chain)
            self.events.append("header")
            padded_len = unpack_le16(self.header[4:6])
            reply = self.header_reply
            if reply is None:
                reply = bytes([4]) + pack_le16(padded_len)
            if reply[:1] == b"\x04" and len(reply) == 3:
                self.start_offset = self.offset = unpack_le16(reply[1:])
            ser.feed(reply)
        elif len(data) == 32 and self.mode == "legacy":
            self._decrypt(data)
            if self.legacy_replies:
                ser.feed(self.legacy_replies.pop(0))
                return
            self.offset -= 32
            if self.offset == 0:
                ser.feed(bytes([6, 0, 0]))
            else:
                ser.feed(bytes([4]) + pack_le16(self.offset))


def make_transport(remote: SimulatedRemote) -> Usb2RfTransport:
    transport = Usb2RfTransport("/dev/ttyFAKE")
    transport.ser = FakeSerial(remote)
    return transport


def write_project(directory, app: AppSettings = APP, bootloader: BootloaderSettings = BOOTLOADER):
    """Write both settings headers into ``directory``."""
    (directory / "rfboot").mkdir(parents=True, exist_ok=True)
    (directory / "app_settings.h").write_text(render_app_settings("blink", app))
    (directory / "rfboot" / "rfboot_settings.h").write_text(render_bootloader_settings(bootloader))
    return directory


def make_image(size: int) -> bytes:
    """A plausible AVR image: even length, does not start with 0xFFFF."""
    return bytes((0x0C + i * 7) % 256 for i in range(size))


@pytest.fixture
def remote() -> SimulatedRemote:
    return SimulatedRemote()


@pytest.fixture
def transport(remote) -> Usb2RfTransport:
    return make_transport(remote)


@pytest.fixture
def project_dir(tmp_path):
    return write_project(tmp_path / "blink")
