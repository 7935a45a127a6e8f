"""
Record of the last successful upload.

Two files in the project directory:

    .lastupload   channel, address byte 0, address byte 1, reset string
                  (one value per line)
    .lastbinary   byte-identical copy of the uploaded (unpadded) image

The image copy makes re-uploading unchanged firmware a no-op. The
addressing record tells the next upload which channel/address/reset
string the deployed application actually listens on, even if
app_settings.h has been edited since.
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .config import AppSettings
from .parsing import format_address, parse_channel

logger = logging.getLogger(__name__)

LEDGER_FILE = ".lastupload"
IMAGE_FILE = ".lastbinary"


class LedgerError(Exception):
    """Raised when the ledger file exists but cannot be parsed."""
    pass


@dataclass(frozen=True)
class LedgerRecord:
    """Addressing of the application deployed by the last upload."""
    channel: int
    address: bytes
    reset_string: str

    def as_app_settings(self) -> AppSettings:
        return AppSettings(
            channel=self.channel,
            address=self.address,
            reset_string=self.reset_string,
        )


class UploadLedger:
    """Reads and writes the ledger files in one project directory."""

    def __init__(self, directory: Union[str, Path] = "."):
        self.directory = Path(directory)
        self.record_path = self.directory / LEDGER_FILE
        self.image_path = self.directory / IMAGE_FILE

    def load(self) -> Optional[LedgerRecord]:
        """
        Return the last upload's addressing, or None if there was none.

        Raises:
            LedgerError: If the file is present but malformed.
        """
        try:
            lines = self.record_path.read_text().splitlines()
        except FileNotFoundError:
            return None

        if len(lines) < 3:
            raise LedgerError(
                f"{self.record_path} has {len(lines)} lines, expected 4. "
                f"Delete it to upload with the settings from app_settings.h"
            )
        try:
            channel = parse_channel(lines[0])
            address = bytes([int(lines[1].strip()), int(lines[2].strip())])
        except ValueError as e:
            raise LedgerError(f"{self.record_path} is malformed: {e}")
        reset_string = lines[3].strip() if len(lines) > 3 else ""
        return LedgerRecord(channel=channel, address=address, reset_string=reset_string)

    def last_image(self) -> Optional[bytes]:
        try:
            return self.image_path.read_bytes()
        except FileNotFoundError:
            return None

    def is_identical(self, image: bytes) -> bool:
        """True if ``image`` matches the last uploaded image byte for byte."""
        try:
            if self.image_path.stat().st_size != len(image):
                return False
        except FileNotFoundError:
            return False
        return self.last_image() == image

    def record(self, app: AppSettings, image: bytes) -> None:
        """Persist a successful upload."""
        self.record_path.write_text(
            f"{app.channel}\n{app.address[0]}\n{app.address[1]}\n{app.reset_string}\n"
        )
        tmp_path = self.image_path.with_name(IMAGE_FILE + ".tmp")
        tmp_path.write_bytes(image)
        shutil.move(str(tmp_path), str(self.image_path))
        logger.debug(
            f"Ledger updated: channel={app.channel} "
            f"address={format_address(app.address)} image={len(image)} bytes"
        )
