"""
Firmware image loading and padding.

rfboot lives in the top 4 KB of a 32 KB ATmega flash, so an application
image can use at most 28 KB. AVR code is made of 16-bit opcodes, so the
image length must be even, and a real image never starts with 0xFFFF
(erased flash).
"""

import logging
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

FLASH_SIZE = 32 * 1024
BOOTLOADER_SIZE = 4096
MAX_APP_SIZE = FLASH_SIZE - BOOTLOADER_SIZE
PAYLOAD = 32
PAD_BYTE = 0xFF


class FirmwareImageError(Exception):
    """Raised when a firmware file cannot be uploaded as an application."""
    pass


def validate_firmware(data: bytes) -> None:
    """
    Check an application image before upload.

    Raises:
        FirmwareImageError: If the image is too small, too big, of odd
            length, or starts with 0xFFFF.
    """
    size = len(data)
    if size < 2:
        raise FirmwareImageError(f"Provided file is only {size} bytes")
    if size > MAX_APP_SIZE:
        raise FirmwareImageError(
            f"Very big application code size: {size} bytes (max {MAX_APP_SIZE})"
        )
    if size % 2:
        raise FirmwareImageError("File size must be multiple of 2")
    if data[:2] == b"\xff\xff":
        raise FirmwareImageError(
            "The binary of the application cannot start with 0xFFFF. "
            "This file cannot be an AVR binary (opcodes) file"
        )


def load_firmware(path: Union[str, Path]) -> bytes:
    """
    Read and validate a raw binary firmware file.

    Raises:
        FirmwareImageError: If the file is missing or fails validation.
    """
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise FirmwareImageError(f"Cannot read firmware file {path}: {e}")
    validate_firmware(data)
    logger.debug(f"Loaded {path} ({len(data)} bytes)")
    return data


def pad_image(data: bytes, payload: int = PAYLOAD) -> bytes:
    """Pad ``data`` with 0xFF up to the next multiple of ``payload``."""
    remainder = len(data) % payload
    if remainder == 0:
        return bytes(data)
    return bytes(data) + bytes([PAD_BYTE]) * (payload - remainder)
