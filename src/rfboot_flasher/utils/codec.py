"""
Little-endian packing and the paired CRC-16 used by rfboot.

rfboot checks the firmware image with two CRC-16 values: the classic
avr-libc ``_crc16_update`` (poly 0xA001, reflected, seed 0) over the
image, and the same algorithm over the image bytes in reverse order.
The second one is a different checksum, not a complement of the first.
Both go into the upload header so a frame that fools one is still
rejected by the other.
"""

from __future__ import annotations

import struct

CRC16_POLY = 0xA001


def pack_le16(value: int) -> bytes:
    """Pack an unsigned 16-bit integer, least significant byte first."""
    return struct.pack("<H", value & 0xFFFF)


def pack_le32(value: int) -> bytes:
    """Pack an unsigned 32-bit integer, least significant byte first."""
    return struct.pack("<I", value & 0xFFFFFFFF)


def unpack_le16(data: bytes) -> int:
    return struct.unpack("<H", data[:2])[0]


def unpack_le32(data: bytes) -> int:
    return struct.unpack("<I", data[:4])[0]


def crc16_update(crc: int, byte: int) -> int:
    """Fold one byte into a running CRC-16 (avr-libc ``_crc16_update``)."""
    crc ^= byte
    for _ in range(8):
        if crc & 1:
            crc = (crc >> 1) ^ CRC16_POLY
        else:
            crc >>= 1
    return crc & 0xFFFF


def crc16(data: bytes) -> int:
    """CRC-16 of ``data`` front to back."""
    crc = 0
    for byte in data:
        crc = crc16_update(crc, byte)
    return crc


def crc16_reversed(data: bytes) -> int:
    """CRC-16 of ``data`` taken back to front."""
    crc = 0
    for byte in reversed(data):
        crc = crc16_update(crc, byte)
    return crc
