"""
Utility modules for rfboot-flasher.

This package groups pure helpers shared by the protocol engine and tests.
"""

# Re-export submodules so `from ..utils import codec` works.
from . import codec as codec
from . import crypto as crypto

from .codec import pack_le16, pack_le32, unpack_le16, unpack_le32, crc16, crc16_reversed
from .crypto import (
    ChainState,
    encrypt_block,
    decrypt_block,
    encrypt_block_cbc,
    decrypt_block_cbc,
    encrypt_buffer_cbc,
    decrypt_buffer_cbc,
)

__all__ = [
    # Submodules
    "codec",
    "crypto",
    # Codec
    "pack_le16",
    "pack_le32",
    "unpack_le16",
    "unpack_le32",
    "crc16",
    "crc16_reversed",
    # Cipher
    "ChainState",
    "encrypt_block",
    "decrypt_block",
    "encrypt_block_cbc",
    "decrypt_block_cbc",
    "encrypt_buffer_cbc",
    "decrypt_buffer_cbc",
]
