"""
XTEA block cipher with the chaining scheme rfboot decodes.

rfboot decrypts every 8-byte block as ``plain = D(cipher) ^ iv`` and then
sets ``iv = cipher``. The host side therefore encrypts with
``cipher = E(plain ^ iv)`` and keeps ``iv = cipher``. The chain is shared
by the upload header and every image block, in the exact order the blocks
are encrypted, so callers pass one ``ChainState`` through all of them.

Blocks are two little-endian uint32 words:
[ BYTE0(LSB) BYTE1 BYTE2 BYTE3(MSB) | BYTE4(LSB) ... BYTE7(MSB) ]
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Sequence, Tuple

DELTA = 0x9E3779B9
NUM_ROUNDS = 32
BLOCK_SIZE = 8
MASK32 = 0xFFFFFFFF

Key = Tuple[int, int, int, int]


@dataclass
class ChainState:
    """Two-word IV, advanced by every block encrypted or decrypted."""

    v0: int = 0
    v1: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> "ChainState":
        """Decode 8 bytes as two little-endian uint32 words."""
        if len(data) != BLOCK_SIZE:
            raise ValueError(f"IV must be {BLOCK_SIZE} bytes, got {len(data)}")
        v0, v1 = struct.unpack("<II", data)
        return cls(v0, v1)

    def as_tuple(self) -> Tuple[int, int]:
        return (self.v0, self.v1)

    def copy(self) -> "ChainState":
        return ChainState(self.v0, self.v1)


def encrypt_block(v0: int, v1: int, key: Sequence[int]) -> Tuple[int, int]:
    """XTEA encipher one block (32 rounds)."""
    total = 0
    for _ in range(NUM_ROUNDS):
        v0 = (v0 + ((((v1 << 4) ^ (v1 >> 5)) + v1) ^ (total + key[total & 3]))) & MASK32
        total = (total + DELTA) & MASK32
        v1 = (v1 + ((((v0 << 4) ^ (v0 >> 5)) + v0) ^ (total + key[(total >> 11) & 3]))) & MASK32
    return v0, v1


def decrypt_block(v0: int, v1: int, key: Sequence[int]) -> Tuple[int, int]:
    """XTEA decipher one block, the inverse of :func:`encrypt_block`."""
    total = (DELTA * NUM_ROUNDS) & MASK32
    for _ in range(NUM_ROUNDS):
        v1 = (v1 - ((((v0 << 4) ^ (v0 >> 5)) + v0) ^ (total + key[(total >> 11) & 3]))) & MASK32
        total = (total - DELTA) & MASK32
        v0 = (v0 - ((((v1 << 4) ^ (v1 >> 5)) + v1) ^ (total + key[total & 3]))) & MASK32
    return v0, v1


def encrypt_block_cbc(v: Tuple[int, int], key: Sequence[int], iv: ChainState) -> Tuple[int, int]:
    """Encrypt ``v ^ iv`` and store the ciphertext back into ``iv``."""
    result = encrypt_block(v[0] ^ iv.v0, v[1] ^ iv.v1, key)
    iv.v0, iv.v1 = result
    return result


def decrypt_block_cbc(v: Tuple[int, int], key: Sequence[int], iv: ChainState) -> Tuple[int, int]:
    """Inverse of :func:`encrypt_block_cbc` (what rfboot runs)."""
    d0, d1 = decrypt_block(v[0], v[1], key)
    result = (d0 ^ iv.v0, d1 ^ iv.v1)
    iv.v0, iv.v1 = v
    return result


def _check_block_multiple(data: bytes) -> None:
    if len(data) % BLOCK_SIZE != 0:
        raise ValueError(
            f"Data to be encrypted must have size multiple of {BLOCK_SIZE} bytes, "
            f"got {len(data)}"
        )


def encrypt_buffer_cbc(data: bytes, key: Sequence[int], iv: ChainState) -> bytes:
    """
    Encrypt ``data`` block by block in the order given.

    The caller decides the traversal order of a larger buffer; this
    function only walks the 8-byte blocks of ``data`` front to back.

    Raises:
        ValueError: If ``len(data)`` is not a multiple of 8
    """
    _check_block_multiple(data)
    out = bytearray()
    for i in range(0, len(data), BLOCK_SIZE):
        words = struct.unpack_from("<II", data, i)
        out += struct.pack("<II", *encrypt_block_cbc(words, key, iv))
    return bytes(out)


def decrypt_buffer_cbc(data: bytes, key: Sequence[int], iv: ChainState) -> bytes:
    """Decrypt ``data`` block by block in the order given."""
    _check_block_multiple(data)
    out = bytearray()
    for i in range(0, len(data), BLOCK_SIZE):
        words = struct.unpack_from("<II", data, i)
        out += struct.pack("<II", *decrypt_block_cbc(words, key, iv))
    return bytes(out)
