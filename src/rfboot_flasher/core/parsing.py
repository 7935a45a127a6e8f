"""
Centralized parsing helpers for values found in rfboot settings files.

The settings parser in ``config.py`` and the CLI must import these helpers
rather than re-implement them. Every helper raises ``ValueError`` with a
message describing the expected shape.
"""

from typing import List, Tuple

MAX_CHANNEL = 127
KEY_WORDS = 4
KEY_MSG = "XTEAKEY: Expecting 4 integers (0 to 4294967295) separated by comma"


def parse_channel(value: str) -> int:
    """
    Parse an RF channel number.

    Accepts a plain decimal integer in the range 0..127.

    Raises:
        ValueError: If value is not a decimal integer in range.
    """
    value = value.strip()
    if not value or not value.isdigit():
        raise ValueError(f"Channel must be an integer, got '{value}'")
    channel = int(value)
    if channel > MAX_CHANNEL:
        raise ValueError(f"Channel must be 0..{MAX_CHANNEL}, got {channel}")
    return channel


def parse_key(value: str) -> Tuple[int, int, int, int]:
    """
    Parse an XTEA key written as a C initializer body.

    Accepts:
        - "1, 2, 3, 4"
        - "1u , 2u , 3u , 4u" (C unsigned suffixes, any case)

    Returns:
        Tuple of four uint32 values.

    Raises:
        ValueError: If there are not exactly 4 values or one is out of range.
    """
    parts = value.lower().replace("u", "").replace(" ", "").split(",")
    if len(parts) != KEY_WORDS:
        raise ValueError(KEY_MSG)
    words: List[int] = []
    for part in parts:
        try:
            word = int(part.strip())
        except ValueError:
            raise ValueError(f"{KEY_MSG}, got '{part}'")
        if not 0 <= word <= 0xFFFFFFFF:
            raise ValueError(KEY_MSG)
        words.append(word)
    return tuple(words)  # type: ignore[return-value]


def parse_byte_list(value: str, count: int) -> bytes:
    """
    Parse a comma separated list of byte values, e.g. "12, 200".

    Raises:
        ValueError: If the list does not hold exactly ``count`` values 0..255.
    """
    parts = [p.strip() for p in value.split(",") if p.strip()]
    if len(parts) != count:
        raise ValueError(f"Expected {count} comma separated bytes, got {len(parts)}")
    out = bytearray()
    for part in parts:
        try:
            byte = int(part)
        except ValueError:
            raise ValueError(f"Invalid byte value '{part}'")
        if not 0 <= byte <= 255:
            raise ValueError(f"Byte value out of range: {byte}")
        out.append(byte)
    return bytes(out)


def extract_quoted(line: str) -> str:
    """
    Return the text between the only pair of double quotes on a line.

    Raises:
        ValueError: If the line does not contain exactly 2 double quotes.
    """
    count = line.count('"')
    if count != 2:
        raise ValueError(f"line has {count} '\"'. Expected 2")
    start = line.find('"')
    end = line.rfind('"')
    return line[start + 1:end]


def extract_braced(line: str) -> str:
    """
    Return the text between '{' and '}' on a line.

    Raises:
        ValueError: If braces are missing or out of order.
    """
    start = line.find("{")
    end = line.find("}")
    if start == -1 or end == -1 or end < start:
        raise ValueError("expected a '{...}' initializer")
    return line[start + 1:end]


def extract_assigned(line: str) -> str:
    """
    Return the right hand side of a ``NAME = value;`` line.

    Raises:
        ValueError: If '=' is not present exactly once or ';' is missing.
    """
    if line.count("=") != 1:
        raise ValueError("line is missing a '='")
    start = line.find("=")
    end = line.find(";")
    if end == -1:
        raise ValueError("line is missing a ';' at the end")
    return line[start + 1:end].strip()


def format_address(address: bytes) -> str:
    """Format a 2-byte RF address the way the settings files write it."""
    return "{" + ",".join(str(b) for b in address) + "}"
