"""
Settings file parser for rfboot projects.

An rfboot project keeps its RF parameters in two small C headers that are
compiled into the firmware and read back here:

    app_settings.h
        const uint8_t APP_CHANNEL = 1;
        const uint8_t APP_SYNCWORD[] = {12,34};
        const char RESET_STRING[] = "RST_blink";    (optional)

    rfboot/rfboot_settings.h
        const uint8_t RFBOOT_CHANNEL = 4;
        const uint8_t RFB_SYNCWORD[] = {56,78};
        const uint32_t XTEAKEY[] = { 1u , 2u , 3u , 4u };

Older projects spell the address as a 2-character string
(``APP_ADDRESS`` / ``RFBOOT_ADDRESS``); both spellings are accepted.

Each file is parsed as a unit into a frozen record. All problems found in
a file are collected and raised together as a single ``ConfigError``.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .parsing import (
    extract_assigned,
    extract_braced,
    extract_quoted,
    format_address,
    parse_byte_list,
    parse_channel,
    parse_key,
)

logger = logging.getLogger(__name__)

APP_SETTINGS_FILE = "app_settings.h"
RFBOOT_SETTINGS_FILE = "rfboot/rfboot_settings.h"
ADDRESS_SIZE = 2


@dataclass(frozen=True)
class ConfigProblem:
    """One field that failed validation."""
    field: str
    constraint: str
    line_no: int = 0
    line: str = ""

    def __str__(self) -> str:
        if self.line_no:
            return f"{self.field}: {self.constraint} (line {self.line_no}: {self.line!r})"
        return f"{self.field}: {self.constraint}"


class ConfigError(Exception):
    """
    Raised when a settings file is missing or malformed.

    Attributes:
        path: The offending file
        problems: Every field/constraint that failed
    """
    def __init__(self, path: Union[str, Path], problems: List[ConfigProblem]):
        self.path = str(path)
        self.problems = list(problems)
        lines = [f"In file \"{self.path}\":"]
        lines.extend(f"  - {p}" for p in self.problems)
        super().__init__("\n".join(lines))


@dataclass(frozen=True)
class AppSettings:
    """RF parameters of the application running on the target."""
    channel: int
    address: bytes
    reset_string: str


@dataclass(frozen=True)
class BootloaderSettings:
    """RF parameters and XTEA key of the rfboot bootloader."""
    channel: int
    address: bytes
    key: Tuple[int, int, int, int]


@dataclass(frozen=True)
class SessionConfig:
    """Everything an upload needs from the project directory."""
    bootloader: BootloaderSettings
    app: AppSettings


@dataclass(frozen=True)
class _FieldSpec:
    name: str
    markers: Tuple[str, ...]
    parse: Callable[[str], Any]
    # Value used when no line mentions the field; None makes it required
    default: Any = None


def _parse_channel_line(line: str) -> int:
    return parse_channel(extract_assigned(line))


def _parse_address_line(line: str) -> bytes:
    if "{" in line:
        return parse_byte_list(extract_braced(line), ADDRESS_SIZE)
    text = extract_quoted(line)
    if len(text) != ADDRESS_SIZE:
        raise ValueError(f"address must be {ADDRESS_SIZE} characters, got {len(text)}")
    return text.encode("latin-1")


def _parse_reset_string_line(line: str) -> str:
    text = extract_quoted(line)
    if not text:
        raise ValueError("RESET_STRING cannot be empty")
    try:
        text.encode("latin-1")
    except UnicodeEncodeError:
        raise ValueError("RESET_STRING must only use single-byte (Latin-1) characters")
    return text


def _parse_key_line(line: str) -> Tuple[int, int, int, int]:
    return parse_key(extract_braced(line))


APP_FIELDS = (
    _FieldSpec("APP_ADDRESS", ("APP_ADDRESS", "APP_SYNCWORD"), _parse_address_line),
    _FieldSpec("RESET_STRING", ("RESET_STRING",), _parse_reset_string_line, default=""),
    _FieldSpec("APP_CHANNEL", ("APP_CHANNEL",), _parse_channel_line),
)

RFBOOT_FIELDS = (
    _FieldSpec("XTEAKEY", ("XTEAKEY",), _parse_key_line),
    _FieldSpec("RFBOOT_ADDRESS", ("RFBOOT_ADDRESS", "RFB_SYNCWORD"), _parse_address_line),
    _FieldSpec("RFBOOT_CHANNEL", ("RFBOOT_CHANNEL",), _parse_channel_line),
)


def parse_settings_text(
    text: str,
    fields: Tuple[_FieldSpec, ...],
    path: Union[str, Path] = "<settings>",
) -> Dict[str, Any]:
    """
    Parse settings text into a ``{field name: value}`` dict.

    Lines starting with '/' are comments. Fields are tried in table order
    and the first one whose marker appears on a line claims that line; a
    later line for the same field overrides the earlier one. A field with
    a default may be left out.

    Raises:
        ConfigError: Listing every missing or malformed field.
    """
    values: Dict[str, Any] = {}
    problems: Dict[str, ConfigProblem] = {}

    for line_no, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("/"):
            continue
        spec = _match_field(line, fields)
        if spec is None:
            continue
        try:
            values[spec.name] = spec.parse(line)
            problems.pop(spec.name, None)
        except ValueError as e:
            problems[spec.name] = ConfigProblem(spec.name, str(e), line_no, line)
            values.pop(spec.name, None)

    for spec in fields:
        if spec.name in values or spec.name in problems:
            continue
        if spec.default is not None:
            values[spec.name] = spec.default
        else:
            problems[spec.name] = ConfigProblem(spec.name, "missing")

    if problems:
        ordered = [problems[s.name] for s in fields if s.name in problems]
        raise ConfigError(path, ordered)
    return values


def _match_field(line: str, fields: Tuple[_FieldSpec, ...]) -> Optional[_FieldSpec]:
    for spec in fields:
        if any(marker in line for marker in spec.markers):
            return spec
    return None


def _read_settings(path: Path) -> str:
    try:
        return path.read_text()
    except OSError:
        raise ConfigError(path, [ConfigProblem("file", "does not exist or cannot be read")])


def load_app_settings(path: Union[str, Path] = APP_SETTINGS_FILE) -> AppSettings:
    """Load ``app_settings.h``."""
    path = Path(path)
    values = parse_settings_text(_read_settings(path), APP_FIELDS, path)
    settings = AppSettings(
        channel=values["APP_CHANNEL"],
        address=values["APP_ADDRESS"],
        reset_string=values["RESET_STRING"],
    )
    logger.debug(
        f"App settings: channel={settings.channel} "
        f"address={format_address(settings.address)} reset={settings.reset_string!r}"
    )
    return settings


def load_bootloader_settings(path: Union[str, Path] = RFBOOT_SETTINGS_FILE) -> BootloaderSettings:
    """Load ``rfboot/rfboot_settings.h``."""
    path = Path(path)
    values = parse_settings_text(_read_settings(path), RFBOOT_FIELDS, path)
    settings = BootloaderSettings(
        channel=values["RFBOOT_CHANNEL"],
        address=values["RFBOOT_ADDRESS"],
        key=values["XTEAKEY"],
    )
    logger.debug(
        f"rfboot settings: channel={settings.channel} "
        f"address={format_address(settings.address)}"
    )
    return settings


def load_session_config(project_dir: Union[str, Path] = ".") -> SessionConfig:
    """Load both settings files of the project in ``project_dir``."""
    project_dir = Path(project_dir)
    return SessionConfig(
        bootloader=load_bootloader_settings(project_dir / RFBOOT_SETTINGS_FILE),
        app=load_app_settings(project_dir / APP_SETTINGS_FILE),
    )
