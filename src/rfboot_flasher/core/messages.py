"""
Standardized warning and message system for rfboot-flasher.

Provides structured warning items with stable codes so the CLI can show
a remediation hint next to each problem.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Any


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Discovery / arbitration
    W_DEVICE_NOT_FOUND = "W_DEVICE_NOT_FOUND"
    W_PORT_BUSY = "W_PORT_BUSY"
    W_STALE_LOCK = "W_STALE_LOCK"

    # Settings
    W_CONFIG_INVALID = "W_CONFIG_INVALID"
    W_LEDGER_OVERRIDE = "W_LEDGER_OVERRIDE"

    # Link
    W_BRIDGE_NO_CONTACT = "W_BRIDGE_NO_CONTACT"
    W_RESET_NO_ECHO = "W_RESET_NO_ECHO"
    W_BOOTLOADER_TIMEOUT = "W_BOOTLOADER_TIMEOUT"

    # Bootloader verdicts
    W_SIGNATURE_REJECTED = "W_SIGNATURE_REJECTED"
    W_SIZE_REJECTED = "W_SIZE_REJECTED"
    W_PROTOCOL_ERROR = "W_PROTOCOL_ERROR"

    # Operation
    W_IDENTICAL_FIRMWARE = "W_IDENTICAL_FIRMWARE"

    # Generic
    W_UNKNOWN = "W_UNKNOWN"


WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_DEVICE_NOT_FOUND:
        "Plug in the usb2rf module, or register it with 'rftool addport'.",
    WarningCode.W_PORT_BUSY:
        "Another program holds the serial port. It is paused during the upload.",
    WarningCode.W_STALE_LOCK:
        "A lock file left by a dead process was removed.",
    WarningCode.W_CONFIG_INVALID:
        "Fix the listed lines in app_settings.h or rfboot/rfboot_settings.h.",
    WarningCode.W_LEDGER_OVERRIDE:
        "The deployed firmware still uses the old values; delete .lastupload to override.",
    WarningCode.W_BRIDGE_NO_CONTACT:
        "Re-plug the usb2rf module or run 'rftool resetlocal'.",
    WarningCode.W_RESET_NO_ECHO:
        "The application did not confirm the reset. Press the target's reset button if the upload stalls.",
    WarningCode.W_BOOTLOADER_TIMEOUT:
        "Reset the target module by hand while the upload is retrying.",
    WarningCode.W_SIGNATURE_REJECTED:
        "The XTEA key or RF address does not match the bootloader burned on the target.",
    WarningCode.W_SIZE_REJECTED:
        "The application does not fit in the space rfboot leaves free.",
    WarningCode.W_PROTOCOL_ERROR:
        "Unexpected reply from the bootloader. Check RF link quality and retry.",
    WarningCode.W_IDENTICAL_FIRMWARE:
        "Delete .lastbinary to force a new upload.",
    WarningCode.W_UNKNOWN:
        "Check logs for more details (run with --verbose).",
}


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        """Set default remediation if not provided."""
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]

    @classmethod
    def info(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.INFO, code, title, detail)

    @classmethod
    def warn(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.WARN, code, title, detail)

    @classmethod
    def error(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.ERROR, code, title, detail)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON/display."""
        return {
            "level": self.level.value,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }


# Ordered (substring, code) pairs; first match wins.
_PATTERNS = (
    ("identical", WarningCode.W_IDENTICAL_FIRMWARE),
    ("signature", WarningCode.W_SIGNATURE_REJECTED),
    ("size is invalid", WarningCode.W_SIZE_REJECTED),
    ("usb2rf", WarningCode.W_BRIDGE_NO_CONTACT),
    ("reset command", WarningCode.W_RESET_NO_ECHO),
    ("cannot contact rfboot", WarningCode.W_BOOTLOADER_TIMEOUT),
    ("protocol error", WarningCode.W_PROTOCOL_ERROR),
    ("unknown response", WarningCode.W_PROTOCOL_ERROR),
    ("changed to", WarningCode.W_LEDGER_OVERRIDE),
    ("stale", WarningCode.W_STALE_LOCK),
    ("holds a lock", WarningCode.W_PORT_BUSY),
    ("in file", WarningCode.W_CONFIG_INVALID),
    ("connected device", WarningCode.W_DEVICE_NOT_FOUND),
    ("no serial port", WarningCode.W_DEVICE_NOT_FOUND),
)


def classify_message(message: str) -> WarningCode:
    """Map a plain message to its stable code."""
    lowered = message.lower()
    for pattern, code in _PATTERNS:
        if pattern in lowered:
            return code
    return WarningCode.W_UNKNOWN


def warnings_from_strings(
    warning_strings: List[str],
    default_level: MessageLevel = MessageLevel.WARN,
) -> List[WarningItem]:
    """Convert plain warning strings to WarningItem list."""
    return [
        WarningItem(level=default_level, code=classify_message(msg), title=msg)
        for msg in warning_strings
    ]


def result_to_warnings(result: "OperationResult") -> List[WarningItem]:
    """
    Convert Result object's warnings and errors to WarningItem list.

    Args:
        result: OperationResult from core operations
    """
    items = warnings_from_strings(result.warnings, MessageLevel.WARN)
    items.extend(warnings_from_strings(result.errors, MessageLevel.ERROR))
    return items
