"""
Core module for rfboot-flasher.

This module provides the single source of truth for:
- Settings file parsing (config.py, parsing.py)
- Firmware loading and padding (firmware.py)
- The last-upload ledger (ledger.py)
- Bounded retry loops (retry.py)
- Result objects and standardized warnings (results.py, messages.py)
- Project generation (project.py)

The workflows themselves live in ``core.actions``; import them from
there, since they pull in the protocol layer which depends on this
package.
"""

from .config import (
    AppSettings,
    BootloaderSettings,
    SessionConfig,
    ConfigError,
    ConfigProblem,
    load_app_settings,
    load_bootloader_settings,
    load_session_config,
)
from .firmware import FirmwareImageError, load_firmware, pad_image, validate_firmware
from .ledger import LedgerError, LedgerRecord, UploadLedger
from .retry import RetryOutcome, retry_until
from .results import OperationResult
from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    warnings_from_strings,
    result_to_warnings,
)
from .project import ProjectError, ProjectInfo, create_project

__all__ = [
    # Settings
    "AppSettings",
    "BootloaderSettings",
    "SessionConfig",
    "ConfigError",
    "ConfigProblem",
    "load_app_settings",
    "load_bootloader_settings",
    "load_session_config",
    # Firmware
    "FirmwareImageError",
    "load_firmware",
    "pad_image",
    "validate_firmware",
    # Ledger
    "LedgerError",
    "LedgerRecord",
    "UploadLedger",
    # Retry
    "RetryOutcome",
    "retry_until",
    # Results
    "OperationResult",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "warnings_from_strings",
    "result_to_warnings",
    # Project
    "ProjectError",
    "ProjectInfo",
    "create_project",
]
