"""
New project generation.

``create_project`` makes a project directory holding freshly generated
settings headers. Sync words and the XTEA key come from ``secrets``; once
the bootloader is burned with them they cannot change.
"""

import logging
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Tuple, Union

from .config import APP_SETTINGS_FILE, RFBOOT_SETTINGS_FILE, AppSettings, BootloaderSettings

logger = logging.getLogger(__name__)

DEFAULT_APP_CHANNEL = 1
DEFAULT_RFBOOT_CHANNEL = 4
RESET_PREFIX = "RST_"


class ProjectError(Exception):
    """Raised when a project cannot be created."""
    pass


@dataclass(frozen=True)
class ProjectInfo:
    """Settings written into a new project."""
    path: Path
    app: AppSettings
    bootloader: BootloaderSettings


def format_key(key: Tuple[int, int, int, int]) -> str:
    """Render a key as a C array initializer: ``{ 1u , 2u , 3u , 4u }``."""
    return "{ " + " , ".join(f"{word}u" for word in key) + " }"


def render_app_settings(name: str, app: AppSettings) -> str:
    return (
        "// This file :\n"
        "// - Is used by the Arduino .ino file to get RF settings\n"
        "// - Is parsed at runtime by rftool to get app parameters (channel etc)\n"
        "\n"
        "// These parameters are generated with\n"
        f"// \"rftool create {name}\"\n"
        "// The value of APP_SYNCWORD is randomly generated\n"
        "\n"
        f"const uint8_t APP_CHANNEL = {app.channel};\n"
        f"const uint8_t APP_SYNCWORD[] = {{{app.address[0]},{app.address[1]}}};\n"
        f"const char RESET_STRING[] = \"{app.reset_string}\";\n"
    )


def render_bootloader_settings(bootloader: BootloaderSettings) -> str:
    return (
        "// XTEAKEY and RFB_SYNCWORD are randomly generated\n"
        "// After the bootloader is installed to the target module, you cannot\n"
        "// change the parameters, otherwise, the upload process will fail\n"
        "\n"
        f"const uint8_t RFBOOT_CHANNEL = {bootloader.channel};\n"
        f"const uint8_t RFB_SYNCWORD[] = {{{bootloader.address[0]},{bootloader.address[1]}}};\n"
        "// This key is only used when updating firmware. The application code does not use it\n"
        f"const uint32_t XTEAKEY[] = {format_key(bootloader.key)};\n"
    )


def create_project(
    name: str,
    parent: Union[str, Path] = ".",
    token_bytes: Callable[[int], bytes] = secrets.token_bytes,
) -> ProjectInfo:
    """
    Create ``parent/name`` with ``app_settings.h`` and ``rfboot/rfboot_settings.h``.

    Raises:
        ProjectError: If the name is empty, not alphanumeric, or already taken
    """
    name = name.strip()
    if not name:
        raise ProjectError("Project name not given")
    if not (name.isascii() and name.isalnum()):
        raise ProjectError("Only alphanumeric characters should be used in project name")

    path = Path(parent) / name
    if path.exists() or path.is_symlink():
        raise ProjectError(f"\"{path}\" already exists")

    raw = token_bytes(20)
    key = tuple(int.from_bytes(raw[i:i + 4], "little") for i in range(4, 20, 4))
    app = AppSettings(
        channel=DEFAULT_APP_CHANNEL,
        address=raw[0:2],
        reset_string=RESET_PREFIX + name,
    )
    bootloader = BootloaderSettings(
        channel=DEFAULT_RFBOOT_CHANNEL,
        address=raw[2:4],
        key=key,
    )

    (path / RFBOOT_SETTINGS_FILE).parent.mkdir(parents=True)
    (path / APP_SETTINGS_FILE).write_text(render_app_settings(name, app))
    (path / RFBOOT_SETTINGS_FILE).write_text(render_bootloader_settings(bootloader))
    logger.info(f"Created project {path}")
    return ProjectInfo(path=path, app=app, bootloader=bootloader)
