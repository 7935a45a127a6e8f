"""
rfboot-flasher - Wireless firmware upload for ATmega targets running rfboot

Talks to the rfboot bootloader through a usb2rf bridge module and
uploads XTEA-encrypted application images over the radio link.
"""

__version__ = "0.1.0"

from rfboot_flasher.protocol import Usb2RfTransport, RfbootUploader
from rfboot_flasher.core.config import load_session_config

__all__ = [
    "Usb2RfTransport",
    "RfbootUploader",
    "load_session_config",
    "__version__",
]
