"""usb2rf bridge transport and the rfboot upload protocol."""

from .usb2rf_transport import (
    Usb2RfTransport,
    Usb2RfTransportError,
    BridgeNoContact,
    open_serial,
    DEFAULT_BAUDRATE,
)
from .rfboot_protocol import (
    RfbootUploader,
    UploadPhase,
    UploadReport,
    UploadTimings,
    ImageTransporter,
    FlowControlledTransporter,
    LegacyTransporter,
    make_transporter,
    build_upload_header,
    encrypt_image,
    resolve_reset_target,
    RfbootError,
    RfbootTimeout,
    RfbootProtocolError,
    SignatureRejected,
    InvalidCodeSize,
    WrongCrc,
    START_SIGNATURE,
)

__all__ = [
    # Transport
    "Usb2RfTransport",
    "Usb2RfTransportError",
    "BridgeNoContact",
    "open_serial",
    "DEFAULT_BAUDRATE",
    # Upload protocol
    "RfbootUploader",
    "UploadPhase",
    "UploadReport",
    "UploadTimings",
    "ImageTransporter",
    "FlowControlledTransporter",
    "LegacyTransporter",
    "make_transporter",
    "build_upload_header",
    "encrypt_image",
    "resolve_reset_target",
    "RfbootError",
    "RfbootTimeout",
    "RfbootProtocolError",
    "SignatureRejected",
    "InvalidCodeSize",
    "WrongCrc",
    "START_SIGNATURE",
]
