"""
Core workflow actions for rfboot-flasher.

Each action wires discovery, settings, ledger and protocol together and
returns an ``OperationResult`` instead of raising, so the CLI only has
to render it. Serial access goes through ``transport_factory`` so tests
can plug in a fake port.
"""

import hashlib
import logging
import subprocess
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Callable, List, Optional, Union

from rfboot_flasher.protocol.rfboot_protocol import (
    ProgressCallback,
    RfbootError,
    RfbootUploader,
    UploadTimings,
    make_transporter,
)
from rfboot_flasher.protocol.usb2rf_transport import (
    DEFAULT_BAUDRATE,
    Usb2RfTransport,
    Usb2RfTransportError,
)
from rfboot_flasher.serial_ports import (
    LOCK_DIR,
    SERIAL_BY_ID_DIR,
    PortDiscoveryError,
    PortLockGuard,
    add_known_port,
    find_port,
    read_lock_holder,
    wait_for_new_port,
)

from .config import APP_SETTINGS_FILE, ConfigError, load_app_settings, load_session_config
from .firmware import FirmwareImageError, load_firmware
from .ledger import LedgerError, UploadLedger
from .parsing import format_address
from .project import ProjectError, create_project
from .results import OperationResult

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
TransportFactory = Callable[[str, int], Usb2RfTransport]

# Failures that are reported as a plain message, without a traceback
EXPECTED_ERRORS = (
    ConfigError,
    LedgerError,
    FirmwareImageError,
    PortDiscoveryError,
    ProjectError,
    Usb2RfTransportError,
    RfbootError,
    ValueError,
)


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "rfboot_flasher"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def _fail(operation: str, error: Exception, logs: List[str], port: str = "") -> OperationResult:
    if isinstance(error, EXPECTED_ERRORS):
        logger.debug(f"{operation} failed", exc_info=True)
    else:
        logger.exception(f"{operation} failed")
    result = OperationResult.failure(operation=operation, error=str(error), port=port)
    result.logs = logs
    return result


def upload_firmware(
    firmware_path: PathLike,
    project_dir: PathLike = ".",
    port: Optional[str] = None,
    known_ports: Optional[PathLike] = None,
    baudrate: int = DEFAULT_BAUDRATE,
    timeout: float = 10.0,
    method: str = "flow",
    progress_cb: Optional[ProgressCallback] = None,
    timings: Optional[UploadTimings] = None,
    transport_factory: TransportFactory = Usb2RfTransport,
    lock_dir: PathLike = LOCK_DIR,
) -> OperationResult:
    """
    Upload a firmware binary to the target running rfboot.

    When the ledger already holds a byte-identical image nothing is sent
    and the port is never opened.

    Args:
        firmware_path: Raw .bin application image
        project_dir: Directory holding app_settings.h, rfboot/ and the ledger
        port: Serial device; discovered from the allow-list when None
        known_ports: Allow-list file override
        baudrate: usb2rf serial speed
        timeout: Handshake and header deadline in seconds
        method: "flow" (usb2rf paces the packets) or "legacy"
        progress_cb: Called with (bytes_sent, bytes_total) during transfer
        timings: Base timeouts; ``timeout`` overrides the two deadlines
        transport_factory: Builds the (unopened) transport for a port
        lock_dir: Where UUCP lock files live

    Returns:
        OperationResult; metadata holds the upload report fields
    """
    operation = "upload"
    with _capture_logs() as logs:
        try:
            image = load_firmware(firmware_path)
            ledger = UploadLedger(project_dir)
            if ledger.is_identical(image):
                logger.info("Identical firmware already uploaded, nothing to do")
                result = OperationResult.success(operation=operation, bytes_len=len(image))
                result.hashes["sha256"] = hashlib.sha256(image).hexdigest()
                result.metadata["skipped"] = True
                result.add_warning("Identical firmware is already on the target, upload skipped")
                result.logs = logs
                return result

            config = load_session_config(project_dir)
            timings = replace(
                timings or UploadTimings(),
                handshake_timeout=timeout,
                header_timeout=timeout,
            )
            transporter = make_transporter(method, timings, progress_cb)
            port = port or find_port(known_ports)
            logger.info(f"Serial port = {port}")

            with PortLockGuard(port, lock_dir) as guard:
                with transport_factory(port, baudrate) as transport:
                    uploader = RfbootUploader(
                        transport,
                        config,
                        ledger=ledger,
                        transporter=transporter,
                        timings=timings,
                    )
                    report = uploader.upload(image)

            bootloader = config.bootloader
            result = OperationResult.success(
                operation=operation,
                port=port,
                target=f"rfboot ch={bootloader.channel} addr={format_address(bootloader.address)}",
                bytes_len=len(image),
            )
            result.hashes["sha256"] = hashlib.sha256(image).hexdigest()
            if guard.holder is not None:
                result.add_warning(
                    f"PID {guard.holder} holds a lock on the serial port; it was paused during the upload"
                )
            for message in report.warnings:
                result.add_warning(message)
            result.metadata.update(
                skipped=False,
                method=report.method,
                padded_len=report.padded_len,
                start_offset=report.start_offset,
                iv=report.iv,
                reset_acknowledged=report.reset_acknowledged,
                elapsed=report.elapsed,
                phases=[phase.value for phase in report.phases],
            )
            result.logs = logs
            return result

        except Exception as e:
            return _fail(operation, e, logs, port or "")


def reset_local(
    port: Optional[str] = None,
    known_ports: Optional[PathLike] = None,
    baudrate: int = DEFAULT_BAUDRATE,
    transport_factory: TransportFactory = Usb2RfTransport,
    lock_dir: PathLike = LOCK_DIR,
) -> OperationResult:
    """Reset the locally connected usb2rf module (``COMMDR``)."""
    operation = "resetlocal"
    with _capture_logs() as logs:
        try:
            port = port or find_port(known_ports)
            with PortLockGuard(port, lock_dir):
                with transport_factory(port, baudrate) as transport:
                    logger.info("Resetting the usb2rf module")
                    transport.reset_bridge()
            result = OperationResult.success(operation=operation, port=port)
            result.logs = logs
            return result
        except Exception as e:
            return _fail(operation, e, logs, port or "")


def get_port(known_ports: Optional[PathLike] = None) -> OperationResult:
    """Resolve the usb2rf serial port from the allow-list."""
    operation = "getport"
    with _capture_logs() as logs:
        try:
            result = OperationResult.success(operation=operation, port=find_port(known_ports))
            result.logs = logs
            return result
        except Exception as e:
            return _fail(operation, e, logs)


def add_port(
    known_ports: Optional[PathLike] = None,
    directory: PathLike = SERIAL_BY_ID_DIR,
    timeout: float = 60.0,
    interval: float = 1.0,
    **wait_kwargs,
) -> OperationResult:
    """
    Wait for a newly plugged device and add it to the allow-list.

    Extra keyword arguments (``sleep``, ``clock``) go to ``wait_for_new_port``.
    """
    operation = "addport"
    with _capture_logs() as logs:
        try:
            port = wait_for_new_port(directory, timeout=timeout, interval=interval, **wait_kwargs)
            added = add_known_port(port, known_ports)
            result = OperationResult.success(operation=operation, port=port)
            result.metadata["added"] = added
            if not added:
                result.add_warning(f"{port} is already in the known ports file")
            result.logs = logs
            return result
        except Exception as e:
            return _fail(operation, e, logs)


def create(name: str, parent: PathLike = ".") -> OperationResult:
    """Create a new project directory with random RF settings and key."""
    operation = "create"
    with _capture_logs() as logs:
        try:
            info = create_project(name, parent)
            result = OperationResult.success(operation=operation, target=str(info.path))
            result.metadata.update(
                app_channel=info.app.channel,
                app_address=format_address(info.app.address),
                rfboot_channel=info.bootloader.channel,
                rfboot_address=format_address(info.bootloader.address),
                reset_string=info.app.reset_string,
            )
            result.logs = logs
            return result
        except Exception as e:
            return _fail(operation, e, logs)


def monitor(
    command: Optional[List[str]] = None,
    project_dir: PathLike = ".",
    port: Optional[str] = None,
    known_ports: Optional[PathLike] = None,
    baudrate: int = DEFAULT_BAUDRATE,
    settle: float = 0.02,
    transport_factory: TransportFactory = Usb2RfTransport,
    lock_dir: PathLike = LOCK_DIR,
    popen: Callable[..., subprocess.Popen] = subprocess.Popen,
) -> OperationResult:
    """
    Point usb2rf at the application, then optionally start a terminal program.

    The command is started with the port path appended as its last
    argument, unless another process already holds the port lock.
    """
    operation = "monitor"
    with _capture_logs() as logs:
        try:
            app = load_app_settings(Path(project_dir) / APP_SETTINGS_FILE)
            port = port or find_port(known_ports)
            logger.info(f"Serial port = {port}")
            with PortLockGuard(port, lock_dir):
                with transport_factory(port, baudrate) as transport:
                    logger.info(f"Application address = {format_address(app.address)}")
                    logger.info(f"Channel = {app.channel}")
                    transport.set_channel(app.channel, settle)
                    transport.set_address(app.address, settle)

            result = OperationResult.success(operation=operation, port=port)
            result.target = f"app ch={app.channel} addr={format_address(app.address)}"
            if command:
                holder = read_lock_holder(port, lock_dir)
                if holder is not None:
                    result.add_warning(
                        f"PID {holder} holds a lock on \"{port}\", not executing command"
                    )
                else:
                    args = list(command) + [port]
                    logger.info(f"Executing: {' '.join(args)}")
                    process = popen(args)
                    result.metadata["pid"] = process.pid
                    result.metadata["command"] = args
            result.logs = logs
            return result
        except Exception as e:
            return _fail(operation, e, logs, port or "")
