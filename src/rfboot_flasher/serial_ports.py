"""
Serial port discovery and arbitration for usb2rf modules.

Which devices are usb2rf modules is decided by an allow-list file
(``~/.usb2rf`` by default), one ``/dev/...`` path per line. The first
listed device that is plugged in right now is used.

A terminal program may keep the port open while we upload. If it holds
a UUCP lock file (``/var/lock/LCK..ttyUSB0``), ``PortLockGuard`` pauses
it with SIGSTOP for the duration of the upload and resumes it after.
"""

import logging
import os
import signal
import time
from pathlib import Path
from typing import Callable, List, Optional, Union

from rfboot_flasher.core.retry import retry_until

logger = logging.getLogger(__name__)

KNOWN_PORTS_FILE = "~/.usb2rf"
KNOWN_PORTS_ENV = "USB2RF_CONFIG"
SERIAL_BY_ID_DIR = "/dev/serial/by-id"
LOCK_DIR = "/var/lock"

COMMENT_PREFIXES = ("#", "//", "!")
KNOWN_PORTS_HEADER = "# serial ports that rftool regards as usb2rf modules\n"
ADDPORT_COMMENT = "# port added with \"rftool addport\""

PathLike = Union[str, Path]


class PortDiscoveryError(Exception):
    """No usable usb2rf serial port"""
    pass


class NewPortTimeout(PortDiscoveryError):
    """No new device appeared while waiting for one"""
    pass


def known_ports_path(path: Optional[PathLike] = None) -> Path:
    """Resolve the allow-list location: explicit path, $USB2RF_CONFIG, then ~/.usb2rf."""
    if path is None:
        path = os.environ.get(KNOWN_PORTS_ENV) or KNOWN_PORTS_FILE
    return Path(path).expanduser()


def parse_known_ports(text: str) -> List[str]:
    """Extract device paths from allow-list text, skipping comments and non-/dev/ lines."""
    ports = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith(COMMENT_PREFIXES):
            continue
        if not line.startswith("/dev/"):
            continue
        ports.append(line)
    return ports


def read_known_ports(path: Optional[PathLike] = None) -> List[str]:
    """
    Read the allow-list.

    A missing file is created with a comment header and yields no ports.

    Raises:
        PortDiscoveryError: If the file exists but cannot be read
    """
    config = known_ports_path(path)
    if not config.exists():
        logger.warning(f"Failed to open file \"{config}\", creating an empty one")
        try:
            config.parent.mkdir(parents=True, exist_ok=True)
            config.write_text(KNOWN_PORTS_HEADER)
        except OSError as e:
            raise PortDiscoveryError(f"Cannot create \"{config}\": {e}")
        return []
    try:
        return parse_known_ports(config.read_text())
    except OSError as e:
        raise PortDiscoveryError(f"Failed to open file \"{config}\": {e}")


def get_connected_ports(directory: PathLike = SERIAL_BY_ID_DIR) -> List[str]:
    """List the serial device symlinks currently present (sorted)."""
    root = Path(directory)
    if not root.is_dir():
        return []
    return sorted(str(entry) for entry in root.iterdir() if entry.is_symlink())


def find_port(path: Optional[PathLike] = None) -> str:
    """
    Return the canonical device path of the first connected allow-listed port.

    Raises:
        PortDiscoveryError: If nothing is listed or nothing listed is connected
    """
    config = known_ports_path(path)
    known = read_known_ports(config)
    if not known:
        raise PortDiscoveryError(
            f"No serial port is listed in \"{config}\". Plug in the module and run 'rftool addport'"
        )
    for entry in known:
        if os.path.exists(entry) or os.path.islink(entry):
            port = os.path.realpath(entry)
            logger.debug(f"Using {entry} -> {port}")
            return port
    raise PortDiscoveryError(f"\"{config}\" does not point to any connected device")


def lock_file_for(port: str, lock_dir: PathLike = LOCK_DIR) -> Path:
    return Path(lock_dir) / f"LCK..{os.path.basename(port)}"


def process_exists(pid: int) -> bool:
    """Check whether a process is alive (signal 0 probe)."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def read_lock_holder(port: str, lock_dir: PathLike = LOCK_DIR) -> Optional[int]:
    """
    Return the pid of a live process holding the port's lock file.

    A lock whose holder is gone is stale and gets removed. A lock that
    cannot be parsed is left alone and treated as free.
    """
    lockfile = lock_file_for(port, lock_dir)
    if not lockfile.exists():
        return None

    logger.info(f"Lock file found: \"{lockfile}\"")
    try:
        pid = int(lockfile.read_text().split()[0])
    except (OSError, IndexError, ValueError):
        logger.warning(f"Cannot read a pid from \"{lockfile}\", ignoring it")
        return None
    if pid <= 0:
        logger.warning(f"Invalid pid {pid} in \"{lockfile}\", ignoring it")
        return None

    if process_exists(pid):
        return pid

    logger.info(f"Lock file \"{lockfile}\" is stale, removing it")
    try:
        lockfile.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Cannot remove stale lock file \"{lockfile}\": {e}")
    return None


class PortLockGuard:
    """
    Pause the process holding a serial port for the lifetime of the guard.

    The holder gets SIGSTOP on entry and exactly one SIGCONT on exit,
    whether the body returns or raises.

    Example:
        with PortLockGuard("/dev/ttyUSB0"):
            upload(...)
    """

    def __init__(
        self,
        port: str,
        lock_dir: PathLike = LOCK_DIR,
        kill: Optional[Callable[[int, int], None]] = None,
    ):
        self.port = port
        self.lock_dir = lock_dir
        self._kill = kill or os.kill
        self.holder: Optional[int] = None
        self._released = False

    def acquire(self) -> Optional[int]:
        pid = read_lock_holder(self.port, self.lock_dir)
        if pid is None:
            return None
        try:
            self._kill(pid, signal.SIGSTOP)
        except ProcessLookupError:
            logger.info(f"PID {pid} exited before it could be stopped")
            return None
        self.holder = pid
        logger.warning(f"Stopped PID {pid} that holds a lock on the serial port")
        return pid

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        if self.holder is None:
            return
        logger.info(f"Sending a CONT signal to PID {self.holder}")
        try:
            self._kill(self.holder, signal.SIGCONT)
        except (ProcessLookupError, PermissionError) as e:
            logger.warning(f"Could not resume PID {self.holder}: {e}")

    def __enter__(self) -> "PortLockGuard":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def wait_for_new_port(
    directory: PathLike = SERIAL_BY_ID_DIR,
    timeout: float = 60.0,
    interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> str:
    """
    Wait for a serial device that was not connected when the call started.

    Raises:
        NewPortTimeout: If no new device shows up within ``timeout`` seconds
    """
    before = set(get_connected_ports(directory))
    logger.info("Waiting for a new module to be inserted to a USB port")

    def poll() -> Optional[str]:
        sleep(interval)
        for port in get_connected_ports(directory):
            if port not in before:
                return port
        return None

    outcome = retry_until(poll, timeout, clock=clock)
    if outcome.timed_out:
        raise NewPortTimeout(f"No new serial device appeared within {timeout:g} sec")
    return outcome.value


def add_known_port(port: str, path: Optional[PathLike] = None) -> bool:
    """
    Append a device to the allow-list.

    Returns:
        False if it was already listed
    """
    config = known_ports_path(path)
    if port in read_known_ports(config):
        logger.info(f"The port is already in \"{config}\"")
        return False
    logger.info(f"Adding port: {port}")
    with open(config, "a") as f:
        f.write(f"\n{ADDPORT_COMMENT}\n{port}\n")
    return True
