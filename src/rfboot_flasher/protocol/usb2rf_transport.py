"""
usb2rf Transport Layer

Handles low-level serial communication with the usb2rf bridge module.

The bridge relays every byte it receives to the air and back. A byte
sequence starting with the word "COMMD" switches it to command mode for
one command:

    COMMD C <channel>      set RF channel (0..127)
    COMMD A <a0> <a1>      set 2-byte RF address (sync word)
    COMMD Z                fast reset, replies "USB2RF"
    COMMD U <len lo/hi>    start a flow-controlled upload of len bytes
    COMMD R                reset the module

This module provides:
- Serial port initialization and configuration
- The byte-level primitive: read one byte with a timeout, write bytes
- Packet reads bounded by a per-byte timeout
- The bridge command set
"""

import logging
from typing import Optional

import serial

from rfboot_flasher.utils.codec import pack_le16

logger = logging.getLogger(__name__)

COMMAND_PREFIX = b"COMMD"
BRIDGE_IDENT = b"USB2RF"
DEFAULT_BAUDRATE = 38400
MAX_CHANNEL = 127


class Usb2RfTransportError(Exception):
    """Base exception for transport layer errors"""
    pass


class BridgeNoContact(Usb2RfTransportError):
    """usb2rf did not identify itself"""
    pass


class Usb2RfTransport:
    """
    Serial transport for the usb2rf bridge.

    "No data yet" is never an error here: ``read_byte`` returns None and
    ``read_packet`` returns whatever arrived before a byte timed out.

    Example:
        transport = Usb2RfTransport(port="/dev/ttyUSB0")
        transport.open()
        transport.identify_bridge()
        transport.set_channel(4)
        transport.set_address(b"\\x12\\x34")
        transport.close()
    """

    def __init__(
        self,
        port: str,
        baudrate: int = DEFAULT_BAUDRATE,
        timeout: float = 0.1,
    ):
        """
        Initialize transport layer.

        Args:
            port: Serial device (e.g., "/dev/ttyUSB0")
            baudrate: Serial baud rate of the usb2rf module
            timeout: Default per-byte read timeout in seconds
        """
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.ser: Optional[serial.Serial] = None

    def open(self) -> None:
        """
        Open serial port.

        Raises:
            Usb2RfTransportError: If port cannot be opened
        """
        try:
            self.ser = serial.Serial(
                port=self.port,
                baudrate=self.baudrate,
                bytesize=8,
                parity="N",
                stopbits=1,
                timeout=self.timeout,
                write_timeout=2.0,
            )
            logger.debug(f"Opened {self.port} at {self.baudrate} bps")
        except (serial.SerialException, OSError) as e:
            raise Usb2RfTransportError(f"Cannot open serial port \"{self.port}\": {e}")

    def close(self) -> None:
        """Close serial port."""
        if self.ser and self.ser.is_open:
            self.ser.close()
            logger.debug(f"Closed {self.port}")

    def __enter__(self) -> "Usb2RfTransport":
        if self.ser is None:
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_open(self) -> serial.Serial:
        if not self.ser or not self.ser.is_open:
            raise Usb2RfTransportError("Serial port not open")
        return self.ser

    def write(self, data: bytes) -> None:
        """
        Send raw bytes.

        Raises:
            Usb2RfTransportError: If write fails
        """
        ser = self._require_open()
        try:
            written = ser.write(data)
            if written is not None and written != len(data):
                raise Usb2RfTransportError(
                    f"Incomplete write: sent {written}/{len(data)} bytes"
                )
            logger.debug(f">>> {data.hex().upper()}")
        except serial.SerialException as e:
            raise Usb2RfTransportError(f"Write error: {e}")

    def read_byte(self, timeout: Optional[float] = None) -> Optional[int]:
        """
        Read one byte.

        Args:
            timeout: Seconds to wait (default: transport timeout)

        Returns:
            The byte value, or None if nothing arrived in time
        """
        ser = self._require_open()
        if timeout is None:
            timeout = self.timeout
        try:
            if ser.timeout != timeout:
                ser.timeout = timeout
            data = ser.read(1)
        except serial.SerialException as e:
            raise Usb2RfTransportError(f"Read error: {e}")
        if not data:
            return None
        return data[0]

    def read_packet(self, size: int, timeout: Optional[float] = None) -> bytes:
        """
        Read up to ``size`` bytes, stopping early when one byte times out.

        Returns:
            The bytes received (possibly fewer than ``size``, possibly empty)
        """
        packet = bytearray()
        while len(packet) < size:
            byte = self.read_byte(timeout)
            if byte is None:
                break
            packet.append(byte)
        if packet:
            logger.debug(f"<<< {packet.hex().upper()}")
        return bytes(packet)

    def drain(self, timeout: float = 0.1) -> bytes:
        """
        Discard incoming bytes until the line stays quiet for ``timeout``.

        Returns:
            Bytes that were drained (for logging)
        """
        junk = bytearray()
        while True:
            byte = self.read_byte(timeout)
            if byte is None:
                break
            junk.append(byte)
        if junk:
            logger.debug(f"Drained {len(junk)} bytes of junk: {junk.hex().upper()}")
        return bytes(junk)

    # -- bridge commands --------------------------------------------------

    def command(self, letter: str, payload: bytes = b"") -> None:
        """Send one command-mode command to the bridge."""
        self.write(COMMAND_PREFIX + letter.encode("ascii") + payload)

    def set_channel(self, channel: int, settle: float = 0.01) -> None:
        if not 0 <= channel <= MAX_CHANNEL:
            raise ValueError(f"Channel must be 0..{MAX_CHANNEL}, got {channel}")
        self.command("C", bytes([channel]))
        self.drain(settle)

    def set_address(self, address: bytes, settle: float = 0.01) -> None:
        if len(address) != 2:
            raise ValueError(f"RF address must be 2 bytes, got {len(address)}")
        self.command("A", bytes(address))
        self.drain(settle)

    def fast_reset(self) -> None:
        self.command("Z")

    def reset_bridge(self) -> None:
        self.command("R")

    def begin_transfer(self, length: int) -> None:
        """Hand a flow-controlled upload of ``length`` bytes to the bridge."""
        self.command("U", pack_le16(length))

    def identify_bridge(self, timeout: float = 0.2, drain_timeout: float = 0.005) -> None:
        """
        Fast-reset the bridge and check its identification string.

        Raises:
            BridgeNoContact: If the bridge does not answer "USB2RF"
        """
        self.drain(drain_timeout)
        self.fast_reset()
        reply = self.read_packet(len(BRIDGE_IDENT), timeout)
        if reply != BRIDGE_IDENT:
            raise BridgeNoContact(
                f"Cannot contact usb2rf on {self.port} (got {reply!r})"
            )
        logger.info(f"Module identified: \"{BRIDGE_IDENT.decode()}\"")


# Convenient module-level shortcut
def open_serial(port: str, baudrate: int = DEFAULT_BAUDRATE, timeout: float = 0.1) -> Usb2RfTransport:
    """
    Open a usb2rf transport connection.

    Returns:
        Usb2RfTransport instance (already open)
    """
    transport = Usb2RfTransport(port, baudrate, timeout)
    transport.open()
    return transport
