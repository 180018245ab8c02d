"""Serial line transport for SCPI instruments."""

from __future__ import annotations

import errno
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

import serial
from serial.tools import list_ports

from psu_control.instrumentation.errors import (
    DeviceDisconnected,
    PermissionDenied,
    PortUnavailable,
    CommandTimeout,
    TransportError,
)
from psu_control.io.settings import SerialSettings

logger = logging.getLogger(__name__)

READ_TERMINATOR = b"\n"


@dataclass(frozen=True)
class PortDescriptor:
    """An available serial device as reported by the OS at discovery time."""

    device: str
    description: str = ""
    hwid: str = ""

    def __str__(self) -> str:
        return self.device


def list_available_ports() -> List[PortDescriptor]:
    """Enumerate serial devices. Returns an empty list when none are present."""
    ports = [
        PortDescriptor(device=info.device, description=info.description or "", hwid=info.hwid or "")
        for info in list_ports.comports()
    ]
    return sorted(ports, key=lambda port: port.device)


class LineTransport(Protocol):
    """Minimal interface the SCPI client needs from a transport."""

    def write_line(self, line: str) -> None:
        ...

    def read_line(self, timeout: Optional[float] = None) -> str:
        ...

    def discard_input(self) -> None:
        ...

    def close(self) -> None:
        ...


def _is_permission_error(exc: BaseException) -> bool:
    if isinstance(exc, PermissionError):
        return True
    code = getattr(exc, "errno", None)
    if code in (errno.EACCES, errno.EPERM):
        return True
    text = str(exc).lower()
    return "permission" in text or "access is denied" in text


class SerialTransport:
    """Blocking line transport over an RS-232/USB serial connection.

    Owns the OS handle exclusively from :meth:`open` until :meth:`close`.
    """

    def __init__(self, serial_port: "serial.Serial", settings: SerialSettings) -> None:
        self._serial = serial_port
        self._settings = settings

    @classmethod
    def open(cls, port: str, settings: Optional[SerialSettings] = None) -> "SerialTransport":
        settings = settings or SerialSettings()
        try:
            handle = serial.Serial(
                port=port,
                baudrate=settings.baudrate,
                bytesize=settings.bytesize,
                parity=settings.parity,
                stopbits=settings.stopbits,
                timeout=settings.timeout_s,
                write_timeout=settings.timeout_s,
            )
        except (serial.SerialException, OSError, ValueError) as exc:
            if _is_permission_error(exc):
                raise PermissionDenied(f"Access to {port} denied: {exc}") from exc
            raise PortUnavailable(f"Could not open {port}: {exc}") from exc
        logger.info("Opened %s at %d baud", port, settings.baudrate)
        return cls(handle, settings)

    @property
    def port(self) -> str:
        return self._serial.port

    @property
    def is_open(self) -> bool:
        return bool(self._serial.is_open)

    def write_line(self, line: str) -> None:
        terminator = self._settings.write_terminator
        payload = line if line.endswith(terminator) else line + terminator
        try:
            self._serial.write(payload.encode("ascii"))
            self._serial.flush()
        except serial.SerialTimeoutException as exc:
            raise TransportError(f"Write to {self.port} timed out") from exc
        except (serial.SerialException, OSError) as exc:
            raise self._translate(exc) from exc

    def read_line(self, timeout: Optional[float] = None) -> str:
        """Read one line. Raises :class:`CommandTimeout` if nothing arrived in time.

        A partial line (data but no terminator before the timeout) is returned as-is
        and left for the parser to judge.
        """
        if timeout is not None:
            self._serial.timeout = timeout
        try:
            raw = self._serial.read_until(READ_TERMINATOR)
        except (serial.SerialException, OSError) as exc:
            raise self._translate(exc) from exc
        finally:
            if timeout is not None:
                self._serial.timeout = self._settings.timeout_s
        if not raw:
            raise CommandTimeout(f"No response from {self.port}")
        # Some supplies prefix data with non-ASCII artefacts; drop them.
        return raw.decode("ascii", errors="ignore").strip()

    def discard_input(self) -> None:
        try:
            self._serial.reset_input_buffer()
        except (serial.SerialException, OSError) as exc:
            raise self._translate(exc) from exc

    def close(self) -> None:
        if self._serial.is_open:
            self._serial.close()
            logger.info("Closed %s", self.port)

    def _translate(self, exc: BaseException) -> TransportError:
        text = str(exc).lower()
        if "disconnected" in text or getattr(exc, "errno", None) in (errno.ENXIO, errno.ENODEV, errno.EIO):
            return DeviceDisconnected(f"{self.port} disconnected: {exc}")
        return TransportError(f"I/O error on {self.port}: {exc}")
