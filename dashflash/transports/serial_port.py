"""Serial transport handle built on pyserial."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

import serial
import serial.tools.list_ports

from dashflash.core.errors import (
    NotConnectedError,
    OpenFailedError,
    PortUnavailableError,
    ReadTimeoutError,
    TransportError,
)
from dashflash.core.model import SerialPortInfo

LOGGER = logging.getLogger(__name__)

_WRITE_TIMEOUT_S = 2.0


class SerialReader:
    """Readable half of an open port.

    At most one read is in flight at a time. ``release()`` cancels that read
    and waits for its worker thread to return, so nothing touches the port
    once the reader has been released.
    """

    def __init__(self, port: serial.Serial) -> None:
        self._port = port
        self._pending: asyncio.Future[bytes] | None = None
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def read(self, timeout_s: float) -> bytes:
        if self._released:
            raise NotConnectedError("Serial reader has been released")
        if self._pending is not None and not self._pending.done():
            raise TransportError("A serial read is already in progress")

        pending = asyncio.ensure_future(asyncio.to_thread(self._read_blocking, timeout_s))
        self._pending = pending
        try:
            data = await asyncio.shield(pending)
        except serial.SerialException as exc:
            if self._released:
                raise NotConnectedError("Serial reader released during read") from exc
            raise TransportError(f"Serial read failed: {exc}") from exc
        finally:
            if pending.done():
                self._pending = None

        if self._released:
            raise NotConnectedError("Serial reader released during read")
        if not data:
            raise ReadTimeoutError(f"No data within {timeout_s:.2f}s")
        return data

    def _read_blocking(self, timeout_s: float) -> bytes:
        self._port.timeout = timeout_s
        first = self._port.read(1)
        if not first:
            return b""
        waiting = self._port.in_waiting
        return first + (self._port.read(waiting) if waiting else b"")

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        pending = self._pending
        self._pending = None
        if pending is None or pending.done():
            return
        try:
            self._port.cancel_read()
        except (AttributeError, serial.SerialException) as exc:
            LOGGER.debug("cancel_read unavailable, waiting for read timeout: %s", exc)
        await asyncio.wait({pending})
        if not pending.cancelled() and pending.exception() is not None:
            LOGGER.debug("In-flight read ended with %r during release", pending.exception())


class SerialWriter:
    """Writable half of an open port."""

    def __init__(self, port: serial.Serial) -> None:
        self._port = port
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def write(self, data: bytes) -> None:
        if self._released:
            raise NotConnectedError("Serial writer has been released")
        try:
            await asyncio.to_thread(self._write_all, data)
        except serial.SerialException as exc:
            raise TransportError(f"Serial write failed: {exc}") from exc

    def _write_all(self, data: bytes) -> None:
        self._port.write(data)
        self._port.flush()

    async def release(self) -> None:
        self._released = True


class SerialTransport:
    """One open serial port together with its reader and writer halves."""

    def __init__(self, port: serial.Serial, baud_rate: int) -> None:
        self.port = port
        self.baud_rate = baud_rate
        self.reader = SerialReader(port)
        self.writer = SerialWriter(port)
        self._closed = False

    @property
    def port_name(self) -> str:
        return str(self.port.port)

    @property
    def is_open(self) -> bool:
        return not self._closed and bool(self.port.is_open)

    @property
    def streams_open(self) -> bool:
        return self.is_open and not self.reader.released and not self.writer.released

    async def release_streams(self) -> None:
        """Release reader and writer, keeping the port itself open."""
        await self.reader.release()
        await self.writer.release()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.release_streams()
        finally:
            await asyncio.to_thread(self.port.close)
        LOGGER.debug("Closed serial port %s", self.port_name)


SerialFactory = Callable[..., serial.Serial]


async def open_transport(
    port_name: str | None,
    baud_rate: int,
    *,
    serial_factory: SerialFactory = serial.Serial,
) -> SerialTransport:
    if not port_name:
        raise PortUnavailableError("No serial port selected")
    try:
        port = await asyncio.to_thread(
            serial_factory,
            port_name,
            baud_rate,
            timeout=0,
            write_timeout=_WRITE_TIMEOUT_S,
        )
    except (serial.SerialException, ValueError, OSError) as exc:
        raise OpenFailedError(f"Could not open {port_name} at {baud_rate} baud: {exc}") from exc
    LOGGER.debug("Opened serial port %s at %d baud", port_name, baud_rate)
    return SerialTransport(port, baud_rate)


def list_ports() -> list[SerialPortInfo]:
    return [
        SerialPortInfo(device=p.device, description=p.description or "", hwid=p.hwid or "")
        for p in sorted(serial.tools.list_ports.comports(), key=lambda p: p.device)
    ]


class ConfiguredPortPicker:
    """Pick the configured port, or the only serial port present."""

    def __init__(
        self,
        port: str | None = None,
        *,
        lister: Callable[[], list[SerialPortInfo]] = list_ports,
    ) -> None:
        self._port = port
        self._lister = lister

    def pick(self) -> str | None:
        if self._port:
            return self._port
        ports = self._lister()
        if not ports:
            return None
        if len(ports) > 1:
            candidate_desc = ", ".join(f"{p.device} ({p.description})" for p in ports)
            raise PortUnavailableError(
                f"Multiple serial ports found: {candidate_desc}. Use --port to choose one."
            )
        return ports[0].device
