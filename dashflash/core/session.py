"""Device session: owns the serial transport and switches between modes.

The session holds exactly one state value at a time:

* ``Disconnected()`` - nothing open.
* ``Native(transport)`` - application firmware, line protocol available.
* ``Bootloader(transport, programmer, chip)`` - ROM loader, flashing available.

Every transition builds a new state value and closes whatever the previous
one owned before publishing it, so no component can keep using a transport
or programmer across a mode change.

The session is not reentrant. Callers serialise connect, disconnect, erase
and program themselves (see ``dashflash.api.Client``).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from dashflash.core.errors import (
    ConnectFailedError,
    DashflashError,
    NoDeviceError,
    NotConnectedError,
    ProgrammerError,
    SessionStateError,
    TransportError,
)
from dashflash.core.model import NATIVE_CHIP, SerialSettings, SessionMode
from dashflash.transports.base import PortPicker, Programmer, ProgrammerFactory
from dashflash.transports.esptool_programmer import EsptoolProgrammer
from dashflash.transports.serial_port import ConfiguredPortPicker, SerialTransport, open_transport

LOGGER = logging.getLogger(__name__)

ERASE_SETTLE_S = 1.0
PROGRAM_SETTLE_S = 2.0

Opener = Callable[[str | None, int], Awaitable[SerialTransport]]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class Disconnected:
    mode = SessionMode.DISCONNECTED


@dataclass(frozen=True)
class Native:
    transport: SerialTransport
    mode = SessionMode.NATIVE


@dataclass(frozen=True)
class Bootloader:
    transport: SerialTransport
    programmer: Programmer
    chip: str
    mode = SessionMode.BOOTLOADER


SessionState = Disconnected | Native | Bootloader


class DeviceSession:
    def __init__(
        self,
        settings: SerialSettings | None = None,
        *,
        picker: PortPicker | None = None,
        programmer_factory: ProgrammerFactory = EsptoolProgrammer,
        opener: Opener = open_transport,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings or SerialSettings()
        self._picker = picker or ConfiguredPortPicker(self.settings.port)
        self._programmer_factory = programmer_factory
        self._opener = opener
        self._sleep = sleep
        self._state: SessionState = Disconnected()
        self._port_name: str | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def mode(self) -> SessionMode:
        return self._state.mode

    @property
    def is_connected(self) -> bool:
        return not isinstance(self._state, Disconnected)

    @property
    def chip(self) -> str | None:
        if isinstance(self._state, Native):
            return NATIVE_CHIP
        if isinstance(self._state, Bootloader):
            return self._state.chip
        return None

    @property
    def port_name(self) -> str | None:
        return self._port_name

    @property
    def transport(self) -> SerialTransport:
        """The native-mode transport; raises NotConnectedError in any other mode."""
        if not isinstance(self._state, Native):
            raise NotConnectedError(f"Native serial not connected (mode: {self.mode.value})")
        return self._state.transport

    @property
    def programmer(self) -> Programmer:
        if not isinstance(self._state, Bootloader):
            raise SessionStateError(f"Bootloader not active (mode: {self.mode.value})")
        return self._state.programmer

    async def connect(self) -> None:
        if not isinstance(self._state, Disconnected):
            raise SessionStateError(f"Already connected (mode: {self.mode.value})")
        try:
            port_name = self._picker.pick()
            transport = await self._opener(port_name, self.settings.baud_rate)
        except TransportError as exc:
            raise ConnectFailedError(str(exc)) from exc
        self._port_name = port_name
        self._state = Native(transport)
        LOGGER.info("Connected to %s at %d baud", port_name, self.settings.baud_rate)

    async def enter_bootloader(self) -> str:
        state = self._state
        if isinstance(state, Disconnected):
            raise NoDeviceError("No device available")
        if isinstance(state, Bootloader):
            return state.chip

        transport = state.transport
        await transport.release_streams()
        programmer = self._programmer_factory(transport.port, transport.baud_rate)
        try:
            chip = await asyncio.to_thread(programmer.detect)
        except BaseException:
            _close_programmer(programmer)
            raise
        if self._state is not state:
            # disconnect() ran while detection was in flight.
            _close_programmer(programmer)
            raise SessionStateError("Session changed while entering bootloader")
        self._state = Bootloader(transport, programmer, chip)
        LOGGER.info("Entered bootloader, chip: %s", chip)
        return chip

    async def exit_bootloader(self, settle_s: float = ERASE_SETTLE_S) -> None:
        """Drop the programmer and the port, wait ``settle_s``, then reopen in native framing.

        The wait covers the device reboot, during which a USB serial port may
        disappear; nothing is read from the device.
        """
        state = self._state
        if isinstance(state, Disconnected):
            raise NoDeviceError("No device available")

        if isinstance(state, Bootloader):
            _close_programmer(state.programmer)
        transport = state.transport
        port_name = self._port_name or transport.port_name
        self._state = Disconnected()
        await transport.close()

        LOGGER.info("Left bootloader, waiting %.1fs for device to boot", settle_s)
        await self._sleep(settle_s)
        try:
            reopened = await self._opener(port_name, transport.baud_rate)
        except TransportError as exc:
            self._port_name = None
            raise ConnectFailedError(f"Could not reopen {port_name} after bootloader: {exc}") from exc
        self._state = Native(reopened)

    async def disconnect(self) -> None:
        """Release everything. Never raises; release failures are logged."""
        state = self._state
        self._state = Disconnected()
        self._port_name = None
        if isinstance(state, Bootloader):
            _close_programmer(state.programmer)
        if isinstance(state, (Native, Bootloader)):
            try:
                await state.transport.close()
            except (DashflashError, OSError) as exc:
                LOGGER.warning("Error while closing serial port: %s", exc)
            LOGGER.info("Disconnected")


def _close_programmer(programmer: Programmer) -> None:
    try:
        programmer.close()
    except (ProgrammerError, OSError) as exc:
        LOGGER.warning("Error while closing programmer: %s", exc)
