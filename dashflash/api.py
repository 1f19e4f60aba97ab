"""Stable public API for building tooling on top of dashflash.

This module is the supported integration surface for third-party callers
(GUI/TUI/scripts). Avoid importing from private/internal modules unless
intentionally depending on non-stable internals.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager

from dashflash.core import preferences as prefs
from dashflash.core.config import Config
from dashflash.core.errors import (
    ChecksumMismatchError,
    ConfigError,
    ConnectFailedError,
    DashflashError,
    DeviceBusyError,
    FirmwareUnavailableError,
    InvalidPreferencesError,
    NoDeviceError,
    NotConnectedError,
    OpenFailedError,
    PortUnavailableError,
    PreferencesError,
    PreferencesUpdateError,
    ProgrammerError,
    ReadTimeoutError,
    SessionError,
    SessionStateError,
    TransportError,
)
from dashflash.core.firmware import FirmwareCatalog, FirmwareStore
from dashflash.core.flash import FlashOrchestrator, percent_progress
from dashflash.core.line_protocol import LineProtocolClient
from dashflash.core.model import (
    BAUD_RATES,
    ClientState,
    FlashJob,
    ProgressCallback,
    SerialPortInfo,
    SerialSettings,
    SessionMode,
)
from dashflash.core.session import DeviceSession
from dashflash.transports.serial_port import list_ports

__all__ = [
    "DashflashError",
    "ConfigError",
    "TransportError",
    "PortUnavailableError",
    "OpenFailedError",
    "NotConnectedError",
    "ReadTimeoutError",
    "SessionError",
    "ConnectFailedError",
    "NoDeviceError",
    "SessionStateError",
    "DeviceBusyError",
    "ProgrammerError",
    "ChecksumMismatchError",
    "FirmwareUnavailableError",
    "PreferencesError",
    "InvalidPreferencesError",
    "PreferencesUpdateError",
    "BAUD_RATES",
    "ClientState",
    "FlashJob",
    "SerialPortInfo",
    "SerialSettings",
    "SessionMode",
    "Client",
]

LOGGER = logging.getLogger(__name__)


class Client:
    """Public client driving one device session.

    Only one operation runs at a time: a second request made while another
    is in flight is rejected with ``DeviceBusyError``, never queued. Busy
    flags and progress are cleared whether the operation succeeds or fails,
    and every failure leaves a one-line message in ``state.alert``.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        session: DeviceSession | None = None,
        store: FirmwareStore | None = None,
        catalog: FirmwareCatalog | None = None,
        line_client: LineProtocolClient | None = None,
    ) -> None:
        self._config = config or Config(serial=SerialSettings())
        self._session = session or DeviceSession(self._config.serial)
        self._line = line_client or LineProtocolClient(self._session)
        self._flasher = FlashOrchestrator(self._session)
        self._store = store or FirmwareStore(self._config.firmware_base, image_name=self._config.image_name)
        self._catalog = catalog

        self._busy: str | None = None
        self._is_erasing = False
        self._is_programming = False
        self._progress = 0.0
        self._is_loading_firmware = False
        self._is_loading_prefs = False
        self._is_updating_prefs = False
        self._preferences = ""
        self._selected_version = ""
        self._firmware: bytes | None = None
        self._alert = ""

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self._busy = None
        await self._session.disconnect()

    @property
    def session(self) -> DeviceSession:
        return self._session

    @property
    def state(self) -> ClientState:
        return ClientState(
            is_connected=self._session.is_connected,
            chip=self._session.chip,
            is_erasing=self._is_erasing,
            is_programming=self._is_programming,
            progress=self._progress,
            is_loading_firmware=self._is_loading_firmware,
            is_loading_prefs=self._is_loading_prefs,
            is_updating_prefs=self._is_updating_prefs,
            preferences=self._preferences,
            selected_version=self._selected_version,
            firmware_loaded=self._firmware is not None,
            alert=self._alert,
        )

    @property
    def busy(self) -> str | None:
        return self._busy

    def clear_alert(self) -> None:
        self._alert = ""

    def set_preferences_text(self, text: str) -> None:
        self._preferences = text

    def list_ports(self) -> list[SerialPortInfo]:
        return list_ports()

    def list_versions(self) -> list[str]:
        if self._catalog is None:
            self._catalog = FirmwareCatalog.load(self._config.catalog)
        return self._catalog.versions()

    async def connect(self) -> None:
        with self._report("Connection failed"):
            async with self._operation("connect"):
                await self._session.connect()

    async def disconnect(self) -> None:
        if self._busy is not None:
            raise DeviceBusyError(f"Cannot disconnect while {self._busy} is in progress")
        await self._session.disconnect()
        self._alert = ""
        self._preferences = ""

    async def erase_flash(self) -> None:
        with self._report("Erase failed"):
            async with self._operation("erase"):
                self._is_erasing = True
                try:
                    await self._flasher.erase_all()
                finally:
                    self._is_erasing = False

    async def detect_chip(self) -> str:
        with self._report("Chip detection failed"):
            async with self._operation("detect"):
                return await self._flasher.identify()

    async def load_firmware(self, version: str) -> bytes:
        with self._report("Failed to load firmware"):
            async with self._operation("load firmware"):
                self._is_loading_firmware = True
                try:
                    data = await self._store.fetch(version)
                finally:
                    self._is_loading_firmware = False
                self._firmware = data
                return data

    async def select_version(self, version: str) -> None:
        """Select a catalog version, dropping any previously loaded image."""
        self._selected_version = version
        self._firmware = None
        self._alert = ""
        if version:
            await self.load_firmware(version)

    def use_image(self, image: bytes) -> None:
        self._firmware = image

    async def program(self, image: bytes | None = None, on_progress: ProgressCallback | None = None) -> FlashJob:
        with self._report("Programming failed"):
            data = image if image is not None else self._firmware
            if not data:
                raise FirmwareUnavailableError("No firmware loaded! Please select a version first.")
            async with self._operation("program"):
                self._alert = ""
                self._is_programming = True
                self._progress = 0.0

                def _progress(written: int, total: int) -> None:
                    self._progress = percent_progress(written, total)
                    if on_progress is not None:
                        on_progress(written, total)

                try:
                    job = await self._flasher.program(data, on_progress=_progress)
                finally:
                    self._is_programming = False
                    self._progress = 0.0
        self._alert = "Programming completed successfully!"
        return job

    async def send_command(self, command: str) -> str:
        with self._report("Command failed"):
            async with self._operation("command"):
                return await self._line.send(command)

    async def ping(self) -> str:
        with self._report("Ping failed"):
            async with self._operation("ping"):
                response = await prefs.ping(self._line)
        self._preferences = response
        return response

    async def get_preferences(self) -> str:
        with self._report("Error getting settings"):
            async with self._operation("get preferences"):
                self._alert = ""
                self._is_loading_prefs = True
                try:
                    text = await prefs.get_all_prefs(self._line)
                finally:
                    self._is_loading_prefs = False
        self._preferences = text
        return text

    async def update_preferences(self, text: str | None = None) -> str:
        with self._report("Error updating settings"):
            payload = self._preferences if text is None else text
            async with self._operation("update preferences"):
                self._alert = ""
                self._is_updating_prefs = True
                try:
                    response = await prefs.set_all_prefs(self._line, payload)
                finally:
                    self._is_updating_prefs = False
        if text is not None:
            self._preferences = text
        self._alert = f"Response: {response}"
        return self._alert

    @asynccontextmanager
    async def _operation(self, name: str) -> AsyncIterator[None]:
        if self._busy is not None:
            raise DeviceBusyError(f"Device busy: {self._busy} in progress")
        self._busy = name
        try:
            yield
        finally:
            self._busy = None

    @contextmanager
    def _report(self, context: str) -> Iterator[None]:
        try:
            yield
        except DashflashError as exc:
            if isinstance(exc, InvalidPreferencesError) and "JSON" in str(exc):
                self._alert = "Invalid JSON format in preferences"
            else:
                self._alert = f"{context}: {exc}"
            LOGGER.debug("%s", self._alert, exc_info=True)
            raise
