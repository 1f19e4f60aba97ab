"""Core data models used across session, flashing, and CLI."""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass

BAUD_RATES: tuple[int, ...] = (921600, 460800, 230400, 115200)
DEFAULT_BAUD_RATE = 115200
APP_OFFSET = 0x10000
NATIVE_CHIP = "Native Connection"

ProgressCallback = Callable[[int, int], None]
ChecksumFunction = Callable[[bytes], str]


class SessionMode(enum.Enum):
    DISCONNECTED = "disconnected"
    NATIVE = "native"
    BOOTLOADER = "bootloader"


@dataclass(frozen=True)
class SerialSettings:
    port: str | None = None
    baud_rate: int = DEFAULT_BAUD_RATE


@dataclass(frozen=True)
class FirmwareRelease:
    version: str


@dataclass
class CommandExchange:
    request: str
    deadline: float
    response: str = ""

    def terminated(self, terminators: tuple[str, ...]) -> bool:
        return any(marker in self.response for marker in terminators)


@dataclass
class FlashJob:
    image: bytes
    offset: int
    checksum: str
    total_bytes: int = 0
    bytes_written: int = 0

    def __post_init__(self) -> None:
        if not self.total_bytes:
            self.total_bytes = len(self.image)


@dataclass(frozen=True)
class WriteRequest:
    """Everything the programmer needs to write one image.

    Flash size, mode and frequency stay at "keep": the device's flash
    configuration is never rewritten.
    """

    image: bytes
    offset: int = APP_OFFSET
    flash_size: str = "keep"
    flash_mode: str = "keep"
    flash_freq: str = "keep"
    compress: bool = True
    checksum: ChecksumFunction | None = None
    on_progress: ProgressCallback | None = None


@dataclass(frozen=True)
class SerialPortInfo:
    device: str
    description: str
    hwid: str = ""


@dataclass(frozen=True)
class ClientState:
    is_connected: bool = False
    chip: str | None = None
    is_erasing: bool = False
    is_programming: bool = False
    progress: float = 0.0
    is_loading_firmware: bool = False
    is_loading_prefs: bool = False
    is_updating_prefs: bool = False
    preferences: str = ""
    selected_version: str = ""
    firmware_loaded: bool = False
    alert: str = ""
