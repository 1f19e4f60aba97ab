"""Transport and programmer interfaces."""

from __future__ import annotations

from typing import Protocol

import serial

from dashflash.core.model import WriteRequest


class PortPicker(Protocol):
    def pick(self) -> str | None:
        """Return the serial device chosen by the user, or None."""


class Programmer(Protocol):
    def detect(self) -> str:
        """Synchronise with the bootloader and return the chip name."""

    def erase_all(self) -> None:
        """Erase the whole flash."""

    def write_image(self, request: WriteRequest) -> None:
        """Write one image in chunks, reporting progress per chunk."""

    def reset(self, mode: str = "hard") -> None:
        """Leave the bootloader and reset the chip."""

    def close(self) -> None:
        """Drop bootloader state without closing the serial port."""


class ProgrammerFactory(Protocol):
    def __call__(self, port: serial.Serial, baud_rate: int) -> Programmer:
        """Build a programmer over an already-open serial port."""
