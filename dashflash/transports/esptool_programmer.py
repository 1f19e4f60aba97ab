"""Programmer adapter over the esptool loader library."""

from __future__ import annotations

import logging
import zlib
from collections.abc import Callable
from typing import Any, TypeVar

import serial
from esptool.cmds import detect_chip, detect_flash_size
from esptool.loader import DEFAULT_TIMEOUT, ERASE_WRITE_TIMEOUT_PER_MB, timeout_per_mb
from esptool.util import FatalError, flash_size_bytes

from dashflash.core.errors import ChecksumMismatchError, ProgrammerError
from dashflash.core.model import WriteRequest

LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")
_FLASH_ALIGN = 4


def pad_image(image: bytes, alignment: int = _FLASH_ALIGN) -> bytes:
    remainder = len(image) % alignment
    if remainder == 0:
        return image
    return image + b"\xff" * (alignment - remainder)


class EsptoolProgrammer:
    """Drives the ROM bootloader through esptool, reusing an open port.

    The port stays owned by the caller; ``close()`` only drops the loader.
    """

    def __init__(self, port: serial.Serial, baud_rate: int) -> None:
        self._port = port
        self._baud_rate = baud_rate
        self._loader: Any | None = None

    @property
    def loader(self) -> Any:
        if self._loader is None:
            raise ProgrammerError("Bootloader not detected yet")
        return self._loader

    def detect(self) -> str:
        def _detect() -> str:
            loader = detect_chip(self._port, self._baud_rate)
            chip = loader.get_chip_description()
            self._loader = loader.run_stub()
            return chip

        chip = self._call("detect chip", _detect)
        LOGGER.info("Detected %s on %s", chip, getattr(self._port, "port", "?"))
        return chip

    def erase_all(self) -> None:
        self._call("erase flash", lambda: self.loader.erase_flash())

    def write_image(self, request: WriteRequest) -> None:
        self._call("write flash", lambda: self._write(request))

    def reset(self, mode: str = "hard") -> None:
        if mode != "hard":
            raise ProgrammerError(f"Unsupported reset mode '{mode}'")
        self._call("hard reset", lambda: self.loader.hard_reset())

    def close(self) -> None:
        self._loader = None

    def _write(self, request: WriteRequest) -> None:
        esp = self.loader
        image = pad_image(request.image)
        total = len(image)
        expected = request.checksum(image) if request.checksum else None
        self._configure_flash_size(esp, request.flash_size)

        if request.compress:
            self._write_compressed(esp, image, request)
        else:
            self._write_plain(esp, image, request)

        if expected is not None:
            actual = esp.flash_md5sum(request.offset, total)
            if isinstance(actual, bytes):
                actual = actual.hex()
            if actual.lower() != expected.lower():
                raise ChecksumMismatchError(
                    f"Flash digest {actual} does not match image digest {expected} "
                    f"at 0x{request.offset:x}"
                )
            LOGGER.debug("Flash digest verified: %s", actual)

        if esp.IS_STUB:
            # Keep the stub running; flash_finish would jump to user code.
            esp.flash_begin(0, 0)
            if request.compress:
                esp.flash_defl_finish(False)
            else:
                esp.flash_finish(False)

    def _configure_flash_size(self, esp: Any, flash_size: str) -> None:
        """Tell the stub the flash size; "keep" reads it from the flash ID, not the image."""
        if flash_size == "keep":
            flash_size = detect_flash_size(esp)
        if flash_size is None:
            # Secure download mode cannot report the size.
            return
        LOGGER.debug("Configuring flash size: %s", flash_size)
        esp.flash_set_parameters(flash_size_bytes(flash_size))

    def _write_compressed(self, esp: Any, image: bytes, request: WriteRequest) -> None:
        total = len(image)
        compressed = zlib.compress(image, 9)
        esp.flash_defl_begin(total, len(compressed), request.offset)
        decompress = zlib.decompressobj()
        written = 0
        seq = 0
        for position in range(0, len(compressed), esp.FLASH_WRITE_SIZE):
            block = compressed[position : position + esp.FLASH_WRITE_SIZE]
            block_uncompressed = len(decompress.decompress(block))
            timeout = max(DEFAULT_TIMEOUT, timeout_per_mb(ERASE_WRITE_TIMEOUT_PER_MB, block_uncompressed))
            esp.flash_defl_block(block, seq, timeout=timeout)
            written = min(total, written + block_uncompressed)
            seq += 1
            if request.on_progress and written < total:
                request.on_progress(written, total)
        if request.on_progress:
            request.on_progress(total, total)

    def _write_plain(self, esp: Any, image: bytes, request: WriteRequest) -> None:
        total = len(image)
        esp.flash_begin(total, request.offset)
        seq = 0
        for position in range(0, total, esp.FLASH_WRITE_SIZE):
            block = image[position : position + esp.FLASH_WRITE_SIZE]
            block = block + b"\xff" * (esp.FLASH_WRITE_SIZE - len(block))
            esp.flash_block(block, seq, timeout=DEFAULT_TIMEOUT)
            seq += 1
            if request.on_progress:
                request.on_progress(min(total, position + esp.FLASH_WRITE_SIZE), total)

    def _call(self, operation: str, func: Callable[[], _T]) -> _T:
        try:
            return func()
        except ProgrammerError:
            raise
        except (FatalError, serial.SerialException, OSError) as exc:
            raise ProgrammerError(f"{operation} failed: {exc}") from exc
