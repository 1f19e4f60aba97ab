"""Erase and program choreography over a DeviceSession."""

from __future__ import annotations

import asyncio
import hashlib
import logging

from dashflash.core.errors import DashflashError, FirmwareUnavailableError
from dashflash.core.model import APP_OFFSET, ChecksumFunction, FlashJob, ProgressCallback, WriteRequest
from dashflash.core.session import ERASE_SETTLE_S, PROGRAM_SETTLE_S, DeviceSession
from dashflash.transports.esptool_programmer import pad_image

LOGGER = logging.getLogger(__name__)


def md5_checksum(image: bytes) -> str:
    """MD5 of the raw image bytes as lowercase hex.

    Equal to hashing the image read as Latin-1 text, which is the digest the
    ROM loader reports back for verification.
    """
    return hashlib.md5(image).hexdigest()


def percent_progress(written: int, total: int) -> float:
    if total <= 0:
        return 100.0
    return max(0.0, min(100.0, written * 100.0 / total))


class FlashOrchestrator:
    def __init__(
        self,
        session: DeviceSession,
        *,
        checksum: ChecksumFunction = md5_checksum,
        offset: int = APP_OFFSET,
    ) -> None:
        self._session = session
        self._checksum = checksum
        self._offset = offset

    async def identify(self) -> str:
        """Enter the bootloader only to read the chip name, then return to native mode."""
        try:
            chip = await self._session.enter_bootloader()
        except BaseException:
            await self._recover(ERASE_SETTLE_S)
            raise
        await self._session.exit_bootloader(ERASE_SETTLE_S)
        return chip

    async def erase_all(self) -> None:
        """Bootloader in, erase everything, bootloader out (1s settle)."""
        try:
            await self._session.enter_bootloader()
            await asyncio.to_thread(self._session.programmer.erase_all)
        except BaseException:
            await self._recover(ERASE_SETTLE_S)
            raise
        await self._session.exit_bootloader(ERASE_SETTLE_S)
        LOGGER.info("Flash erased")

    async def program(self, image: bytes | None, on_progress: ProgressCallback | None = None) -> FlashJob:
        """Write ``image`` at the application offset, hard reset, then settle for 2s.

        Raises FirmwareUnavailableError before touching the session when no
        image is given.
        """
        if not image:
            raise FirmwareUnavailableError("No firmware loaded! Please select a version first.")

        # The loader writes and hashes whole 4-byte words.
        padded = pad_image(bytes(image))
        job = FlashJob(image=padded, offset=self._offset, checksum=self._checksum(padded))

        def _progress(written: int, total: int) -> None:
            job.bytes_written = written
            job.total_bytes = total
            if on_progress is not None:
                on_progress(written, total)

        request = WriteRequest(
            image=job.image,
            offset=job.offset,
            compress=True,
            checksum=self._checksum,
            on_progress=_progress,
        )
        try:
            await self._session.enter_bootloader()
            programmer = self._session.programmer
            await asyncio.to_thread(programmer.write_image, request)
            await asyncio.to_thread(programmer.reset, "hard")
        except BaseException:
            await self._recover(PROGRAM_SETTLE_S)
            raise
        await self._session.exit_bootloader(PROGRAM_SETTLE_S)
        LOGGER.info("Programmed %d bytes at 0x%x", job.total_bytes, job.offset)
        return job

    async def _recover(self, settle_s: float) -> None:
        if not self._session.is_connected:
            return
        try:
            await self._session.exit_bootloader(settle_s)
        except (DashflashError, OSError) as exc:
            LOGGER.warning("Could not return to native mode after failure: %s", exc)
