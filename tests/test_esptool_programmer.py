from __future__ import annotations

import hashlib
import os
import zlib

import pytest
from esptool.util import FatalError

from dashflash.core.errors import ChecksumMismatchError, ProgrammerError
from dashflash.core.flash import md5_checksum
from dashflash.core.model import WriteRequest
from dashflash.transports import esptool_programmer
from dashflash.transports.esptool_programmer import EsptoolProgrammer, pad_image


class FakeLoader:
    FLASH_WRITE_SIZE = 0x400

    def __init__(self, port: object, *, corrupt: bool = False) -> None:
        self.port = port
        self.IS_STUB = False
        self.secure_download_mode = False
        self.flash_id_value = 0x164020
        self.corrupt = corrupt
        self.calls: list[str] = []
        self.flash = bytearray()
        self._decompress = None
        self._offset = 0

    def get_chip_description(self) -> str:
        return "ESP32-S3 (QFN56) (revision v0.2)"

    def run_stub(self) -> FakeLoader:
        self.IS_STUB = True
        self.calls.append("run_stub")
        return self

    def flash_id(self) -> int:
        return self.flash_id_value

    def flash_set_parameters(self, size: int) -> None:
        self.calls.append(f"flash_set_parameters:{size}")

    def erase_flash(self) -> None:
        self.calls.append("erase_flash")

    def flash_defl_begin(self, size: int, compsize: int, offset: int) -> int:
        self.calls.append(f"flash_defl_begin:{size}:{offset:#x}")
        self._decompress = zlib.decompressobj()
        self._offset = offset
        return (compsize + self.FLASH_WRITE_SIZE - 1) // self.FLASH_WRITE_SIZE

    def flash_defl_block(self, data: bytes, seq: int, timeout: float) -> None:
        assert self._decompress is not None
        self.flash += self._decompress.decompress(data)

    def flash_begin(self, size: int, offset: int) -> int:
        self.calls.append(f"flash_begin:{size}:{offset:#x}")
        return 0

    def flash_block(self, data: bytes, seq: int, timeout: float) -> None:
        self.flash += data

    def flash_defl_finish(self, reboot: bool) -> None:
        self.calls.append(f"flash_defl_finish:{reboot}")

    def flash_finish(self, reboot: bool) -> None:
        self.calls.append(f"flash_finish:{reboot}")

    def flash_md5sum(self, offset: int, size: int) -> str:
        data = bytes(self.flash[:size])
        if self.corrupt:
            data = data[::-1]
        return hashlib.md5(data).hexdigest()

    def hard_reset(self) -> None:
        self.calls.append("hard_reset")


@pytest.fixture
def loader(monkeypatch: pytest.MonkeyPatch) -> FakeLoader:
    port = object()
    fake = FakeLoader(port)

    def fake_detect_chip(detect_port: object, baud: int) -> FakeLoader:
        assert detect_port is port
        return fake

    monkeypatch.setattr(esptool_programmer, "detect_chip", fake_detect_chip)
    return fake


def _programmer(loader: FakeLoader) -> EsptoolProgrammer:
    programmer = EsptoolProgrammer(loader.port, 115200)
    assert programmer.detect() == "ESP32-S3 (QFN56) (revision v0.2)"
    return programmer


def test_detect_runs_stub(loader: FakeLoader) -> None:
    _programmer(loader)
    assert loader.calls == ["run_stub"]


def test_operations_before_detect_fail(loader: FakeLoader) -> None:
    programmer = EsptoolProgrammer(loader.port, 115200)
    with pytest.raises(ProgrammerError):
        programmer.erase_all()


def test_compressed_write_reports_progress_and_verifies(loader: FakeLoader) -> None:
    programmer = _programmer(loader)
    image = os.urandom(8192)
    seen: list[tuple[int, int]] = []

    programmer.write_image(
        WriteRequest(image=image, checksum=md5_checksum, on_progress=lambda w, t: seen.append((w, t)))
    )

    assert bytes(loader.flash) == image
    assert "flash_defl_begin:8192:0x10000" in loader.calls
    assert loader.calls[-2:] == ["flash_begin:0:0x0", "flash_defl_finish:False"]
    written = [w for w, _ in seen]
    assert written == sorted(written)
    assert seen[-1] == (8192, 8192)


def test_plain_write_pads_blocks(loader: FakeLoader) -> None:
    programmer = _programmer(loader)
    image = b"\x01\x02\x03"
    programmer.write_image(WriteRequest(image=image, compress=False, checksum=None))
    assert bytes(loader.flash[:4]) == b"\x01\x02\x03\xff"
    assert len(loader.flash) == FakeLoader.FLASH_WRITE_SIZE
    assert loader.calls[-1] == "flash_finish:False"


def test_digest_mismatch_raises(loader: FakeLoader) -> None:
    loader.corrupt = True
    programmer = _programmer(loader)
    with pytest.raises(ChecksumMismatchError):
        programmer.write_image(WriteRequest(image=os.urandom(1024), checksum=md5_checksum))


def test_esptool_errors_are_wrapped(loader: FakeLoader) -> None:
    programmer = _programmer(loader)

    def _fail() -> None:
        raise FatalError("Failed to enter Flash download mode")

    loader.erase_flash = _fail
    with pytest.raises(ProgrammerError) as exc:
        programmer.erase_all()
    assert "erase flash failed" in str(exc.value)


def test_hard_reset_and_unknown_mode(loader: FakeLoader) -> None:
    programmer = _programmer(loader)
    programmer.reset("hard")
    assert loader.calls[-1] == "hard_reset"
    with pytest.raises(ProgrammerError):
        programmer.reset("soft")


def test_pad_image_aligns_to_four_bytes() -> None:
    assert pad_image(b"abcd") == b"abcd"
    assert pad_image(b"abcde") == b"abcde\xff\xff\xff"


def test_write_configures_detected_flash_size(loader: FakeLoader) -> None:
    programmer = _programmer(loader)
    programmer.write_image(WriteRequest(image=os.urandom(1024), checksum=md5_checksum))
    configure = loader.calls.index("flash_set_parameters:4194304")
    assert configure < loader.calls.index("flash_defl_begin:1024:0x10000")


def test_write_skips_flash_size_in_secure_download_mode(loader: FakeLoader) -> None:
    loader.secure_download_mode = True
    programmer = _programmer(loader)
    programmer.write_image(WriteRequest(image=os.urandom(1024), checksum=md5_checksum))
    assert not any(call.startswith("flash_set_parameters") for call in loader.calls)
    assert len(loader.flash) == 1024
