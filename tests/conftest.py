from __future__ import annotations

import hashlib
import threading
from functools import partial

import pytest

from dashflash.core.errors import ChecksumMismatchError, ProgrammerError
from dashflash.core.model import SerialSettings, WriteRequest
from dashflash.core.session import DeviceSession
from dashflash.transports.serial_port import ConfiguredPortPicker, open_transport

FAKE_PORT = "/dev/ttyFAKE0"


class FakeSerial:
    """In-memory stand-in for serial.Serial driven by a FakeDevice reply table."""

    def __init__(self, device: FakeDevice, port: str, baudrate: int) -> None:
        self.device = device
        self.port = port
        self.baudrate = baudrate
        self.is_open = True
        self.timeout: float | None = 0
        self.written = bytearray()
        self.cancel_calls = 0
        self._rx = bytearray()
        self._chunks: list[bytes] = []
        self._cancel = threading.Event()

    @property
    def in_waiting(self) -> int:
        return len(self._rx)

    def write(self, data: bytes) -> int:
        if not self.is_open:
            raise OSError("port closed")
        self.written += data
        line = bytes(data).decode("utf-8").rstrip("\n")
        self.device.commands.append(line)
        for prefix, chunks in self.device.replies.items():
            if line == prefix or line.startswith(f"{prefix}:"):
                self._chunks = list(chunks)
                break
        return len(data)

    def flush(self) -> None:
        pass

    def read(self, size: int = 1) -> bytes:
        if not self._rx and self._chunks:
            self._rx += self._chunks.pop(0)
        if self._rx:
            data = bytes(self._rx[:size])
            del self._rx[:size]
            return data
        if self.device.blocking_reads and self.timeout:
            self._cancel.wait(self.timeout)
            self._cancel.clear()
        return b""

    def cancel_read(self) -> None:
        self.cancel_calls += 1
        self._cancel.set()

    def close(self) -> None:
        self.is_open = False


class FakeDevice:
    """Serial factory; every port it opens answers from the same reply table."""

    def __init__(
        self,
        replies: dict[str, list[bytes]] | None = None,
        *,
        blocking_reads: bool = False,
        rejected_bauds: tuple[int, ...] = (),
    ) -> None:
        self.replies = dict(replies or {})
        self.blocking_reads = blocking_reads
        self.rejected_bauds = rejected_bauds
        self.ports: list[FakeSerial] = []
        self.commands: list[str] = []

    def __call__(self, port: str, baudrate: int, **kwargs: object) -> FakeSerial:
        if baudrate in self.rejected_bauds:
            raise ValueError(f"Invalid baud rate: {baudrate!r}")
        opened = FakeSerial(self, port, baudrate)
        self.ports.append(opened)
        return opened

    def opener(self):
        return partial(open_transport, serial_factory=self)

    @property
    def open_ports(self) -> list[FakeSerial]:
        return [p for p in self.ports if p.is_open]


class FakeProgrammer:
    def __init__(self, bench: ProgrammerBench, port: object, baud_rate: int) -> None:
        self.bench = bench
        self.port = port
        self.baud_rate = baud_rate

    def _step(self, name: str) -> None:
        self.bench.log.append(name)
        if self.bench.fail_on == name:
            raise ProgrammerError(f"{name} failed: simulated")

    def detect(self) -> str:
        self._step("detect")
        return self.bench.chip

    def erase_all(self) -> None:
        self._step("erase_all")
        self.bench.release_erase.wait(5)
        self.bench.flash.clear()

    def write_image(self, request: WriteRequest) -> None:
        self._step("write_image")
        self.bench.requests.append(request)
        total = len(request.image)
        for position in range(0, total, self.bench.block_size):
            written = min(total, position + self.bench.block_size)
            if request.on_progress:
                request.on_progress(written, total)
        self.bench.flash[request.offset] = bytes(request.image)
        if request.checksum is not None:
            expected = request.checksum(request.image)
            if self.bench.verify_read(request.offset) != expected:
                raise ChecksumMismatchError("digest mismatch")

    def reset(self, mode: str = "hard") -> None:
        self._step(f"reset:{mode}")

    def close(self) -> None:
        self.bench.log.append("close")


class ProgrammerBench:
    """Programmer factory that records every call made through its programmers."""

    def __init__(self, *, chip: str = "ESP32-S3 (QFN56) (revision v0.2)", fail_on: str | None = None) -> None:
        self.chip = chip
        self.fail_on = fail_on
        self.block_size = 512
        self.log: list[str] = []
        self.requests: list[WriteRequest] = []
        self.flash: dict[int, bytes] = {}
        self.instances: list[FakeProgrammer] = []
        self.release_erase = threading.Event()
        self.release_erase.set()

    def __call__(self, port: object, baud_rate: int) -> FakeProgrammer:
        programmer = FakeProgrammer(self, port, baud_rate)
        self.instances.append(programmer)
        return programmer

    def verify_read(self, offset: int) -> str:
        return hashlib.md5(self.flash.get(offset, b"")).hexdigest()


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice(
        {
            "PING": [b"PONG END\n"],
            "GET_ALL_PREFS": [b'{"a":1}END'],
            "SET_ALL_PREFS": [b"OK END\n"],
        }
    )


@pytest.fixture
def bench() -> ProgrammerBench:
    return ProgrammerBench()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def make_session(device: FakeDevice, bench: ProgrammerBench, sleeps: SleepRecorder):
    def _make(baud_rate: int = 115200, port: str | None = FAKE_PORT) -> DeviceSession:
        return DeviceSession(
            SerialSettings(port=port, baud_rate=baud_rate),
            picker=ConfiguredPortPicker(port, lister=lambda: []),
            programmer_factory=bench,
            opener=device.opener(),
            sleep=sleeps,
        )

    return _make
