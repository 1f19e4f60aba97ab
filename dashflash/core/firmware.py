"""Firmware release catalog and image retrieval."""

from __future__ import annotations

import json
import logging
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import httpx

from dashflash.core.errors import FirmwareUnavailableError
from dashflash.core.model import FirmwareRelease

LOGGER = logging.getLogger(__name__)

DEFAULT_IMAGE_NAME = "dashboard-lilygo-t-displays3.bin"
DEFAULT_FIRMWARE_BASE = "firmwares"
_DOWNLOAD_TIMEOUT_S = 30.0


def _read_catalog(source: Path | Traversable) -> list[FirmwareRelease]:
    try:
        doc: Any = json.loads(source.read_text(encoding="utf-8"))
    except OSError as exc:
        raise FirmwareUnavailableError(f"Could not read firmware catalog {source}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise FirmwareUnavailableError(f"Invalid JSON in firmware catalog {source}: {exc}") from exc

    if not isinstance(doc, list):
        raise FirmwareUnavailableError(f"Firmware catalog {source} must contain a list at root")

    releases: list[FirmwareRelease] = []
    for index, entry in enumerate(doc):
        version = entry.get("version") if isinstance(entry, dict) else None
        if not isinstance(version, str) or not version.strip():
            raise FirmwareUnavailableError(
                f"Firmware catalog {source} entry {index} is missing a 'version' string"
            )
        releases.append(FirmwareRelease(version=version.strip()))
    return releases


class FirmwareCatalog:
    def __init__(self, releases: list[FirmwareRelease]) -> None:
        self.releases = releases

    @classmethod
    def load(cls, path: Path | None = None) -> FirmwareCatalog:
        source: Path | Traversable
        if path is not None:
            source = path
        else:
            source = resources.files("dashflash.firmwares").joinpath("releases.json")
        return cls(_read_catalog(source))

    def versions(self) -> list[str]:
        return [release.version for release in self.releases]

    def __contains__(self, version: object) -> bool:
        return version in self.versions()


class FirmwareStore:
    """Fetch ``<base>/<version>/<image_name>`` from a URL or a local directory."""

    def __init__(
        self,
        base: str = DEFAULT_FIRMWARE_BASE,
        *,
        image_name: str = DEFAULT_IMAGE_NAME,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base = base.rstrip("/")
        self.image_name = image_name
        self._http_transport = http_transport

    def location(self, version: str) -> str:
        return f"{self.base}/{version}/{self.image_name}"

    async def fetch(self, version: str) -> bytes:
        if not version:
            raise FirmwareUnavailableError("No version selected")
        if self.base.startswith(("http://", "https://")):
            data = await self._fetch_http(version)
        else:
            data = load_image_file(Path(self.base) / version / self.image_name)
        LOGGER.info("Loaded firmware %s (%d bytes)", version, len(data))
        return data

    async def _fetch_http(self, version: str) -> bytes:
        url = self.location(version)
        try:
            async with httpx.AsyncClient(
                transport=self._http_transport,
                timeout=_DOWNLOAD_TIMEOUT_S,
                follow_redirects=True,
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise FirmwareUnavailableError(
                f"Failed to load firmware: {exc.response.status_code} {exc.response.reason_phrase}"
            ) from exc
        except httpx.HTTPError as exc:
            raise FirmwareUnavailableError(f"Failed to load firmware from {url}: {exc}") from exc
        if not response.content:
            raise FirmwareUnavailableError(f"Firmware download from {url} was empty")
        return response.content


def load_image_file(path: Path) -> bytes:
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise FirmwareUnavailableError(f"Could not read firmware image {path}: {exc}") from exc
    if not data:
        raise FirmwareUnavailableError(f"Firmware image {path} is empty")
    return data
