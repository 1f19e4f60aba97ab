"""Configuration loading and validation for dashflash."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from dashflash.core.errors import ConfigError
from dashflash.core.firmware import DEFAULT_FIRMWARE_BASE, DEFAULT_IMAGE_NAME
from dashflash.core.model import BAUD_RATES, DEFAULT_BAUD_RATE, SerialSettings

LOGGER = logging.getLogger(__name__)

ENV_PORT = "DASHFLASH_PORT"
ENV_BAUD = "DASHFLASH_BAUD"


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class Config:
    serial: SerialSettings
    firmware_base: str = DEFAULT_FIRMWARE_BASE
    image_name: str = DEFAULT_IMAGE_NAME
    catalog: Path | None = None


def _load_schema_validator() -> Any:
    schema_text = resources.files("dashflash.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "dashflash/config.yaml"


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at root")
    return loaded


def _validate(doc: dict[str, Any], source: Path | str) -> None:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigError(f"Schema validation failed for {source}{where}: {exc.message}") from exc


def parse_baud_rate(value: str | int, *, context: str) -> int:
    try:
        baud_rate = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{context} must be an integer baud rate, got '{value}'") from exc
    if baud_rate not in BAUD_RATES:
        allowed = ", ".join(str(rate) for rate in BAUD_RATES)
        raise ConfigError(f"{context} must be one of {allowed}, got {baud_rate}")
    return baud_rate


def load_config(
    *,
    path: Path | None = None,
    port: str | None = None,
    baud_rate: int | None = None,
) -> Config:
    """Merge the config file, environment and explicit overrides (in that order)."""
    source = path or config_path()
    doc: dict[str, Any] = {}
    if source.exists():
        doc = _read_yaml(source)
        _validate(doc, source)
        LOGGER.debug("Loaded config from %s", source)
    elif path is not None:
        raise ConfigError(f"Config file {path} does not exist")

    resolved_port = doc.get("port")
    resolved_baud = doc.get("baud_rate", DEFAULT_BAUD_RATE)

    env_port = os.environ.get(ENV_PORT)
    if env_port:
        resolved_port = env_port
    env_baud = os.environ.get(ENV_BAUD)
    if env_baud:
        resolved_baud = parse_baud_rate(env_baud, context=ENV_BAUD)

    if port:
        resolved_port = port
    if baud_rate is not None:
        resolved_baud = parse_baud_rate(baud_rate, context="--baud")

    catalog = doc.get("catalog")
    return Config(
        serial=SerialSettings(port=resolved_port, baud_rate=resolved_baud),
        firmware_base=doc.get("firmware_base", DEFAULT_FIRMWARE_BASE),
        image_name=doc.get("image_name", DEFAULT_IMAGE_NAME),
        catalog=Path(catalog).expanduser() if catalog else None,
    )
