"""Device preference commands spoken over the line protocol."""

from __future__ import annotations

import json
from typing import Any

from dashflash.core.errors import InvalidPreferencesError, PreferencesError, PreferencesUpdateError
from dashflash.core.line_protocol import LineProtocolClient

PING = "PING"
GET_ALL_PREFS = "GET_ALL_PREFS"
SET_ALL_PREFS = "SET_ALL_PREFS"


def format_preferences(response: str) -> str:
    """Pretty-print a JSON reply with 2-space indent; return other text unchanged."""
    try:
        data = json.loads(response)
    except json.JSONDecodeError:
        return response
    return json.dumps(data, indent=2)


def parse_preferences(text: str) -> Any:
    if not text.strip():
        raise InvalidPreferencesError("No preferences data!")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidPreferencesError(f"Invalid JSON format in preferences: {exc}") from exc


async def ping(client: LineProtocolClient) -> str:
    return await client.send(PING)


async def get_all_prefs(client: LineProtocolClient) -> str:
    response = await client.send(GET_ALL_PREFS)
    if not response:
        raise PreferencesError("No response received from device")
    return format_preferences(_strip_terminator(response))


async def set_all_prefs(client: LineProtocolClient, text: str) -> str:
    """Validate ``text`` as JSON, then send it compactly.

    Nothing is written to the device when ``text`` is not valid JSON.
    """
    data = parse_preferences(text)
    payload = json.dumps(data, separators=(",", ":"))
    response = await client.send(f"{SET_ALL_PREFS}:{payload}")
    if "ERROR" in response:
        raise PreferencesUpdateError(f"Update failed: {response}")
    return response


def _strip_terminator(response: str) -> str:
    if response.endswith("END"):
        return response[: -len("END")].rstrip()
    return response
