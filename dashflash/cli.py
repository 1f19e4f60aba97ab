"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

import typer

from dashflash.api import Client
from dashflash.core.config import load_config
from dashflash.core.errors import DashflashError
from dashflash.core.firmware import load_image_file
from dashflash.transports.serial_port import list_ports

app = typer.Typer(help="Flash and configure a serial-attached dashboard device")
prefs_app = typer.Typer(help="Read and write device preferences")
app.add_typer(prefs_app, name="prefs")


@app.callback()
def main(
    ctx: typer.Context,
    port: str | None = typer.Option(None, "--port", "-p", help="Serial device, e.g. /dev/ttyACM0"),
    baud: int | None = typer.Option(None, "--baud", "-b", help="921600, 460800, 230400 or 115200"),
    config: Path | None = typer.Option(None, "--config", help="Path to config.yaml"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"port": port, "baud": baud, "config": config}


def _build_client(ctx: typer.Context) -> Client:
    options = ctx.obj or {}
    config = load_config(path=options.get("config"), port=options.get("port"), baud_rate=options.get("baud"))
    return Client(config)


def _run(ctx: typer.Context, func: Callable[[Client], Awaitable[None]]) -> None:
    async def _main() -> None:
        async with _build_client(ctx) as client:
            await func(client)

    try:
        asyncio.run(_main())
    except DashflashError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("ports")
def show_ports() -> None:
    """List serial ports visible to this machine."""
    ports = list_ports()
    if not ports:
        typer.echo("No serial ports found")
        return
    for info in ports:
        typer.echo(f"{info.device} {info.description}")


@app.command("versions")
def show_versions(ctx: typer.Context) -> None:
    """List firmware versions in the catalog."""
    try:
        versions = _build_client(ctx).list_versions()
    except DashflashError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    if not versions:
        typer.echo("No firmware versions available")
        return
    for version in versions:
        typer.echo(version)


@app.command("ping")
def ping(ctx: typer.Context) -> None:
    """Send PING and print the reply."""

    async def _ping(client: Client) -> None:
        await client.connect()
        response = await client.ping()
        typer.echo(response or "<no response>")

    _run(ctx, _ping)


@app.command("send")
def send(ctx: typer.Context, command: str) -> None:
    """Send one raw line-protocol command and print the reply."""

    async def _send(client: Client) -> None:
        await client.connect()
        response = await client.send_command(command)
        typer.echo(response or "<no response>")

    _run(ctx, _send)


@app.command("chip")
def chip(ctx: typer.Context) -> None:
    """Enter the bootloader, print the detected chip, and return to the application."""

    async def _chip(client: Client) -> None:
        await client.connect()
        typer.echo(await client.detect_chip())

    _run(ctx, _chip)


@app.command("erase")
def erase(ctx: typer.Context) -> None:
    """Erase the whole flash."""

    async def _erase(client: Client) -> None:
        await client.connect()
        await client.erase_flash()
        typer.echo("Flash erased")

    _run(ctx, _erase)


@app.command("flash")
def flash(
    ctx: typer.Context,
    version: str | None = typer.Option(None, "--version", help="Catalog version to download and flash"),
    file: Path | None = typer.Option(None, "--file", help="Local firmware image"),
) -> None:
    """Program a firmware image at the application offset."""
    if (version is None) == (file is None):
        typer.echo("Error: pass exactly one of --version or --file", err=True)
        raise typer.Exit(code=1)

    async def _flash(client: Client) -> None:
        if file is not None:
            client.use_image(load_image_file(file))
        else:
            await client.select_version(version or "")
        await client.connect()
        with typer.progressbar(length=100, label="Programming") as bar:
            shown = 0

            def _progress(written: int, total: int) -> None:
                nonlocal shown
                percent = int(written * 100 / total) if total else 100
                if percent > shown:
                    bar.update(percent - shown)
                    shown = percent

            job = await client.program(on_progress=_progress)
        typer.echo(f"Programmed {job.total_bytes} bytes at 0x{job.offset:x} (md5 {job.checksum})")

    _run(ctx, _flash)


@prefs_app.command("get")
def prefs_get(ctx: typer.Context) -> None:
    """Print all device preferences."""

    async def _get(client: Client) -> None:
        await client.connect()
        typer.echo(await client.get_preferences())

    _run(ctx, _get)


@prefs_app.command("set")
def prefs_set(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="JSON file, or '-' for stdin"),
) -> None:
    """Replace all device preferences with the given JSON document."""
    text = _read_source(source)

    async def _set(client: Client) -> None:
        await client.connect()
        typer.echo(await client.update_preferences(text))

    _run(ctx, _set)


def _read_source(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    try:
        return Path(source).read_text(encoding="utf-8")
    except OSError as exc:
        typer.echo(f"Error: Could not read {source}: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
