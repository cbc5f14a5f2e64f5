#!/usr/bin/env python3

from __future__ import annotations
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from aioconsole import ainput
from rich.console import Console
from rich.table import Table

from shared.envelope import LobbyError
from shared.log import get_logger
from lobby.config import load_config
from lobby.controller import ChannelController
from lobby.directory import NameDirectory, did_record_name
from lobby.events import (
    AccountCreated,
    AccountCreationFailed,
    ApplicationMessage,
    ChannelOpened,
    Event,
    HandshakeTimedOut,
    UcanIssued,
    UsernameAvailability,
)

app = typer.Typer(help="Lobby: pair devices over a pub/sub secure channel")
console = Console()
logger = get_logger(__name__)

ConfigOption = typer.Option(None, "--config", help="YAML config file (default ~/.lobby/lobby.yaml)")


def _controller(config_path: Optional[Path], **overrides: Any) -> ChannelController:
    return ChannelController.from_config(load_config(config_path, **overrides))


def _render(event: Event) -> None:
    if isinstance(event, UsernameAvailability):
        if not event.valid:
            console.print("[red]Username is not valid[/]")
        elif event.available:
            console.print("[green]Username is available[/]")
        else:
            console.print("[yellow]Username is taken[/]")
    elif isinstance(event, AccountCreated):
        console.print(f"[bold green]Account created[/] for {event.username}")
    elif isinstance(event, AccountCreationFailed):
        console.print(f"[red]{event.message}[/]")
    elif isinstance(event, ChannelOpened):
        console.print(f"[bold green]Secure channel open[/] on {event.topic}")
    elif isinstance(event, HandshakeTimedOut):
        console.print(f"[red]No answer on {event.topic} after {event.attempts} pings[/]")
    elif isinstance(event, ApplicationMessage):
        tag = "[bold magenta]encrypted[/]" if event.encrypted else "[bold cyan]plain[/]"
        console.print(f"{tag} from {event.from_[:8]}: {json.dumps(event.payload)}")
    elif isinstance(event, UcanIssued):
        console.print(event.token)


def _parse_payload(text: str) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(text)
    except ValueError as e:
        console.print(f"[red]Not JSON[/]: {e}")
        return None
    if not isinstance(data, dict):
        console.print("[red]Payload must be a JSON object[/]")
        return None
    return data


@app.command()
def whoami(config: Optional[Path] = ConfigOption):
    """Print this device's DID and the root DID it resolves to."""
    controller = _controller(config)
    table = Table(title="Identity")
    table.add_column("Kind")
    table.add_column("DID")
    table.add_row("device", controller.session.signer.did())
    table.add_row("root", asyncio.run(controller.session.resolver.resolve()))
    if controller.used_username:
        table.add_row("username", controller.used_username)
    console.print(table)


@app.command("check-username")
def check_username(username: str, config: Optional[Path] = ConfigOption):
    """Check whether a username is valid and still free."""
    controller = _controller(config)
    _render(asyncio.run(controller.check_username(username)))


@app.command("create-account")
def create_account(
    username: str,
    email: Optional[str] = typer.Option(None, help="Contact email for the account"),
    config: Optional[Path] = ConfigOption,
):
    """Register a username pointing at this device's DID."""
    controller = _controller(config)
    asyncio.run(controller.create_account(username, email))
    for event in controller.events.drain():
        _render(event)


@app.command()
def link(audience: str, config: Optional[Path] = ConfigOption):
    """Issue a one-month UCAN from the root DID to AUDIENCE."""
    controller = _controller(config)
    _render(UcanIssued(token=asyncio.run(controller.link_app(audience))))


@app.command("import-ucan")
def import_ucan(token: str, config: Optional[Path] = ConfigOption):
    """Store a UCAN delegated to this device."""
    controller = _controller(config)
    try:
        controller.store_ucan(token)
    except LobbyError as e:
        console.print(f"[red]Rejected UCAN[/]: {e}")
        raise typer.Exit(code=1)
    console.print("Saved UCAN")


@app.command("directory-set")
def directory_set(username: str, did: str, config: Optional[Path] = ConfigOption):
    """Point USERNAME at DID in the local name directory."""
    cfg = load_config(config)
    NameDirectory(cfg.home / "directory.json").set(did_record_name(username, cfg.data_root_domain), did)
    console.print(f"Saved {did_record_name(username, cfg.data_root_domain)}")


@app.command("open")
def open_channel(
    username: Optional[str] = typer.Option(None, help="Pair with this user's root DID (initiator)"),
    relay: Optional[str] = typer.Option(None, help="Relay WebSocket URL"),
    timeout: Optional[float] = typer.Option(None, help="Give up the handshake after this many seconds"),
    config: Optional[Path] = ConfigOption,
):
    """Open the secure channel and exchange JSON messages interactively."""
    controller = _controller(config, relay_url=relay, handshake_timeout=timeout)

    async def main_loop() -> None:
        async def print_events() -> None:
            while True:
                _render(await controller.events.get())

        events_task = asyncio.create_task(print_events())
        try:
            channel = await controller.open_secure_channel(username)
            console.print(f"Subscribed to {channel.topic} as {channel.state.value}")
            while True:
                line = (await ainput(": ")).strip()
                if not line:
                    continue
                if line in {"/quit", "/exit"}:
                    break
                if line == "/help":
                    console.print("/send <json>, /encrypted <passphrase> <json>, /state, /quit")
                    continue
                if line == "/state":
                    console.print(channel.state.value)
                    continue
                if line.startswith("/send "):
                    payload = _parse_payload(line[len("/send "):])
                    if payload is not None:
                        await controller.publish_on_secure_channel(username, payload)
                    continue
                if line.startswith("/encrypted "):
                    parts = line.split(" ", 2)
                    if len(parts) < 3:
                        console.print("Usage: /encrypted <passphrase> <json>")
                        continue
                    payload = _parse_payload(parts[2])
                    if payload is not None:
                        await controller.publish_encrypted_on_secure_channel(username, parts[1], payload)
                    continue
                console.print("Unknown command. /help")
        except LobbyError as e:
            console.print(f"[red]{e}[/]")
        finally:
            events_task.cancel()
            await controller.close()

    asyncio.run(main_loop())


def main() -> None:
    app()


if __name__ == "__main__":
    main()
