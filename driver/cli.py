#!/usr/bin/env python3

from __future__ import annotations
import asyncio
import os
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import typer
from aioconsole import ainput
from rich.console import Console
from rich.table import Table

from driver.config import DriverConfig, load_config, server_url
from driver.driver import MY_MESSAGES, ChatDriver
from driver.state import ChatMessage
from shared.errors import DriverError
from shared.log import configure_root_logging, get_logger

app = typer.Typer(help="DDP chat driver CLI")
console = Console()
logger = get_logger(__name__)


def _default_username() -> Optional[str]:
    return os.getenv("DDP_CHAT_USERNAME")


def _config(config_path: Optional[Path], server: Optional[str]) -> DriverConfig:
    cfg = load_config(config_path)
    if server:
        cfg = cfg.with_overrides(url=server_url(server))
    configure_root_logging(cfg.log_level)
    return cfg


def _password(password: Optional[str]) -> str:
    return password or os.getenv("DDP_CHAT_PASSWORD") or typer.prompt("Password", hide_input=True)


def _format_message(message: ChatMessage) -> str:
    flags = []
    if message.is_from_myself:
        flags.append("[dim]me[/]")
    if message.is_bot:
        flags.append("[magenta]bot[/]")
    if message.is_bot_mentioned:
        flags.append("[bold red]@you[/]")
    stamp = message.timestamp.strftime("%H:%M:%S") if message.timestamp else "--:--:--"
    tag = f" ({', '.join(flags)})" if flags else ""
    return f"[dim]{stamp}[/] [bold cyan]{message.sender_username}[/]{tag}: {message.text}"


async def _login(driver: ChatDriver, username: str, password: str) -> None:
    await driver.connect()
    identity = await driver.login(username, password)
    console.print(f"[bold green]Logged in[/] as {identity.username} ({identity.user_id})")


@app.command()
def run(
    room: str = typer.Option(MY_MESSAGES, help="Room id to join; defaults to every room of the user"),
    username: Optional[str] = typer.Option(_default_username(), help="Account username"),
    password: Optional[str] = typer.Option(None, help="Account password (prompted if omitted)"),
    server: Optional[str] = typer.Option(None, help="Server host or ws(s):// URL"),
    config: Optional[Path] = typer.Option(None, help="YAML config file"),
):
    """Interactive room chat: prints incoming messages, sends typed lines."""
    cfg = _config(config, server)
    if not username:
        username = typer.prompt("Username")
    secret = _password(password)

    async def main_loop() -> None:
        driver = ChatDriver(cfg)
        driver.add_message_listener(lambda m: console.print(_format_message(m)))
        driver.add_disconnect_listener(lambda reason: console.print(f"[red]Disconnected[/]: {reason}"))
        try:
            await _login(driver, username, secret)
            await driver.subscribe_to_room_messages(room)
            console.print(f"Listening on {room}. /help for commands")

            while driver.is_connected:
                line = (await ainput(": ")).strip()
                if not line:
                    continue
                if line in {"/quit", "/exit"}:
                    break
                if line == "/help":
                    console.print("/history [n], /whois <user>, /ping, /quit; anything else is sent to the room")
                    continue
                try:
                    if line.startswith("/history"):
                        parts = line.split()
                        limit = int(parts[1]) if len(parts) > 1 else None
                        for message in await driver.load_message_history(room, limit=limit):
                            console.print(_format_message(message))
                    elif line.startswith("/whois "):
                        _print_user(await driver.get_full_user_data(line.split(" ", 1)[1].strip()))
                    elif line == "/ping":
                        latency = await driver.ping()
                        console.print(f"pong in {latency * 1000:.1f}ms")
                    elif room == MY_MESSAGES:
                        console.print("Pick a room with --room to send messages")
                    else:
                        await driver.send_message(line, room)
                except DriverError as e:
                    console.print(f"[red]{type(e).__name__}[/]: {e}")
        finally:
            await driver.close()

    try:
        asyncio.run(main_loop())
    except DriverError as e:
        console.print(f"[red]{type(e).__name__}[/]: {e}")
        raise typer.Exit(code=1)


@app.command()
def history(
    room: str = typer.Argument(..., help="Room id"),
    limit: int = typer.Option(20, help="Number of messages"),
    username: Optional[str] = typer.Option(_default_username(), help="Account username"),
    password: Optional[str] = typer.Option(None, help="Account password (prompted if omitted)"),
    server: Optional[str] = typer.Option(None, help="Server host or ws(s):// URL"),
    config: Optional[Path] = typer.Option(None, help="YAML config file"),
):
    """Print the latest messages of a room."""
    cfg = _config(config, server)
    if not username:
        username = typer.prompt("Username")
    secret = _password(password)

    async def fetch() -> None:
        async with ChatDriver(cfg) as driver:
            await driver.login(username, secret)
            messages = await driver.load_message_history(room, limit=limit)
        table = Table(title=f"History of {room}")
        table.add_column("Time")
        table.add_column("From")
        table.add_column("Flags")
        table.add_column("Text")
        for m in messages:
            flags = " ".join(name for name, on in (
                ("me", m.is_from_myself), ("bot", m.is_bot), ("@you", m.is_bot_mentioned)) if on)
            table.add_row(m.timestamp.isoformat() if m.timestamp else "", m.sender_username, flags, m.text)
        console.print(table)

    try:
        asyncio.run(fetch())
    except DriverError as e:
        console.print(f"[red]{type(e).__name__}[/]: {e}")
        raise typer.Exit(code=1)


@app.command()
def whois(
    target: str = typer.Argument(..., help="Username to look up"),
    username: Optional[str] = typer.Option(_default_username(), help="Account username"),
    password: Optional[str] = typer.Option(None, help="Account password (prompted if omitted)"),
    server: Optional[str] = typer.Option(None, help="Server host or ws(s):// URL"),
    config: Optional[Path] = typer.Option(None, help="YAML config file"),
):
    """Show full user data for a username."""
    cfg = _config(config, server)
    if not username:
        username = typer.prompt("Username")
    secret = _password(password)

    async def lookup() -> None:
        async with ChatDriver(cfg) as driver:
            await driver.login(username, secret)
            _print_user(await driver.get_full_user_data(target))

    try:
        asyncio.run(lookup())
    except DriverError as e:
        console.print(f"[red]{type(e).__name__}[/]: {e}")
        raise typer.Exit(code=1)


@app.command("config")
def show_config(
    config: Optional[Path] = typer.Option(None, help="YAML config file"),
):
    """Print the effective driver configuration."""
    cfg = load_config(config)
    table = Table(title="Driver configuration")
    table.add_column("Key")
    table.add_column("Value")
    for key, value in asdict(cfg).items():
        table.add_row(key, str(value))
    console.print(table)


def _print_user(user) -> None:
    if user is None:
        console.print("No such user")
        return
    table = Table(title=user.username)
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("id", user.id)
    table.add_row("name", user.name or "")
    table.add_row("emails", ", ".join(user.emails))
    table.add_row("roles", ", ".join(user.roles))
    table.add_row("active", str(user.active))
    console.print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
