# src/key_relay/key_tool.py

import asyncio
import json
import os
from pathlib import Path
from typing import Optional

import aiofiles
import httpx
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table
from rich.text import Text

from .config import RelaySettings
from .credential_pool import CredentialPool
from .error_handler import (
    InvalidKeyServerAccess,
    KeyServerNotConfigured,
    NoCredentialsAvailable,
    mask_credential,
)
from .types import CapabilityTier

ENV_FILE = Path.cwd() / ".env"

console = Console()


def clear_screen():
    os.system("cls" if os.name == "nt" else "clear")


async def add_key_to_file(path: Path, key: str, tier: CapabilityTier) -> bool:
    """
    Appends a key record to a local keys file, creating the file if needed.
    Returns False if the key is already present.
    """
    records = []
    if path.is_file():
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
        records = json.loads(content) if content.strip() else []
    if any(record.get("key") == key for record in records):
        return False
    records.append({"key": key, "type": tier.record_type})
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(json.dumps(records, indent=2))
    return True


def _tier_prompt(allow_highest: bool = False) -> CapabilityTier:
    choices = {"3": CapabilityTier.STANDARD, "4": CapabilityTier.PREMIUM}
    if allow_highest:
        choices["0"] = CapabilityTier.HIGHEST
    hint = "3 = gpt-3, 4 = gpt-4" + (", 0 = highest available" if allow_highest else "")
    choice = Prompt.ask(f"[bold]Key tier[/bold] ({hint})", choices=list(choices), show_choices=False, default="4")
    return choices[choice]


async def show_pool_status(pool: CredentialPool):
    try:
        await pool.refresh()
    except (InvalidKeyServerAccess, httpx.HTTPError, OSError, ValueError) as e:
        console.print(f"[bold red]Could not load keys from {pool.source}: {e}[/bold red]")

    status = pool.status()
    table = Table(title="Credential Pool")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="bold")
    for field, value in status.items():
        table.add_row(field, str(value))
    console.print(table)


async def add_key(settings: RelaySettings):
    key = Prompt.ask("[bold]Enter the API key[/bold]", password=True).strip()
    if not key:
        console.print("[bold red]No key entered.[/bold red]")
        return
    tier = _tier_prompt()
    path = Path(settings.keys_file)
    if await add_key_to_file(path, key, tier):
        console.print(f"Added key [bold cyan]{mask_credential(key)}[/bold cyan] ({tier.record_type}) to [bold yellow]{path}[/bold yellow].")
    else:
        console.print(f"[bold yellow]Key {mask_credential(key)} is already in {path}.[/bold yellow]")


async def evict_key(pool: CredentialPool):
    key = Prompt.ask("[bold]Enter the API key to evict[/bold]", password=True).strip()
    if not key:
        return
    try:
        if await pool.evict(key):
            console.print(f"[bold green]Key {mask_credential(key)} deleted from the key server.[/bold green]")
        else:
            console.print(f"[bold yellow]Key server did not delete {mask_credential(key)}.[/bold yellow]")
    except KeyServerNotConfigured:
        console.print("[bold red]No key server configured (OPENAI_API_KEY_SERVER / OPENAI_API_KEY_SERVER_AUTH).[/bold red]")
    except (InvalidKeyServerAccess, httpx.HTTPError) as e:
        console.print(f"[bold red]Eviction failed: {e}[/bold red]")


async def fetch_single_key(pool: CredentialPool):
    tier = _tier_prompt(allow_highest=True)
    try:
        credential = await pool.acquire_single(tier)
        console.print(f"Key server returned [bold cyan]{credential.masked}[/bold cyan] ({credential.tier.name}).")
    except KeyServerNotConfigured:
        console.print("[bold red]No key server configured.[/bold red]")
    except (NoCredentialsAvailable, InvalidKeyServerAccess, httpx.HTTPError) as e:
        console.print(f"[bold red]{type(e).__name__}: {e}[/bold red]")


async def main(settings: Optional[RelaySettings] = None):
    """An interactive CLI tool to inspect and manage the credential pool."""
    settings = settings or RelaySettings.from_env()

    async with httpx.AsyncClient(timeout=30.0) as http_client:
        pool = CredentialPool.from_settings(settings, http_client)

        while True:
            clear_screen()
            console.print(
                Panel(
                    "[bold cyan]Credential Pool Manager[/bold cyan]",
                    title="--- Key Relay ---",
                    expand=False,
                )
            )
            console.print(
                Panel(
                    Text.from_markup(
                        "1. Show Pool Status\n2. Add Key to Local File\n3. Evict Key\n4. Fetch Single Key"
                    ),
                    title="Choose an action",
                    style="bold blue",
                )
            )

            action = Prompt.ask(
                Text.from_markup(
                    "[bold]Please select an option or type [red]'q'[/red] to quit[/bold]"
                ),
                choices=["1", "2", "3", "4", "q"],
                show_choices=False,
            )

            if action.lower() == "q":
                break
            if action == "1":
                await show_pool_status(pool)
            elif action == "2":
                await add_key(settings)
            elif action == "3":
                await evict_key(pool)
            elif action == "4":
                await fetch_single_key(pool)

            console.print("\n[dim]Press Enter to return to main menu...[/dim]")
            input()


def run_key_tool():
    """Entry point for the key tool."""
    load_dotenv(ENV_FILE)
    try:
        asyncio.run(main())
        clear_screen()
    except KeyboardInterrupt:
        console.print("\n[bold yellow]Exiting key tool.[/bold yellow]")
