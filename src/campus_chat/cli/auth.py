"""CLI: campus-chat auth login|status|logout"""

from typing import Optional

import click
from rich.console import Console

from campus_chat.config import CONFIG_FILE, ChatConfig, load_config, save_config

console = Console()


@click.group()
def auth():
    """Credential commands. Tokens are issued by the campus app's sign-in."""


@auth.command("login")
@click.option("--token", prompt=True, hide_input=True, help="Access token")
@click.option("--user-id", prompt=True, help="Your user id")
@click.option("--name", "user_name", default=None, help="Display name shown while typing")
@click.option("--base-url", default=None, help="Chat backend base URL")
def auth_login(token: str, user_id: str, user_name: Optional[str], base_url: Optional[str]):
    """Save an access token for later commands."""
    cfg = load_config()
    updated = cfg.model_copy(update={
        "access_token": token,
        "user_id": user_id,
        "user_name": user_name or cfg.user_name,
        "base_url": base_url or cfg.base_url,
    })
    save_config(updated)
    console.print(f"[green]Saved credentials for {updated.user_id}[/green]")
    console.print(f"[dim]Token saved to {CONFIG_FILE}[/dim]")


@auth.command("status")
def auth_status():
    """Show current auth status."""
    cfg = load_config()
    if cfg.logged_in:
        console.print(f"[green]Logged in[/green] as {cfg.user_name} (ID: {cfg.user_id}) on {cfg.base_url}")
    else:
        console.print("[yellow]Not logged in. Run `campus-chat auth login`.[/yellow]")


@auth.command("logout")
def auth_logout():
    """Clear saved credentials."""
    cfg = load_config()
    save_config(ChatConfig(base_url=cfg.base_url))
    console.print("[green]Logged out.[/green]")
