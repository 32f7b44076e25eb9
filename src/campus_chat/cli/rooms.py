"""CLI: campus-chat rooms list|create"""

import json
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from campus_chat.models.room import RoomKind

console = Console()


def _get_client():
    from campus_chat.cli.main import _get_client
    return _get_client()


def _run(coro):
    from campus_chat.cli.main import _run
    return _run(coro)


@click.group()
def rooms():
    """Room management."""


@rooms.command("list")
@click.option("--json-output", "--json", is_flag=True)
def rooms_list(json_output: bool):
    """List your rooms, most recently active first."""

    async def _list():
        client = _get_client()
        try:
            await client.connect()
            result = await client.load_rooms()
            me = client.engine.user_id
        finally:
            await client.disconnect()
        if json_output:
            click.echo(json.dumps([r.model_dump(mode="json") for r in result], indent=2))
            return
        table = Table(title=f"Rooms ({len(result)})")
        table.add_column("ID", style="bold")
        table.add_column("Kind")
        table.add_column("Name")
        table.add_column("Unread", justify="right")
        table.add_column("Last activity")
        for r in result:
            last = r.last_activity_at.isoformat() if r.last_activity_at else ""
            table.add_row(r.id, r.kind, r.display_name(me), str(r.unread_count or ""), last)
        console.print(table)

    _run(_list())


@rooms.command("create")
@click.argument("member_ids", nargs=-1, required=True)
@click.option("--kind", type=click.Choice([k.value for k in RoomKind]), default=RoomKind.GROUP.value)
@click.option("--name", default=None)
@click.option("--society", "society_id", default=None)
def rooms_create(member_ids: tuple[str, ...], kind: str, name: Optional[str], society_id: Optional[str]):
    """Create a room. A direct room with an existing partner is reused."""

    async def _create():
        client = _get_client()
        try:
            await client.connect()
            with console.status("Creating room..."):
                room = await client.create_room(RoomKind(kind), list(member_ids), name=name, society_id=society_id)
            error = client.snapshot().error
        finally:
            await client.disconnect()
        if room is None:
            console.print(f"[red]Could not create room: {error.message if error else 'unknown error'}[/red]")
            raise SystemExit(1)
        console.print(f"[green]Room ready: {room.id}[/green]")

    _run(_create())
