"""CLI: campus-chat chat, campus-chat send, campus-chat search"""

import asyncio
import json
from typing import Optional

import click
from rich.console import Console

from campus_chat.models.message import Message
from campus_chat.models.snapshot import ActionError, ChatSnapshot, NewMessageNotice

console = Console()


def _get_client():
    from campus_chat.cli.main import _get_client
    return _get_client()


def _run(coro):
    from campus_chat.cli.main import _run
    return _run(coro)


def _render(message: Message) -> str:
    stamp = message.created_at.strftime("%H:%M")
    if message.is_deleted:
        return f"[dim]{stamp} {message.author_name}: message deleted[/dim]"
    text = message.body or ""
    for a in message.attachments:
        text += f" [blue][{a.kind.value}: {a.filename}][/blue]"
    if message.reactions:
        text += "  " + " ".join(f"{r.emoji}{r.count}" for r in message.reactions)
    marker = " [dim](sending)[/dim]" if message.pending else ""
    edited = " [dim](edited)[/dim]" if message.is_edited else ""
    return f"[dim]{stamp}[/dim] [bold]{message.author_name}[/bold]: {text}{edited}{marker}"


def _react_args(line: str) -> Optional[tuple[str, str]]:
    """Parse `/react <message-id> <emoji>`. None when malformed."""
    parts = line.split(maxsplit=2)
    if len(parts) != 3 or parts[0] != "/react":
        return None
    return parts[1], parts[2]


class _SnapshotPrinter:
    """Prints what changed between snapshots: new messages, typing, errors."""

    def __init__(self, user_id: str, out: Console = console):
        self._user_id = user_id
        self._out = out
        self._seen: set[str] = set()
        self._typing: tuple[str, ...] = ()
        self._error: Optional[ActionError] = None

    def __call__(self, snap: ChatSnapshot) -> None:
        for m in snap.messages:
            if m.id not in self._seen and not m.pending:
                self._seen.add(m.id)
                self._out.print(_render(m))
        names = tuple(t.user_name for t in snap.typing_users if t.user_id != self._user_id)
        if names and names != self._typing:
            self._out.print(f"[dim]{', '.join(names)} typing...[/dim]")
        self._typing = names
        if snap.error and snap.error != self._error:
            self._out.print(f"[red]{snap.error.action} failed: {snap.error.message}[/red]")
        self._error = snap.error


@click.command("chat")
@click.argument("room_id")
def chat_cmd(room_id: str):
    """Interactive chat in a room (/quit to exit, /react <id> <emoji>)."""

    async def _chat():
        client = _get_client()
        await client.connect()
        engine = client.engine

        def on_notice(notice: NewMessageNotice) -> None:
            console.print(f"[yellow]{notice.room_name}[/yellow] {notice.sender_name}: {notice.message_preview}")

        engine.on_change(_SnapshotPrinter(engine.user_id))
        engine.on_notify(on_notice)
        try:
            await engine.load_rooms()
            await engine.select_room(room_id)
            console.print("[cyan]Type your message (Ctrl+C to exit)[/cyan]\n")
            while True:
                line = await asyncio.to_thread(click.prompt, "You", prompt_suffix=": ")
                if line.lower() in ("/quit", "/exit"):
                    break
                if line.startswith("/react"):
                    args = _react_args(line)
                    if args is None:
                        console.print("[yellow]Usage: /react <message-id> <emoji>[/yellow]")
                    else:
                        await engine.react(*args)
                    continue
                await engine.start_typing()
                await engine.send(line)
                await engine.stop_typing()
        except (KeyboardInterrupt, EOFError, click.Abort):
            pass
        finally:
            await client.disconnect()

    _run(_chat())


@click.command("send")
@click.argument("room_id")
@click.argument("message", required=False)
@click.option("-a", "--attach", "paths", multiple=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--json-output", "--json", is_flag=True)
def send_cmd(room_id: str, message: Optional[str], paths: tuple[str, ...], json_output: bool):
    """Send a one-shot message, optionally with attachments."""

    async def _send():
        client = _get_client()
        await client.connect()
        try:
            await client.select_room(room_id)
            if paths:
                sent = await client.send_files(list(paths), body=message)
            else:
                sent = await client.send(message)
            error = client.snapshot().error
        finally:
            await client.disconnect()
        if sent is None:
            console.print(f"[red]Send failed: {error.message if error else 'unknown error'}[/red]")
            raise SystemExit(1)
        if json_output:
            click.echo(json.dumps(sent.model_dump(mode="json")))
        else:
            console.print(f"[green]Sent {sent.id}[/green]")

    _run(_send())


@click.command("search")
@click.argument("query")
@click.option("--room", "room_id", default=None, help="Limit to one room")
def search_cmd(query: str, room_id: Optional[str]):
    """Search messages, newest first."""

    async def _search():
        client = _get_client()
        await client.connect()
        try:
            if room_id:
                await client.select_room(room_id)
            results = await client.search(query)
        finally:
            await client.disconnect()
        if not results:
            console.print("[yellow]No matches.[/yellow]")
        for m in results:
            console.print(f"[dim]{m.room_id}[/dim] {_render(m)}")

    _run(_search())
