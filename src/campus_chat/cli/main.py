"""
Campus chat CLI — `campus-chat` command.

Commands:
  campus-chat auth login       Store an access token issued by the campus app
  campus-chat rooms <cmd>      List or create rooms
  campus-chat chat <room-id>   Interactive room REPL
  campus-chat send <room-id>   One-shot message
  campus-chat search <query>   Full-text message search
"""

import asyncio
import logging

try:
    import click
    from rich.console import Console
except ImportError:
    raise SystemExit("CLI requires extras: pip install campus-chat[cli]")

from campus_chat.client import AsyncCampusChat
from campus_chat.config import load_config

console = Console()


def _get_client() -> AsyncCampusChat:
    cfg = load_config()
    if not cfg.logged_in:
        console.print("[red]Not logged in. Run `campus-chat auth login` first.[/red]")
        raise SystemExit(1)
    return AsyncCampusChat.from_config(cfg)


def _run(coro):
    return asyncio.run(coro)


@click.group()
@click.version_option("0.1.0")
@click.option("-v", "--verbose", is_flag=True, help="Log to stderr.")
def main(verbose: bool):
    """Campus chat from the terminal."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s %(message)s")


# Register subcommands from separate modules
from campus_chat.cli.auth import auth
from campus_chat.cli.chat import chat_cmd, search_cmd, send_cmd
from campus_chat.cli.rooms import rooms

main.add_command(auth)
main.add_command(rooms)
main.add_command(chat_cmd)
main.add_command(send_cmd)
main.add_command(search_cmd)


if __name__ == "__main__":
    main()
