"""
SparkChat - Main entry point for the application.

A line-oriented terminal client: everything typed is sent to the room,
lines starting with "/" are commands.
"""

import argparse
import asyncio
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Dict, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from . import __version__
from .config import Config, ServerConfig
from .connection_fsm import ConnectionStatus
from .constants import (
    APP_NAME,
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
)
from .crypto import generate_fingerprint
from .errors import ConfigError, CryptoUnavailable
from .preferences import PreferencesStore
from .session import ChatSession, create_identity
from .utils import format_fingerprint, format_timestamp

logger = logging.getLogger(__name__)

HELP_TEXT = """\
Commands:
  /name NAME                 change your display name
  /server URL PORT PREFIX    switch broker and room
  /keys                      show your key fingerprint and request peer keys
  /peers                     list peers
  /reconnect                 start a fresh connection
  /quit                      leave
Anything else is sent as a message."""

STATUS_STYLES = {
    ConnectionStatus.DISCONNECTED: "dim",
    ConnectionStatus.CONNECTING: "yellow",
    ConnectionStatus.CONNECTED: "green",
    ConnectionStatus.ERROR: "red",
}


def setup_logging(level: str, log_file: Optional[Path], console: Console) -> None:
    """
    Configure the root logger.

    Args:
        level: Level name for the console handler
        log_file: Rotating log file path, or None to skip file logging
        console: Console shared with the chat output
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console_handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
        root.addHandler(file_handler)

    # paho logs every packet at DEBUG
    logging.getLogger("paho").setLevel(logging.WARNING)


class ChatConsole:
    """Renders session changes to the terminal."""

    def __init__(self, session: ChatSession, console: Console):
        self.session = session
        self.console = console
        self._shown_ids = set()
        self._delivery_states: Dict[str, str] = {}
        self._typing_text: Optional[str] = None

        session.on_change_callback = self.refresh
        session.on_status_change_callback = self.show_status

    def show_status(self, status: ConnectionStatus) -> None:
        self.console.print(Text(f"● {status.value}", style=STATUS_STYLES[status]))

    def refresh(self) -> None:
        """Print whatever changed since the last refresh."""
        own_name = self.session.identity.display_name
        total_peers = len(self.session.peers)

        for message in self.session.messages:
            if message.id not in self._shown_ids:
                self._shown_ids.add(message.id)
                line = Text()
                line.append(f"[{format_timestamp(message.timestamp)}] ", style="dim")
                line.append(message.username, style="bold cyan" if message.username == own_name else "bold magenta")
                line.append(f": {message.text}")
                self.console.print(line)

            if message.username != own_name:
                continue
            summary = message.delivery_summary(total_peers)
            if summary is None:
                continue
            state = f"{summary.state}:{summary.decrypted_count}:{summary.received_count}"
            if self._delivery_states.get(message.id) != state:
                self._delivery_states[message.id] = state
                self.console.print(
                    Text(
                        f"  ✓ {summary.decrypted_count}/{summary.total_peers} decrypted"
                        f", {summary.received_count} received ({summary.state})",
                        style="dim green",
                    )
                )

        # Ids from a previous epoch can never come back
        if not len(self.session.messages):
            self._shown_ids.clear()
            self._delivery_states.clear()

        typing_text = self.session.typing_summary()
        if typing_text != self._typing_text:
            self._typing_text = typing_text
            if typing_text:
                self.console.print(Text(typing_text, style="italic dim"))

    def show_peers(self) -> None:
        peers = self.session.peers.sorted()
        if not peers:
            self.console.print("No peers yet.")
            return

        table = Table(title=f"Peers ({self.session.peers.count_with_keys()}/{len(peers)} with keys)")
        table.add_column("Name", style="bold")
        table.add_column("Key fingerprint")
        table.add_column("Last seen")
        for peer in peers:
            fingerprint = (
                format_fingerprint(generate_fingerprint(peer.public_key))
                if peer.has_public_key and peer.public_key
                else "-"
            )
            table.add_row(peer.username, fingerprint, format_timestamp(peer.last_seen, "%H:%M:%S"))
        self.console.print(table)

    def show_keys(self) -> None:
        fingerprint = format_fingerprint(generate_fingerprint(self.session.identity.public_key), groups=8)
        self.console.print(f"Your key fingerprint: [bold]{fingerprint}[/bold]")
        self.console.print(f"Cached peer keys: {len(self.session.key_directory)}")


async def handle_command(
    line: str, session: ChatSession, view: ChatConsole, prefs: PreferencesStore
) -> bool:
    """
    Run one slash command.

    Returns:
        False when the user asked to quit
    """
    command, _, rest = line.partition(" ")
    args = rest.split()

    if command == "/quit":
        return False
    if command == "/help":
        view.console.print(HELP_TEXT)
    elif command == "/name" and rest.strip():
        try:
            await prefs.save_display_name_async(rest)
        except ConfigError as e:
            view.console.print(f"[red]{e.message}[/red]")
            return True
        session.rename(rest)
        view.console.print(f"You are now [bold]{session.identity.display_name}[/bold]")
    elif command == "/server" and len(args) == 3:
        try:
            server = ServerConfig(broker_url=args[0], port=int(args[1]), topic_prefix=args[2])
            await prefs.save_server_config_async(server)
        except ValueError:
            view.console.print("[red]Port must be a number[/red]")
            return True
        except ConfigError as e:
            view.console.print(f"[red]{e.message}[/red]")
            return True
        await session.change_server(server)
    elif command == "/keys":
        view.show_keys()
        if session.is_connected():
            session.request_public_keys()
    elif command == "/peers":
        view.show_peers()
    elif command == "/reconnect":
        await session.reconnect()
    else:
        view.console.print(HELP_TEXT)
    return True


async def run(args: argparse.Namespace) -> int:
    """Run the chat client until the user quits or stdin closes."""
    console = Console()
    try:
        config = Config(Path(args.config).expanduser() if args.config else None)
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        return 2

    level = "DEBUG" if args.debug else config.get("logging", "level", "INFO")
    log_file = config.config_path.parent / LOG_FILENAME if config.get("logging", "file_logging") else None
    setup_logging(level, log_file, console)

    prefs = PreferencesStore(config)
    display_name, server = prefs.load_identity()
    if args.username:
        display_name = args.username.strip() or display_name

    # Command line overrides apply to this run only
    if args.broker_url:
        server.broker_url = args.broker_url
    if args.port:
        server.port = args.port
    if args.topic_prefix:
        server.topic_prefix = args.topic_prefix

    try:
        server.validate()
        settings = config.session_settings()
        settings.validate()
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        return 2

    try:
        identity = await create_identity(display_name)
    except CryptoUnavailable as e:
        console.print(f"[red]Cannot create identity: {e}[/red]")
        return 1

    session = ChatSession(identity, server, settings=settings)
    view = ChatConsole(session, console)

    console.print(f"[bold]{APP_NAME} {__version__}[/bold] as [bold cyan]{display_name}[/bold cyan]")
    console.print(f"Room [bold]{server.topic_prefix}[/bold] on {server.broker_address}. Type /help for commands.")

    await session.connect()
    try:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                if not await handle_command(line, session, view, prefs):
                    break
            elif await session.send_message(line) is None:
                console.print("[dim]Not sent: not connected[/dim]")
    finally:
        await session.close()

    return 0


def main():
    """Main entry point for SparkChat."""
    parser = argparse.ArgumentParser(
        description="SparkChat - End-to-end encrypted group chat over MQTT",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sparkchat                                   # Join the default room
  sparkchat --username alice                  # Join under a given name
  sparkchat --broker-url mqtt://localhost --port 1883 --topic-prefix team
        """,
    )

    parser.add_argument("--version", action="version", version=f"{APP_NAME} {__version__}")
    parser.add_argument("--config", type=str, default=None, help="Path to configuration file")
    parser.add_argument("--broker-url", type=str, default=None, help="Broker URL (e.g. wss://test.mosquitto.org)")
    parser.add_argument("--port", type=int, default=None, help="Broker port")
    parser.add_argument("--topic-prefix", type=str, default=None, help="Room topic prefix")
    parser.add_argument("--username", type=str, default=None, help="Display name for this session")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
