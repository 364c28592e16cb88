#!/usr/bin/env python3
"""
FeedSync command line.

Each sub-command starts the sync engine on its background thread, queues the
commands it needs followed by Shutdown, waits for the engine to finish and
prints the resulting state. Any error reported by the engine is printed to
stderr and makes the exit status 1.
"""

import argparse
import sys
from datetime import datetime, timezone
from typing import List, Optional

from client import EngineClient
from config import config, get_logger
from messages import (
    AddChannel,
    DismissAll,
    EditChannel,
    ExportChannels,
    ImportChannels,
    SetDismissed,
    Unsubscribe,
)
from models import Channel, Item
from settings import MAX_CONCURRENT_REQUESTS, MIN_CONCURRENT_REQUESTS
from telemetry import init_telemetry
from utils import truncate_string

# Module-specific logger
logger = get_logger("cli")

# Sub-commands that need a network refresh during startup
REFRESH_COMMANDS = {"refresh"}


def format_item(item: Item) -> str:
    if item.published:
        when = datetime.fromtimestamp(item.published, timezone.utc).strftime("%Y-%m-%d %H:%M")
    else:
        when = "----------------"
    mark = "x" if item.dismissed else " "
    title = truncate_string(item.title or "(untitled)", 80)
    source = truncate_string(item.channel_title or "Unknown", 30)
    return f"[{mark}] {when}  {source} | {title}\n      {item.id}  {item.link}"


def format_channel(channel: Channel) -> str:
    return f"{channel.id}  [{channel.kind}] {channel.title or 'Unknown'}\n      {channel.link}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feedsync", description="Feed aggregator")
    parser.add_argument('--db', dest='db_path', type=str,
                        help=f'Database file (default: {config.DATABASE_PATH})')
    parser.add_argument('--settings-file', dest='settings_path', type=str,
                        help=f'Settings file (default: {config.SETTINGS_PATH})')

    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('refresh', help='Fetch all channels and show unread items')

    list_parser = subparsers.add_parser('list', help='Show stored items')
    list_parser.add_argument('--all', action='store_true', help='Include dismissed items')
    list_parser.add_argument('--query', type=str, help='Filter items (requires search to be enabled)')

    subparsers.add_parser('channels', help='Show subscribed channels')

    add_parser = subparsers.add_parser('add', help='Subscribe to one or more feeds')
    add_parser.add_argument('urls', nargs='+')

    rename_parser = subparsers.add_parser('rename', help='Rename a channel')
    rename_parser.add_argument('id')
    rename_parser.add_argument('title')

    unsubscribe_parser = subparsers.add_parser('unsubscribe', help='Remove a channel and its items')
    unsubscribe_parser.add_argument('id')

    dismiss_parser = subparsers.add_parser('dismiss', help='Mark items as dismissed')
    dismiss_parser.add_argument('ids', nargs='+')

    undismiss_parser = subparsers.add_parser('undismiss', help='Mark items as not dismissed')
    undismiss_parser.add_argument('ids', nargs='+')

    subparsers.add_parser('dismiss-all', help='Dismiss every item')

    import_parser = subparsers.add_parser('import', help='Subscribe to every feed in an OPML file')
    import_parser.add_argument('path')

    export_parser = subparsers.add_parser('export', help='Write subscriptions to an OPML file')
    export_parser.add_argument('path')

    settings_parser = subparsers.add_parser('settings', help='Show or change runtime settings')
    settings_parser.add_argument('--concurrency', type=int,
                                 help=f'Concurrent requests ({MIN_CONCURRENT_REQUESTS}-{MAX_CONCURRENT_REQUESTS})')
    settings_parser.add_argument('--auto-dismiss', dest='auto_dismiss', action=argparse.BooleanOptionalAction,
                                 help='Dismiss items when they are opened')
    settings_parser.add_argument('--search', dest='search', action=argparse.BooleanOptionalAction,
                                 help='Enable search in the feed')
    return parser


def commands_for(args: argparse.Namespace) -> List:
    """Engine commands queued after Startup for a parsed command line."""
    if args.command == 'add':
        return [AddChannel(link=url) for url in args.urls]
    if args.command == 'rename':
        return [EditChannel(id=args.id, title=args.title)]
    if args.command == 'unsubscribe':
        return [Unsubscribe(id=args.id)]
    if args.command == 'dismiss':
        return [SetDismissed(id=item_id, dismissed=True) for item_id in args.ids]
    if args.command == 'undismiss':
        return [SetDismissed(id=item_id, dismissed=False) for item_id in args.ids]
    if args.command == 'dismiss-all':
        return [DismissAll()]
    if args.command == 'import':
        return [ImportChannels(path=args.path)]
    if args.command == 'export':
        return [ExportChannels(path=args.path)]
    return []


def settings_changes(args: argparse.Namespace) -> dict:
    changes = {}
    if getattr(args, 'concurrency', None) is not None:
        changes['max_allowed_concurrent_requests'] = args.concurrency
    if getattr(args, 'auto_dismiss', None) is not None:
        changes['auto_dismiss_on_open'] = args.auto_dismiss
    if getattr(args, 'search', None) is not None:
        changes['show_search_in_feed'] = args.search
    return changes


def print_state(client: EngineClient, args: argparse.Namespace) -> None:
    if args.command in ('channels', 'add', 'rename', 'unsubscribe', 'import'):
        for channel in client.state.channels:
            print(format_channel(channel))
        print(f"{len(client.state.channels)} channels")
    elif args.command == 'settings':
        for key, value in client.settings.snapshot().to_dict().items():
            print(f"{key}: {value}")
    elif args.command == 'export':
        print(f"Exported {len(client.state.channels)} channels to {args.path}")
    else:
        show_all = getattr(args, 'all', False)
        items = client.visible_items(show_dismissed=show_all, query=getattr(args, 'query', None))
        for item in items:
            print(format_item(item))
        print(f"{len(items)} items shown, {len(client.state.items)} stored")


def run_cli(args: argparse.Namespace) -> int:
    engine_options = {}
    if args.db_path:
        engine_options['db_path'] = args.db_path
    if args.settings_path:
        engine_options['settings_path'] = args.settings_path

    client = EngineClient(**engine_options)
    changes = settings_changes(args)
    if changes:
        client.update_settings(**changes)

    client.start(refresh=args.command in REFRESH_COMMANDS)
    for command in commands_for(args):
        client.send(command)
    if not client.close():
        print("Engine did not shut down cleanly", file=sys.stderr)
        return 1

    print_state(client, args)
    for error in client.state.errors:
        print(f"error: {error}", file=sys.stderr)
    return 1 if client.state.errors else 0


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    init_telemetry("feedsync")
    sys.exit(run_cli(args))


if __name__ == "__main__":
    main()
