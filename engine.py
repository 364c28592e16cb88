#!/usr/bin/env python3
"""
Sync engine: the background actor that owns storage and network access.

The engine runs on its own daemon thread with its own asyncio loop. Between
commands it blocks that thread on the command channel. It takes one command at
a time, runs its handler to completion (including every event it emits) and
only then receives the next command.
Handlers may fetch many feeds concurrently through the fetch pipeline, but two
commands never overlap.

Every failure inside a handler is reported as a ``WorkerError`` event. The
loop only stops on ``Shutdown`` or when the command channel is closed.
"""

from asyncio import get_running_loop, run
from contextlib import contextmanager
from enum import Enum
from os import makedirs, path
from threading import Thread
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Type

from config import config, get_logger
from errors import FeedSyncError, FilesystemError
from fetcher import FeedDocument, FeedFetcher, FetchPipeline, FetchResult
from messages import (
    COMMAND_TYPES,
    AddChannel,
    ChannelClosed,
    ChannelsUpdated,
    DismissAll,
    EditChannel,
    ExportChannels,
    FeedUpdated,
    FeedUpdateProgress,
    ImportChannels,
    ImportProgress,
    MessageChannel,
    SetDismissed,
    Shutdown,
    Startup,
    Unsubscribe,
    UpdateFeed,
    WorkerError,
)
from models import NO_LINK, Channel, FeedStore, Item
from opml import read_outline_file, write_outline_file
from settings import RuntimeSettings
from telemetry import get_tracer, trace_span
from utils import is_online, validate_url

# Module-specific logger
logger = get_logger("engine")
_tracer = get_tracer("engine")

PathPicker = Callable[[], Optional[str]]


class EngineState(str, Enum):
    IDLE = "Idle"
    FETCHING = "Fetching"
    IMPORTING = "Importing"


def channel_from_document(link: str, document: FeedDocument) -> Channel:
    """Channel record for a freshly fetched subscription URL."""
    return Channel(
        id=document.id,
        kind=document.kind.value,
        link=link,
        title=document.title,
        description=document.description,
    )


def build_items(channel: Channel, document: FeedDocument) -> List[Item]:
    """Items for every entry of a channel's document.

    ``channel_title`` is the channel's title right now; later renames do not
    touch these rows.
    """
    return [
        Item(
            id=entry.id,
            link=entry.links[0] if entry.links else NO_LINK,
            channel=channel.id,
            title=entry.title,
            summary=entry.summary,
            published=entry.timestamp,
            dismissed=False,
            channel_title=channel.title,
        )
        for entry in document.entries
    ]


class SyncEngine:
    """Command loop owning the feed store, fetcher and shared settings."""

    def __init__(
        self,
        commands: MessageChannel,
        events: MessageChannel,
        settings: RuntimeSettings,
        db_path: Optional[str] = None,
        data_path: Optional[str] = None,
        settings_path: Optional[str] = None,
        fetcher: Optional[FeedFetcher] = None,
        pick_import_path: Optional[PathPicker] = None,
        pick_export_path: Optional[PathPicker] = None,
        check_connectivity: Optional[bool] = None,
        connectivity_probe: Callable[[], Awaitable[bool]] = is_online,
    ) -> None:
        self.commands = commands
        self.events = events
        self.settings = settings
        self.db_path = db_path or config.DATABASE_PATH
        self.data_path = data_path or config.DATA_PATH
        self.settings_path = settings_path or config.SETTINGS_PATH
        self.store = FeedStore(self.db_path)
        self.fetcher = fetcher or FeedFetcher()
        self.pipeline = FetchPipeline(self.fetcher, lambda: self.settings.max_allowed_concurrent_requests)
        self.pick_import_path = pick_import_path
        self.pick_export_path = pick_export_path
        self.check_connectivity = config.CHECK_CONNECTIVITY if check_connectivity is None else check_connectivity
        self.connectivity_probe = connectivity_probe
        self.state = EngineState.IDLE
        self._events_lost = False

        self._handlers: Dict[Type, Callable[[object], Awaitable[None]]] = {
            Startup: self.handle_startup,
            Shutdown: self.handle_shutdown,
            UpdateFeed: self.handle_update_feed,
            AddChannel: self.handle_add_channel,
            EditChannel: self.handle_edit_channel,
            SetDismissed: self.handle_set_dismissed,
            DismissAll: self.handle_dismiss_all,
            Unsubscribe: self.handle_unsubscribe,
            ImportChannels: self.handle_import_channels,
            ExportChannels: self.handle_export_channels,
        }
        missing = [t.__name__ for t in COMMAND_TYPES if t not in self._handlers]
        if missing:
            raise RuntimeError(f"No handler for commands: {', '.join(missing)}")

    # Event helpers
    def emit(self, event) -> None:
        try:
            self.events.send(event)
        except ChannelClosed:
            if not self._events_lost:
                logger.warning("Event channel closed; further events are dropped")
                self._events_lost = True

    def report_error(self, description: str, message: str) -> None:
        logger.error(f"{description}: {message}")
        self.emit(WorkerError(description=description, message=message))

    @contextmanager
    def reporting(self):
        """Turn a FeedSyncError raised in the block into a WorkerError event."""
        try:
            yield
        except FeedSyncError as e:
            self.report_error(e.description, e.message)

    def _set_state(self, state: EngineState) -> None:
        if state != self.state:
            logger.debug(f"Engine state {self.state.value} -> {state.value}")
            self.state = state

    # Command loop
    def run(self) -> None:
        """Drive the command loop on a fresh event loop until it stops."""
        run(self.serve())

    async def serve(self) -> None:
        logger.info("Worker starting up.")
        logger.debug(f"Configuration: {config.get_config_summary()}")
        try:
            while True:
                try:
                    # Blocks this thread between commands; nothing else runs on the loop then
                    command = self.commands.recv()
                except ChannelClosed:
                    logger.error("Command channel closed; stopping worker")
                    break
                if command is None:
                    continue
                if await self.handle(command):
                    break
        finally:
            await self.store.stop()
            await self.fetcher.close()
        logger.info("Worker stopped.")

    @trace_span(
        "engine.handle",
        tracer_name="engine",
        attr_from_args=lambda self, command: {"engine.command": type(command).__name__},
    )
    async def handle(self, command) -> bool:
        """Run one command to completion.

        Returns:
            True when the loop should stop.
        """
        handler = self._handlers.get(type(command))
        if handler is None:
            self.report_error("Unknown command", repr(command))
            return False

        logger.debug(f"Handling {type(command).__name__}")
        try:
            await handler(command)
        except FeedSyncError as e:
            self.report_error(e.description, e.message)
        except Exception as e:
            logger.exception(f"Unexpected error while handling {type(command).__name__}")
            self.report_error("Unexpected error", f"{type(e).__name__}: {e}")
        finally:
            self._set_state(EngineState.IDLE)
        return isinstance(command, Shutdown)

    # Shared steps
    def initialize_app_fs(self) -> None:
        """Create the application directory and an empty database file.

        Raises:
            FilesystemError: either could not be created.
        """
        try:
            makedirs(self.data_path, exist_ok=True)
            db_dir = path.dirname(self.db_path)
            if db_dir:
                makedirs(db_dir, exist_ok=True)
        except OSError as e:
            raise FilesystemError(str(e), description="Failed to initialize app filesystem") from e
        logger.info("Initialized application filesystem.")

        if not path.exists(self.db_path):
            try:
                with open(self.db_path, 'a'):
                    pass
            except OSError as e:
                raise FilesystemError(str(e), description="Failed to create database") from e

    async def initialize_database(self) -> None:
        await self.store.start()
        await self.store.execute("create_schema")
        logger.info("Initialized database.")

    async def publish_channels(self) -> None:
        with self.reporting():
            channels = await self.store.execute("list_channels")
            self.emit(ChannelsUpdated(channels=tuple(channels)))

    async def publish_feed(self) -> None:
        with self.reporting():
            items = await self.store.execute("list_items")
            self.emit(FeedUpdated(items=tuple(items)))

    async def refresh_channels(self) -> None:
        """Fetch every channel and store entries that are not stored yet."""
        channels: List[Channel] = []
        with self.reporting():
            channels = await self.store.execute("list_channels")
        if not channels:
            logger.info("No channels to refresh")
            return

        if self.check_connectivity and not await self.connectivity_probe():
            self.report_error("Web request failed", "No network connection")
            return

        self._set_state(EngineState.FETCHING)
        logger.info("Started parsing.")

        def on_result(result: FetchResult, completed: int, total: int) -> None:
            if not result.ok:
                self.report_error(result.error.description, result.error.message)
            self.emit(FeedUpdateProgress(progress=completed / total))

        results = await self.pipeline.run(channels, url_of=lambda channel: channel.link, on_result=on_result)
        logger.info("Finished parsing.")

        items: List[Item] = []
        for result in results:
            if result.ok:
                items.extend(build_items(result.target, result.document))

        logger.info(f"Saving retrieved items to database (amount: {len(items)})")
        with self.reporting():
            added = await self.store.execute("insert_items", items=items)
            logger.info(f"Feed update finished, {added} new items")
        self._set_state(EngineState.IDLE)

    async def add_channels(self, links: Iterable[str], progress_event: Optional[type] = None) -> int:
        """Fetch each link and subscribe to the ones that parse.

        Each link succeeds or fails on its own. When ``progress_event`` is
        given, one such event is emitted per finished link.

        Returns:
            Number of channels newly stored.
        """
        valid: List[str] = []
        for link in links:
            link = (link or "").strip()
            if validate_url(link):
                valid.append(link)
            else:
                self.report_error("Invalid feed URL", link or "<empty>")
        if not valid:
            return 0

        def on_result(result: FetchResult, completed: int, total: int) -> None:
            if not result.ok:
                self.report_error(result.error.description, result.error.message)
            if progress_event is not None:
                self.emit(progress_event(progress=completed / total))

        results = await self.pipeline.run(valid, on_result=on_result)

        channels = [channel_from_document(r.url, r.document) for r in results if r.ok]
        logger.info(f"Saving new channels to database. (amount: {len(channels)})")
        saved = 0
        for channel in channels:
            with self.reporting():
                if await self.store.execute("upsert_channel", channel=channel):
                    saved += 1
        return saved

    def _pick_path(self, picker: Optional[PathPicker], action: str) -> Optional[str]:
        if picker is None:
            logger.info(f"No {action} path given and no picker available")
            return None
        chosen = picker()
        if not chosen:
            logger.info(f"{action.capitalize()} cancelled")
        return chosen or None

    # Command handlers
    async def handle_startup(self, command: Startup) -> None:
        with self.reporting():
            self.initialize_app_fs()
        with self.reporting():
            await self.initialize_database()
        await self.publish_channels()
        if command.refresh:
            await self.refresh_channels()
        await self.publish_feed()

    async def handle_shutdown(self, command: Shutdown) -> None:
        logger.info("Saving config.")
        with self.reporting():
            await get_running_loop().run_in_executor(None, self.settings.save, self.settings_path)
        await self.store.stop()
        logger.info("Shutting down.")

    async def handle_update_feed(self, command: UpdateFeed) -> None:
        await self.refresh_channels()
        await self.publish_feed()

    async def handle_add_channel(self, command: AddChannel) -> None:
        await self.add_channels([command.link])
        await self.publish_channels()

    async def handle_edit_channel(self, command: EditChannel) -> None:
        with self.reporting():
            if not await self.store.execute("edit_channel_title", id=command.id, title=command.title):
                logger.warning(f"Cannot rename unknown channel {command.id}")
        await self.publish_channels()

    async def handle_set_dismissed(self, command: SetDismissed) -> None:
        with self.reporting():
            if not await self.store.execute("set_dismissed", id=command.id, dismissed=command.dismissed):
                logger.warning(f"Cannot update unknown item {command.id}")
        await self.publish_feed()

    async def handle_dismiss_all(self, command: DismissAll) -> None:
        with self.reporting():
            count = await self.store.execute("dismiss_all")
            logger.info(f"Dismissed {count} items")
        await self.publish_feed()

    async def handle_unsubscribe(self, command: Unsubscribe) -> None:
        with self.reporting():
            if not await self.store.execute("delete_channel", id=command.id):
                logger.warning(f"Cannot unsubscribe unknown channel {command.id}")
        await self.publish_channels()
        await self.publish_feed()

    async def handle_import_channels(self, command: ImportChannels) -> None:
        file_path = command.path or self._pick_path(self.pick_import_path, "import")
        if file_path:
            links: List[str] = []
            with self.reporting():
                links = await get_running_loop().run_in_executor(None, read_outline_file, file_path)
            links = list(dict.fromkeys(links))

            existing = set()
            with self.reporting():
                existing = {channel.link for channel in await self.store.execute("list_channels")}
            pending = [link for link in links if link not in existing]
            if len(pending) < len(links):
                logger.info(f"Skipping {len(links) - len(pending)} already subscribed feeds")

            if pending:
                self._set_state(EngineState.IMPORTING)
                saved = await self.add_channels(pending, progress_event=ImportProgress)
                logger.info(f"Imported {saved} of {len(pending)} feeds from {file_path}")
                self._set_state(EngineState.IDLE)
        await self.publish_channels()

    async def handle_export_channels(self, command: ExportChannels) -> None:
        file_path = command.path or self._pick_path(self.pick_export_path, "export")
        if not file_path:
            return
        channels = await self.store.execute("list_channels")
        await get_running_loop().run_in_executor(None, write_outline_file, file_path, channels)


def start_engine_thread(engine: SyncEngine, name: str = "FeedSync worker") -> Thread:
    """Run the engine's command loop on a daemon thread and return it."""
    thread = Thread(name=name, target=engine.run, daemon=True)
    thread.start()
    return thread
