#!/usr/bin/env python3
"""
Presentation-side handle on the sync engine.

``EngineClient`` owns both message channels, runs the engine on its own
thread and folds the events it receives into a ``ClientState``. A render loop
calls ``poll()`` once per tick; it never blocks.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, List, Optional

from config import config, get_logger
from engine import SyncEngine, start_engine_thread
from messages import (
    AddChannel,
    ChannelClosed,
    ChannelsUpdated,
    DismissAll,
    EditChannel,
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
from models import Channel, Item
from settings import RuntimeSettings, SettingsSnapshot

logger = get_logger("client")

# Commands whose handler ends by publishing the item list or the channel list
FEED_PUBLISHERS = (Startup, UpdateFeed, SetDismissed, DismissAll, Unsubscribe)
CHANNEL_PUBLISHERS = (Startup, AddChannel, EditChannel, Unsubscribe, ImportChannels)


@dataclass
class ClientState:
    """Everything the presentation layer knows about the engine."""

    items: List[Item] = field(default_factory=list)
    channels: List[Channel] = field(default_factory=list)
    updating: bool = False
    importing: bool = False
    feed_progress: float = 0.0
    import_progress: float = 0.0
    errors: List[WorkerError] = field(default_factory=list)


class EngineClient:
    def __init__(self, settings: Optional[RuntimeSettings] = None, **engine_options: Any) -> None:
        """
        Args:
            settings: Shared runtime settings; loaded from the settings file when omitted.
            engine_options: Passed through to ``SyncEngine``.
        """
        self.commands = MessageChannel("commands")
        self.events = MessageChannel("events")
        settings_path = engine_options.get("settings_path") or config.SETTINGS_PATH
        self.settings = settings or RuntimeSettings.from_file(settings_path)
        self.engine = SyncEngine(self.commands, self.events, self.settings, **engine_options)
        self.state = ClientState()
        self.thread = None
        # One entry per sent command still owing a publish; True marks a refresh or import
        self._feed_pending: Deque[bool] = deque()
        self._channels_pending: Deque[bool] = deque()

    def start(self, refresh: bool = True) -> None:
        """Start the engine thread and queue the startup command."""
        if self.thread is not None:
            return
        self.thread = start_engine_thread(self.engine)
        self.send(Startup(refresh=refresh))

    def send(self, command) -> None:
        kind = type(command)
        if kind in FEED_PUBLISHERS:
            refreshing = kind is UpdateFeed or (kind is Startup and command.refresh)
            self._feed_pending.append(refreshing)
            if refreshing:
                self.state.updating = True
                self.state.feed_progress = 0.0
        if kind in CHANNEL_PUBLISHERS:
            importing = kind is ImportChannels
            self._channels_pending.append(importing)
            if importing:
                self.state.importing = True
                self.state.import_progress = 0.0
        self.commands.send(command)

    def poll(self) -> Optional[Any]:
        """Apply at most one pending event and return it."""
        try:
            event = self.events.try_recv()
        except ChannelClosed:
            return None
        if event is not None:
            self.apply(event)
        return event

    def apply(self, event) -> None:
        state = self.state
        if isinstance(event, FeedUpdated):
            state.items = list(event.items)
            state.updating = self._settle(self._feed_pending)
        elif isinstance(event, FeedUpdateProgress):
            state.feed_progress = event.progress
        elif isinstance(event, ChannelsUpdated):
            state.channels = list(event.channels)
            state.importing = self._settle(self._channels_pending)
        elif isinstance(event, ImportProgress):
            state.import_progress = event.progress
        elif isinstance(event, WorkerError):
            state.errors.append(event)
        else:
            logger.warning(f"Ignoring unknown event {event!r}")

    @staticmethod
    def _settle(pending: Deque[bool]) -> bool:
        """Retire the oldest pending publish; True while a later one is still a refresh or import."""
        if pending:
            pending.popleft()
        return any(pending)

    def visible_items(self, show_dismissed: bool = False, query: Optional[str] = None) -> List[Item]:
        """Items to display.

        ``query`` filters on title, summary and channel title, case-insensitively,
        and only when search is enabled in the settings.
        """
        items = [item for item in self.state.items if show_dismissed or not item.dismissed]
        if query and self.settings.show_search_in_feed:
            needle = query.casefold()
            items = [
                item for item in items
                if any(needle in (text or "").casefold() for text in (item.title, item.summary, item.channel_title))
            ]
        return items

    def open_item(self, item: Item) -> str:
        """Return the item's link, dismissing it first when auto-dismiss is on."""
        if self.settings.auto_dismiss_on_open and not item.dismissed:
            self.send(SetDismissed(id=item.id, dismissed=True))
        return item.link

    def dismiss_error(self, index: int) -> WorkerError:
        return self.state.errors.pop(index)

    def update_settings(self, **changes: Any) -> SettingsSnapshot:
        return self.settings.update(**changes)

    def close(self, timeout: Optional[float] = None) -> bool:
        """Send Shutdown, wait for the engine thread and apply its remaining events.

        Returns:
            True if the engine thread has finished.
        """
        if self.thread is not None and self.thread.is_alive():
            try:
                self.commands.send(Shutdown())
            except ChannelClosed:
                pass
            self.thread.join(timeout)
        self.commands.close()
        for event in self.events.drain():
            self.apply(event)
        finished = self.thread is None or not self.thread.is_alive()
        if finished:
            # Nothing more will be published
            self._feed_pending.clear()
            self._channels_pending.clear()
            self.state.updating = self.state.importing = False
        else:
            logger.warning("Worker thread did not stop in time")
        return finished
