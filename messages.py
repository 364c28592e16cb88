#!/usr/bin/env python3
"""
Commands, events and the channels that carry them.

Commands flow from the presentation layer to the sync engine; events flow back.
Both directions use a ``MessageChannel``: an unbounded, thread-safe queue that
any number of threads may send on and a single consumer reads from.

The message types are closed sets. ``COMMAND_TYPES`` and ``EVENT_TYPES`` list
every variant so dispatch tables can be checked for completeness.
"""

from dataclasses import dataclass, field
from queue import Empty, SimpleQueue
from threading import Lock
from typing import Any, List, Optional, Tuple

from models import Channel, Item


class ChannelClosed(Exception):
    """The channel was closed; no more messages will arrive."""


# Commands (presentation -> engine)

@dataclass(frozen=True)
class Startup:
    """Prepare storage, publish current state and refresh all channels.

    ``refresh=False`` publishes stored state without touching the network.
    """

    refresh: bool = True


@dataclass(frozen=True)
class Shutdown:
    """Persist settings and stop the engine."""


@dataclass(frozen=True)
class UpdateFeed:
    """Refresh every channel and publish the item list."""


@dataclass(frozen=True)
class AddChannel:
    link: str


@dataclass(frozen=True)
class EditChannel:
    id: str
    title: str


@dataclass(frozen=True)
class SetDismissed:
    id: str
    dismissed: bool


@dataclass(frozen=True)
class DismissAll:
    pass


@dataclass(frozen=True)
class Unsubscribe:
    id: str


@dataclass(frozen=True)
class ImportChannels:
    """Subscribe to every feed in an OPML file.

    Without a path the engine asks its import path picker; no path means cancel.
    """

    path: Optional[str] = None


@dataclass(frozen=True)
class ExportChannels:
    """Write the channel list as OPML, picking a path the same way as import."""

    path: Optional[str] = None


COMMAND_TYPES: Tuple[type, ...] = (
    Startup,
    Shutdown,
    UpdateFeed,
    AddChannel,
    EditChannel,
    SetDismissed,
    DismissAll,
    Unsubscribe,
    ImportChannels,
    ExportChannels,
)


# Events (engine -> presentation)

@dataclass(frozen=True)
class FeedUpdated:
    """Full item list, newest first."""

    items: Tuple[Item, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class FeedUpdateProgress:
    progress: float


@dataclass(frozen=True)
class ChannelsUpdated:
    """Full channel list."""

    channels: Tuple[Channel, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ImportProgress:
    progress: float


@dataclass(frozen=True)
class WorkerError:
    """A reportable failure: short description plus the underlying message."""

    description: str
    message: str

    def __str__(self) -> str:
        return f"{self.description}: {self.message}" if self.message else self.description


EVENT_TYPES: Tuple[type, ...] = (
    FeedUpdated,
    FeedUpdateProgress,
    ChannelsUpdated,
    ImportProgress,
    WorkerError,
)


class _Closed:
    """Queue marker placed by ``MessageChannel.close``."""


_CLOSED = _Closed()


class MessageChannel:
    """Unbounded multi-producer, single-consumer message queue.

    ``close()`` stands in for every sender going away: messages already queued
    are still delivered, after which receivers get ``ChannelClosed``.
    """

    def __init__(self, name: str = "channel"):
        self.name = name
        self._queue: SimpleQueue = SimpleQueue()
        self._lock = Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: Any) -> None:
        with self._lock:
            if self._closed:
                raise ChannelClosed(f"{self.name} is closed")
            self._queue.put(message)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_CLOSED)

    def _unwrap(self, message: Any) -> Any:
        if message is _CLOSED:
            # Leave the marker for any later receive
            self._queue.put(_CLOSED)
            raise ChannelClosed(f"{self.name} is closed")
        return message

    def recv(self, timeout: Optional[float] = None) -> Optional[Any]:
        """Block until a message arrives.

        Returns None if ``timeout`` elapses first.

        Raises:
            ChannelClosed: the channel is closed and empty.
        """
        try:
            message = self._queue.get(timeout=timeout)
        except Empty:
            return None
        return self._unwrap(message)

    def try_recv(self) -> Optional[Any]:
        """Return the next message, or None if none is waiting.

        Raises:
            ChannelClosed: the channel is closed and empty.
        """
        try:
            message = self._queue.get_nowait()
        except Empty:
            return None
        return self._unwrap(message)

    def drain(self) -> List[Any]:
        """Return every waiting message without blocking."""
        messages: List[Any] = []
        while True:
            try:
                message = self.try_recv()
            except ChannelClosed:
                break
            if message is None:
                break
            messages.append(message)
        return messages
