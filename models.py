#!/usr/bin/env python3
"""
Database models and operations for FeedSync.

This module contains the Channel and Item records and the queued SQLite store
that owns every query against them, providing a clean separation between data
access and the sync engine.

All operations run on a single connection owned by an asyncio worker task;
callers submit them by name through ``FeedStore.execute``. Operations raise
``StorageError`` on any schema or query failure.
"""

from dataclasses import dataclass
from os import path, access, R_OK
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, Iterable

from config import config, get_logger
from errors import FeedSyncError, StorageError
from telemetry import get_tracer, trace_span

# Module-specific logger
logger = get_logger("models")
_tracer = get_tracer("db")

# Stored in Item.link when an entry has no link of its own
NO_LINK = "<no link>"


@dataclass
class Channel:
    """A subscribed feed source (its metadata, not its items)."""

    id: str
    kind: str
    link: str
    title: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Channel":
        return cls(
            id=row['id'],
            kind=row['kind'],
            link=row['link'],
            title=row['title'],
            description=row['description'],
        )


@dataclass
class Item:
    """One entry belonging to a channel.

    ``channel_title`` is a copy of the owning channel's title taken when the
    item was fetched. Renaming the channel later does not rewrite it.
    """

    id: str
    link: str
    channel: str
    title: Optional[str] = None
    summary: Optional[str] = None
    published: int = 0
    dismissed: bool = False
    channel_title: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Item":
        return cls(
            id=row['id'],
            link=row['link'],
            channel=row['channel'],
            title=row['title'],
            summary=row['summary'],
            published=row['published'],
            dismissed=bool(row['dismissed']),
            channel_title=row['channel_title'],
        )


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    try:
        if not path.isfile(schema_path):
            raise FileNotFoundError(f"Schema file not found at {schema_path}")

        if not access(schema_path, R_OK):
            raise PermissionError(f"No read permission for schema file at {schema_path}")

        # Check file size to prevent reading extremely large files
        file_size = path.getsize(schema_path)
        max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
        if file_size > max_size:
            raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

        with open(schema_path, 'r') as f:
            return f.read()
    except (OSError, ValueError) as e:
        logger.error(f"Error reading schema file: {e}")
        raise StorageError(str(e), description="Failed to read database schema") from e


class FeedStore:
    """A queue for database operations to ensure thread safety."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database connection and start the worker.

        Raises:
            StorageError: the database file could not be opened.
        """
        if self.running:
            return

        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using existing database at {self.db_path}")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            # Cascading deletes depend on this; it is per-connection in SQLite
            self.conn.execute("PRAGMA foreign_keys = ON")
        except Error as e:
            self.conn = None
            raise StorageError(str(e), description="Failed to open database") from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass
            self.worker_task = None

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting; execute() reports the missing result
        for event in self.events.values():
            event.set()
        self.events.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or not callable(method):
                        raise StorageError(f"Unknown operation: {operation_name}")
                    self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation.

        Raises:
            StorageError: the store is not running or the operation failed.
        """
        if not self.running:
            raise StorageError(f"cannot run '{operation_name}', database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise StorageError(f"database worker stopped before '{operation_name}' completed")

            if "error" in result:
                error = result["error"]
                if isinstance(error, FeedSyncError):
                    raise error
                raise StorageError(str(error)) from error

            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Schema
    def create_schema(self) -> None:
        """Create tables and indexes if they are absent."""
        schema_sql = _read_schema_file()
        try:
            self.conn.executescript(schema_sql)
            self.conn.commit()
        except Error as e:
            raise StorageError(str(e), description="Failed to initialize database") from e
        logger.info("Database schema ready")

    # Channel Management Operations
    def upsert_channel(self, channel: Channel) -> bool:
        """Insert a channel unless its id or link is already stored.

        Returns:
            True if a new row was written.
        """
        try:
            cursor = self.conn.execute(
                "INSERT OR IGNORE INTO channels (id, kind, link, title, description) VALUES (?, ?, ?, ?, ?)",
                (channel.id, channel.kind, channel.link, channel.title, channel.description)
            )
            self.conn.commit()
            inserted = cursor.rowcount > 0
        except Error as e:
            self.conn.rollback()
            raise StorageError(str(e), description="Failed to save channel") from e
        if not inserted:
            logger.info(f"Channel {channel.id} ({channel.link}) already subscribed")
        return inserted

    def list_channels(self) -> List[Channel]:
        try:
            rows = self.conn.execute(
                "SELECT id, kind, link, title, description FROM channels ORDER BY rowid"
            ).fetchall()
        except Error as e:
            raise StorageError(str(e), description="Failed to fetch channels from db") from e
        return [Channel.from_row(row) for row in rows]

    def edit_channel_title(self, id: str, title: str) -> bool:
        """Override a channel's title. Existing items keep their snapshot."""
        try:
            cursor = self.conn.execute("UPDATE channels SET title = ? WHERE id = ?", (title, id))
            self.conn.commit()
        except Error as e:
            self.conn.rollback()
            raise StorageError(str(e), description="Failed to edit channel") from e
        return cursor.rowcount > 0

    def delete_channel(self, id: str) -> bool:
        """Delete a channel; its items go with it."""
        try:
            cursor = self.conn.execute("DELETE FROM channels WHERE id = ?", (id,))
            self.conn.commit()
        except Error as e:
            self.conn.rollback()
            raise StorageError(str(e), description="Failed to unsubscribe") from e
        return cursor.rowcount > 0

    # Item Management Operations
    def insert_items(self, items: Iterable[Item]) -> int:
        """Insert items in one transaction, skipping ids that already exist.

        Stored rows are never overwritten, so a refresh cannot reset the
        dismissed flag. Any failure rolls back the whole batch.

        Returns:
            Number of new rows written.
        """
        rows = [
            (
                item.id,
                item.link,
                item.title,
                item.summary,
                int(item.published),
                bool(item.dismissed),
                item.channel_title,
                item.channel,
            )
            for item in items
        ]
        if not rows:
            return 0

        before = self.conn.total_changes
        try:
            with self.conn:
                self.conn.executemany(
                    '''
                    INSERT OR IGNORE INTO items
                        (id, link, title, summary, published, dismissed, channel_title, channel)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ''',
                    rows
                )
        except Error as e:
            raise StorageError(str(e), description="Failed to save new feed items") from e
        return self.conn.total_changes - before

    def list_items(self) -> List[Item]:
        """All items, newest first; undated items last, in insertion order."""
        try:
            rows = self.conn.execute(
                '''
                SELECT id, link, title, summary, published, dismissed, channel_title, channel
                FROM items
                ORDER BY published = 0, published DESC, rowid ASC
                '''
            ).fetchall()
        except Error as e:
            raise StorageError(str(e), description="Failed to fetch items from db") from e
        return [Item.from_row(row) for row in rows]

    def set_dismissed(self, id: str, dismissed: bool) -> bool:
        try:
            cursor = self.conn.execute("UPDATE items SET dismissed = ? WHERE id = ?", (bool(dismissed), id))
            self.conn.commit()
        except Error as e:
            self.conn.rollback()
            raise StorageError(str(e), description="Failed to set dismissed") from e
        return cursor.rowcount > 0

    def dismiss_all(self) -> int:
        try:
            cursor = self.conn.execute("UPDATE items SET dismissed = 1")
            self.conn.commit()
        except Error as e:
            self.conn.rollback()
            raise StorageError(str(e), description="Failed to dismiss all") from e
        return cursor.rowcount

    def count_items(self) -> int:
        """Return total number of rows in items table (utility for tests)."""
        try:
            result = self.conn.execute("SELECT COUNT(*) FROM items").fetchone()
        except Error as e:
            raise StorageError(str(e)) from e
        return int(result[0]) if result else 0
