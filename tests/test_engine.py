import logging
import os

import pytest
import yaml
from aiohttp import web
from aiohttp.test_utils import TestServer

from conftest import ATOM_FEED, make_atom
from engine import EngineState, SyncEngine, start_engine_thread
from messages import (
    COMMAND_TYPES,
    AddChannel,
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
from models import Channel
from settings import RuntimeSettings


class FeedServer:
    """In-process HTTP server whose pages can change between requests."""

    def __init__(self):
        self.pages = {}
        self.server = None

    async def _handle(self, request):
        body = self.pages.get(request.path)
        if body is None:
            return web.Response(status=404, text="missing")
        return web.Response(body=body, content_type="application/atom+xml")

    async def start(self):
        app = web.Application()
        app.router.add_get("/{name:.*}", self._handle)
        self.server = TestServer(app)
        await self.server.start_server()
        return self

    def url(self, route: str) -> str:
        return str(self.server.make_url(route))

    async def close(self):
        await self.server.close()


def make_engine(tmp_path, **kwargs):
    commands = MessageChannel("commands")
    events = MessageChannel("events")
    options = dict(
        db_path=str(tmp_path / "data" / "feedsync.db"),
        data_path=str(tmp_path / "data"),
        settings_path=str(tmp_path / "data" / "config.yml"),
        check_connectivity=False,
    )
    options.update(kwargs)
    engine = SyncEngine(commands, events, RuntimeSettings(), **options)
    return engine, events


def of_type(events, cls):
    return [event for event in events if isinstance(event, cls)]


async def stop(engine):
    await engine.store.stop()
    await engine.fetcher.close()


@pytest.mark.asyncio
async def test_startup_on_empty_store(tmp_path):
    engine, events = make_engine(tmp_path)

    stop_loop = await engine.handle(Startup())

    assert stop_loop is False
    assert os.path.isfile(tmp_path / "data" / "feedsync.db")
    assert events.drain() == [ChannelsUpdated(channels=()), FeedUpdated(items=())]
    assert engine.state == EngineState.IDLE
    await stop(engine)


@pytest.mark.asyncio
async def test_add_channel_scenario(tmp_path):
    server = await FeedServer().start()
    server.pages["/feed.xml"] = ATOM_FEED
    engine, events = make_engine(tmp_path)
    try:
        await engine.handle(Startup())
        events.drain()
        url = server.url("/feed.xml")

        await engine.handle(AddChannel(link=url))
        await engine.handle(AddChannel(link=url))

        received = events.drain()
        assert of_type(received, WorkerError) == []
        updates = of_type(received, ChannelsUpdated)
        assert len(updates) == 2
        expected = Channel(id="abc", kind="Atom", link=url, title="Example", description=None)
        assert updates[-1].channels == (expected,)
    finally:
        await stop(engine)
        await server.close()


@pytest.mark.asyncio
async def test_add_channel_failures_are_reported(tmp_path):
    server = await FeedServer().start()
    server.pages["/page.html"] = b"<html><body>not a feed</body></html>"
    engine, events = make_engine(tmp_path)
    try:
        await engine.handle(Startup())
        events.drain()

        await engine.handle(AddChannel(link="not a url"))
        await engine.handle(AddChannel(link=server.url("/missing.xml")))
        await engine.handle(AddChannel(link=server.url("/page.html")))

        received = events.drain()
        errors = of_type(received, WorkerError)
        assert [e.description for e in errors] == [
            "Invalid feed URL",
            "Web request failed",
            "Failed to parse document",
        ]
        assert "404" in errors[1].message
        assert all(update.channels == () for update in of_type(received, ChannelsUpdated))
    finally:
        await stop(engine)
        await server.close()


@pytest.mark.asyncio
async def test_update_feed_keeps_dismissed_state(tmp_path):
    server = await FeedServer().start()
    server.pages["/feed.xml"] = ATOM_FEED
    engine, events = make_engine(tmp_path)
    try:
        await engine.handle(Startup())
        await engine.handle(AddChannel(link=server.url("/feed.xml")))
        events.drain()

        await engine.handle(UpdateFeed())
        received = events.drain()
        assert [p.progress for p in of_type(received, FeedUpdateProgress)] == [1.0]
        items = of_type(received, FeedUpdated)[-1].items
        assert [item.id for item in items] == ["item-2", "item-1"]
        assert all(item.channel_title == "Example" for item in items)

        await engine.handle(SetDismissed(id="item-1", dismissed=True))
        dismissed = of_type(events.drain(), FeedUpdated)[-1].items
        assert {item.id: item.dismissed for item in dismissed} == {"item-1": True, "item-2": False}

        await engine.handle(UpdateFeed())
        refreshed = of_type(events.drain(), FeedUpdated)[-1].items
        assert len(refreshed) == 2
        assert {item.id: item.dismissed for item in refreshed} == {"item-1": True, "item-2": False}
    finally:
        await stop(engine)
        await server.close()


@pytest.mark.asyncio
async def test_update_feed_isolates_failing_channels(tmp_path):
    server = await FeedServer().start()
    server.pages["/a.xml"] = make_atom("feed-a", "A", ["a-1", "a-2"])
    server.pages["/b.xml"] = make_atom("feed-b", "B", ["b-1"])
    server.pages["/c.xml"] = make_atom("feed-c", "C", ["c-1"])
    engine, events = make_engine(tmp_path)
    try:
        await engine.handle(Startup())
        for name in ("a", "b", "c"):
            await engine.handle(AddChannel(link=server.url(f"/{name}.xml")))
        events.drain()

        del server.pages["/b.xml"]
        await engine.handle(UpdateFeed())

        received = events.drain()
        progress = [p.progress for p in of_type(received, FeedUpdateProgress)]
        assert len(progress) == 3
        assert progress == sorted(progress)
        assert progress[-1] == 1.0
        assert len(of_type(received, WorkerError)) == 1
        items = of_type(received, FeedUpdated)[-1].items
        assert {item.id for item in items} == {"a-1", "a-2", "c-1"}
    finally:
        await stop(engine)
        await server.close()


@pytest.mark.asyncio
async def test_startup_refreshes_existing_channels(tmp_path):
    server = await FeedServer().start()
    server.pages["/feed.xml"] = ATOM_FEED
    engine, events = make_engine(tmp_path)
    try:
        await engine.handle(Startup(refresh=False))
        await engine.handle(AddChannel(link=server.url("/feed.xml")))
        events.drain()

        await engine.handle(Startup())
        received = events.drain()
        assert isinstance(received[0], ChannelsUpdated)
        assert isinstance(received[-1], FeedUpdated)
        assert len(of_type(received, FeedUpdateProgress)) == 1
        assert len(received[-1].items) == 2
    finally:
        await stop(engine)
        await server.close()


@pytest.mark.asyncio
async def test_edit_unsubscribe_and_dismiss_all(tmp_path):
    server = await FeedServer().start()
    server.pages["/a.xml"] = make_atom("feed-a", "A", ["a-1"])
    server.pages["/b.xml"] = make_atom("feed-b", "B", ["b-1", "b-2"])
    engine, events = make_engine(tmp_path)
    try:
        await engine.handle(Startup())
        await engine.handle(AddChannel(link=server.url("/a.xml")))
        await engine.handle(AddChannel(link=server.url("/b.xml")))
        await engine.handle(UpdateFeed())
        events.drain()

        await engine.handle(EditChannel(id="feed-a", title="Renamed"))
        received = events.drain()
        assert received == [of_type(received, ChannelsUpdated)[0]]
        titles = {c.id: c.title for c in received[0].channels}
        assert titles == {"feed-a": "Renamed", "feed-b": "B"}

        await engine.handle(UpdateFeed())
        items = of_type(events.drain(), FeedUpdated)[-1].items
        # Existing items keep the title they were fetched with
        assert {i.id: i.channel_title for i in items}["a-1"] == "A"

        await engine.handle(Unsubscribe(id="feed-b"))
        received = events.drain()
        assert [type(e) for e in received] == [ChannelsUpdated, FeedUpdated]
        assert [c.id for c in received[0].channels] == ["feed-a"]
        assert [i.id for i in received[1].items] == ["a-1"]

        await engine.handle(DismissAll())
        received = events.drain()
        assert [type(e) for e in received] == [FeedUpdated]
        assert all(item.dismissed for item in received[0].items)
    finally:
        await stop(engine)
        await server.close()


@pytest.mark.asyncio
async def test_import_channels(tmp_path):
    server = await FeedServer().start()
    server.pages["/a.xml"] = make_atom("feed-a", "A", ["a-1"])
    server.pages["/b.xml"] = make_atom("feed-b", "B", ["b-1"])
    opml_path = tmp_path / "subs.opml"
    opml_path.write_text(f"""<?xml version="1.0"?>
<opml version="2.0"><body>
  <outline text="Group">
    <outline text="A" xmlUrl="{server.url('/a.xml')}"/>
    <outline text="Inner">
      <outline text="Broken" xmlUrl="{server.url('/gone.xml')}"/>
      <outline text="B" xmlUrl="{server.url('/b.xml')}"/>
    </outline>
  </outline>
</body></opml>
""")
    engine, events = make_engine(tmp_path)
    try:
        await engine.handle(Startup())
        events.drain()

        await engine.handle(ImportChannels(path=str(opml_path)))
        received = events.drain()

        progress = [p.progress for p in of_type(received, ImportProgress)]
        assert len(progress) == 3
        assert progress[-1] == 1.0
        errors = of_type(received, WorkerError)
        assert len(errors) == 1
        assert "gone.xml" in errors[0].message
        assert isinstance(received[-1], ChannelsUpdated)
        assert {c.id for c in received[-1].channels} == {"feed-a", "feed-b"}

        # Already subscribed feeds are not fetched again
        await engine.handle(ImportChannels(path=str(opml_path)))
        received = events.drain()
        assert len(of_type(received, ImportProgress)) == 1
        assert len(received[-1].channels) == 2
    finally:
        await stop(engine)
        await server.close()


@pytest.mark.asyncio
async def test_import_errors_and_cancellation(tmp_path):
    picked = []
    engine, events = make_engine(tmp_path, pick_import_path=lambda: picked.pop() if picked else None)
    try:
        await engine.handle(Startup(refresh=False))
        events.drain()

        await engine.handle(ImportChannels(path=str(tmp_path / "missing.opml")))
        received = events.drain()
        assert [type(e) for e in received] == [WorkerError, ChannelsUpdated]
        assert received[0].description == "Failed to read file"

        bad = tmp_path / "bad.opml"
        bad.write_text("<opml><body><outline")
        picked.append(str(bad))
        await engine.handle(ImportChannels())
        received = events.drain()
        assert received[0].description == "Failed to parse xml"

        # Picker yields nothing
        await engine.handle(ImportChannels())
        assert [type(e) for e in events.drain()] == [ChannelsUpdated]
    finally:
        await stop(engine)


@pytest.mark.asyncio
async def test_export_channels(tmp_path):
    server = await FeedServer().start()
    server.pages["/feed.xml"] = ATOM_FEED
    export_path = tmp_path / "export.opml"
    engine, events = make_engine(tmp_path, pick_export_path=lambda: None)
    try:
        await engine.handle(Startup(refresh=False))
        await engine.handle(AddChannel(link=server.url("/feed.xml")))
        events.drain()

        await engine.handle(ExportChannels(path=str(export_path)))
        assert events.drain() == []
        text = export_path.read_text()
        assert server.url("/feed.xml") in text
        assert 'text="Example"' in text

        # Cancelled picker: nothing written, nothing emitted
        await engine.handle(ExportChannels())
        assert events.drain() == []

        await engine.handle(ExportChannels(path=str(tmp_path / "no-dir" / "out.opml")))
        received = events.drain()
        assert [e.description for e in received] == ["Failed to write file"]
    finally:
        await stop(engine)
        await server.close()


@pytest.mark.asyncio
async def test_commands_before_startup_report_storage_errors(tmp_path):
    engine, events = make_engine(tmp_path)

    await engine.handle(SetDismissed(id="x", dismissed=True))
    received = events.drain()
    assert [type(e) for e in received] == [WorkerError, WorkerError]
    assert all(e.description == "Database operation failed" for e in received)

    await engine.handle(ExportChannels(path=str(tmp_path / "out.opml")))
    assert [type(e) for e in events.drain()] == [WorkerError]
    await stop(engine)


@pytest.mark.asyncio
async def test_offline_refresh_reports_once(tmp_path):
    async def offline():
        return False

    server = await FeedServer().start()
    server.pages["/feed.xml"] = ATOM_FEED
    engine, events = make_engine(tmp_path, check_connectivity=True, connectivity_probe=offline)
    try:
        await engine.handle(Startup(refresh=False))
        await engine.handle(AddChannel(link=server.url("/feed.xml")))
        events.drain()

        await engine.handle(UpdateFeed())
        received = events.drain()
        assert [type(e) for e in received] == [WorkerError, FeedUpdated]
        assert received[0].message == "No network connection"
    finally:
        await stop(engine)
        await server.close()


@pytest.mark.asyncio
async def test_shutdown_saves_settings(tmp_path):
    engine, events = make_engine(tmp_path)
    await engine.handle(Startup(refresh=False))
    engine.settings.update(max_allowed_concurrent_requests=7)

    assert await engine.handle(Shutdown()) is True
    saved = yaml.safe_load((tmp_path / "data" / "config.yml").read_text())
    assert saved["max_allowed_concurrent_requests"] == 7
    assert engine.store.running is False
    await stop(engine)


@pytest.mark.asyncio
async def test_serve_logs_configuration_and_stops_on_shutdown(tmp_path, caplog):
    engine, events = make_engine(tmp_path)
    engine.commands.send(Shutdown())

    with caplog.at_level(logging.DEBUG, logger="FeedSync.engine"):
        await engine.serve()

    summary = next(r.getMessage() for r in caplog.records if r.getMessage().startswith("Configuration: "))
    assert "'http_timeout'" in summary
    assert "Worker stopped." in caplog.text
    assert os.path.isfile(tmp_path / "data" / "config.yml")


@pytest.mark.asyncio
async def test_handler_failures_never_escape(tmp_path):
    engine, events = make_engine(tmp_path)

    async def broken(command):
        raise RuntimeError("kaboom")

    engine._handlers[DismissAll] = broken
    assert await engine.handle(DismissAll()) is False
    assert await engine.handle(object()) is False

    received = events.drain()
    assert [e.description for e in received] == ["Unexpected error", "Unknown command"]
    assert "kaboom" in received[0].message
    await stop(engine)


def test_every_command_has_a_handler(tmp_path):
    engine, _ = make_engine(tmp_path)
    assert set(engine._handlers) == set(COMMAND_TYPES)


def test_threaded_loop_processes_commands_in_order(tmp_path):
    engine, events = make_engine(tmp_path)
    commands = engine.commands
    thread = start_engine_thread(engine)

    commands.send(Startup(refresh=False))
    commands.send(EditChannel(id="missing", title="x"))
    commands.send(DismissAll())
    commands.send(Shutdown())
    commands.send(DismissAll())
    thread.join(timeout=10)

    assert not thread.is_alive()
    received = events.drain()
    assert [type(e) for e in received] == [ChannelsUpdated, FeedUpdated, ChannelsUpdated, FeedUpdated]
    assert os.path.isfile(tmp_path / "data" / "config.yml")
    # The command queued after Shutdown is never handled
    assert isinstance(commands.try_recv(), DismissAll)


def test_threaded_loop_exits_when_command_channel_closes(tmp_path):
    engine, events = make_engine(tmp_path)
    thread = start_engine_thread(engine)

    engine.commands.send(Startup(refresh=False))
    engine.commands.close()
    thread.join(timeout=10)

    assert not thread.is_alive()
    assert [type(e) for e in events.drain()] == [ChannelsUpdated, FeedUpdated]
    # No settings are written without Shutdown
    assert not os.path.exists(tmp_path / "data" / "config.yml")
