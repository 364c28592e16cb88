import pytest

from errors import NetworkError
from fetcher import FeedFetcher


ATOM_FEED = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <id>abc</id>
  <title>Example</title>
  <updated>2024-01-02T00:00:00Z</updated>
  <entry>
    <id>item-1</id>
    <title>First post</title>
    <link href="https://example.com/posts/1"/>
    <updated>2024-01-01T00:00:00Z</updated>
    <summary>The first one</summary>
  </entry>
  <entry>
    <id>item-2</id>
    <title>Second post</title>
    <link href="https://example.com/posts/2"/>
    <published>2024-01-02T00:00:00Z</published>
    <updated>2024-01-03T00:00:00Z</updated>
  </entry>
</feed>
"""

RSS_FEED = b"""<?xml version="1.0" encoding="utf-8"?>
<rss version="2.0">
  <channel>
    <title>RSS Example</title>
    <link>https://rss.example.com/</link>
    <description>Things happen</description>
    <item>
      <guid isPermaLink="false">rss-1</guid>
      <title>Dated</title>
      <link>https://rss.example.com/1</link>
      <pubDate>Mon, 01 Jan 2024 12:00:00 +0000</pubDate>
    </item>
    <item>
      <title>No guid</title>
      <link>https://rss.example.com/2</link>
    </item>
    <item>
      <title>Bare</title>
      <description>Nothing but text</description>
    </item>
  </channel>
</rss>
"""


def make_atom(feed_id: str, title: str, entry_ids) -> bytes:
    """Small Atom document with one dated entry per id."""
    entries = "".join(
        f"""
  <entry>
    <id>{entry_id}</id>
    <title>{entry_id} title</title>
    <link href="https://example.com/{feed_id}/{entry_id}"/>
    <updated>2024-02-{index + 1:02d}T00:00:00Z</updated>
  </entry>"""
        for index, entry_id in enumerate(entry_ids)
    )
    return f"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <id>{feed_id}</id>
  <title>{title}</title>
  <updated>2024-02-01T00:00:00Z</updated>{entries}
</feed>
""".encode("utf-8")


class StaticFetcher(FeedFetcher):
    """Serves documents from a dict instead of the network."""

    def __init__(self, pages):
        super().__init__()
        self.pages = pages
        self.requested = []

    async def fetch_and_parse(self, url, session):
        self.requested.append(url)
        if url not in self.pages:
            raise NetworkError(f"HTTP 404 Not Found for {url}")
        return self.parse_document(self.pages[url], url)


@pytest.fixture
def offline_config(monkeypatch, tmp_path):
    """Point every default path at a temporary directory."""
    from config import config

    monkeypatch.setattr(config, 'DATA_PATH', str(tmp_path))
    monkeypatch.setattr(config, 'DATABASE_PATH', str(tmp_path / "feedsync.db"))
    monkeypatch.setattr(config, 'SETTINGS_PATH', str(tmp_path / "config.yml"))
    monkeypatch.setattr(config, 'CHECK_CONNECTIVITY', False)
    return config
