#!/usr/bin/env python3
"""
Feed fetcher, parser and bounded-concurrency fetch pipeline.

``FeedFetcher.fetch_and_parse`` performs a single HTTP GET (no retries) and
parses the body into a normalized ``FeedDocument``. Any transport failure,
non-success status or unparseable body raises ``NetworkError``/``ParseError``.

``FetchPipeline.run`` fans a batch of targets out to the fetcher with at most
C requests in flight and returns one ``FetchResult`` per target, in completion
order. A failed target yields a result carrying a ``FetchError``; it never
aborts the batch.
"""

from asyncio import Semaphore, TimeoutError, as_completed, create_task, get_running_loop, wait_for
from calendar import timegm
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from functools import partial
from hashlib import md5
from time import monotonic
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FeedSyncError, FetchError, NetworkError, ParseError
from telemetry import get_tracer, trace_span
from utils import format_duration

# Module-specific logger
logger = get_logger("fetcher")
_tracer = get_tracer("fetcher")

HTTP_OK_RANGE = range(200, 300)


class FeedKind(str, Enum):
    """Syndication format of a parsed document."""

    ATOM = "Atom"
    JSON = "JSON"
    RSS0 = "RSS0"
    RSS1 = "RSS1"
    RSS2 = "RSS2"


# feedparser's ``version`` strings grouped into our closed set
_VERSION_KINDS: Dict[str, FeedKind] = {
    'atom': FeedKind.ATOM,
    'atom01': FeedKind.ATOM,
    'atom02': FeedKind.ATOM,
    'atom03': FeedKind.ATOM,
    'atom10': FeedKind.ATOM,
    'json1': FeedKind.JSON,
    'json11': FeedKind.JSON,
    'rss': FeedKind.RSS0,
    'rss090': FeedKind.RSS0,
    'rss091n': FeedKind.RSS0,
    'rss091u': FeedKind.RSS0,
    'rss092': FeedKind.RSS0,
    'rss093': FeedKind.RSS0,
    'rss094': FeedKind.RSS0,
    'cdf': FeedKind.RSS0,
    'rss10': FeedKind.RSS1,
    'rss20': FeedKind.RSS2,
}


@dataclass
class FeedEntry:
    """One entry of a parsed document."""

    id: str
    links: List[str] = field(default_factory=list)
    title: Optional[str] = None
    summary: Optional[str] = None
    published: Optional[int] = None
    updated: Optional[int] = None

    @property
    def timestamp(self) -> int:
        """Published time, else updated time, else 0."""
        if self.published is not None:
            return self.published
        if self.updated is not None:
            return self.updated
        return 0


@dataclass
class FeedDocument:
    """Channel-level metadata plus entries, in document order."""

    id: str
    kind: FeedKind
    title: Optional[str] = None
    description: Optional[str] = None
    entries: List[FeedEntry] = field(default_factory=list)


@dataclass
class FetchResult:
    """Outcome for one pipeline target."""

    target: Any
    url: str
    document: Optional[FeedDocument] = None
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _digest(*parts: str) -> str:
    return md5("\x1f".join(parts).encode('utf-8')).hexdigest()


def _clean_text(value: Any) -> Optional[str]:
    """Strip a text field; empty or missing becomes None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class FeedFetcher:
    def __init__(self, executor: Optional[ThreadPoolExecutor] = None) -> None:
        self.executor = executor or ThreadPoolExecutor(thread_name_prefix="feed-parse")

    def create_session(self) -> ClientSession:
        """Build a client session with the configured timeout and user agent."""
        return ClientSession(
            timeout=ClientTimeout(total=config.HTTP_TIMEOUT),
            headers={'User-Agent': config.USER_AGENT},
        )

    @trace_span(
        "fetch_and_parse",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, session: {
            "feed.url": url,
        },
    )
    async def fetch_and_parse(self, url: str, session: ClientSession) -> FeedDocument:
        """Fetch one URL and parse it.

        Raises:
            NetworkError: transport failure, timeout or non-success status.
            ParseError: the body is not a recognizable feed.
        """
        content, content_type = await self._fetch_content(url, session)
        # feedparser is not async, run in executor
        return await self.run_in_executor(self.parse_document, content, url, content_type)

    async def _fetch_content(self, url: str, session: ClientSession) -> Tuple[bytes, Optional[str]]:
        """Single GET, no retries. Returns the body and its Content-Type."""
        try:
            async with session.get(url, max_redirects=config.MAX_REDIRECTS) as response:
                if response.status not in HTTP_OK_RANGE:
                    raise NetworkError(f"HTTP {response.status} {response.reason or ''}".strip() + f" for {url}")
                return await response.read(), response.headers.get('Content-Type')
        except TimeoutError as e:
            raise NetworkError(f"Timed out after {config.HTTP_TIMEOUT}s fetching {url}") from e
        except ClientError as e:
            raise NetworkError(f"{self._format_client_error(e)} fetching {url}") from e

    def parse_document(self, content: bytes, url: str = "", content_type: Optional[str] = None) -> FeedDocument:
        """Parse raw feed bytes into a FeedDocument.

        JSON Feed documents are only recognized through their content type, so
        a JSON body served without one is labelled before parsing.

        Raises:
            ParseError: feedparser could not identify a feed format.
        """
        headers = {}
        if url:
            # Base for resolving relative links
            headers['content-location'] = url
        if not content_type and content.lstrip()[:1] == b'{':
            content_type = 'application/json'
        if content_type:
            headers['content-type'] = content_type

        feedparser_options = {
            'sanitize_html': True,
            'resolve_relative_uris': True,
            'response_headers': headers,
        }
        parsed = feedparser.parse(content, **feedparser_options)

        version = parsed.get('version') or ''
        kind = _VERSION_KINDS.get(version)
        if kind is None:
            if parsed.get('bozo') and parsed.get('bozo_exception') is not None:
                reason = str(parsed.bozo_exception)
            else:
                reason = f"unrecognized feed format '{version}'" if version else "not a feed document"
            raise ParseError(f"{url}: {reason}" if url else reason)

        if parsed.get('bozo') and parsed.get('bozo_exception') is not None:
            logger.warning(f"Feed parsing warning for {url}: {parsed.bozo_exception}")

        meta = parsed.get('feed', {})
        feed_id = self.get_feed_id(meta, url)
        entries = [self._entry_from_parsed(entry, feed_id) for entry in parsed.get('entries', [])]
        logger.debug(f"Parsed {url} as {version} with {len(entries)} entries")

        return FeedDocument(
            id=feed_id,
            kind=kind,
            title=_clean_text(meta.get('title')),
            description=_clean_text(meta.get('subtitle') or meta.get('description')),
            entries=entries,
        )

    def _entry_from_parsed(self, entry, feed_id: str) -> FeedEntry:
        links: List[str] = []
        primary = _clean_text(self._get_entry_value(entry, 'link'))
        if primary:
            links.append(primary)
        for link in entry.get('links', []) or []:
            href = _clean_text(link.get('href'))
            if href and href not in links:
                links.append(href)

        return FeedEntry(
            id=self.get_guid(entry, feed_id),
            links=links,
            title=_clean_text(entry.get('title')),
            summary=_clean_text(entry.get('summary')),
            published=self.parse_date(entry, 'published'),
            updated=self.parse_date(entry, 'updated'),
        )

    def get_feed_id(self, meta, url: str) -> str:
        """Identifier for the channel, taken from the document when possible."""
        feed_id = _clean_text(meta.get('id'))
        if feed_id:
            return feed_id

        site_link = _clean_text(meta.get('link'))
        if site_link:
            return _digest("link", site_link)

        title = _clean_text(meta.get('title'))
        if title:
            return _digest("title", title)

        return _digest("url", url)

    def get_guid(self, entry, feed_id: str) -> str:
        """Extract or derive a stable id for an entry.

        Derived ids only use document content, so fetching the same feed twice
        always yields the same ids.
        """
        guid = _clean_text(entry.get('id'))
        if guid:
            return guid

        link = _clean_text(entry.get('link'))
        if link:
            return _digest("link", link)

        return _digest("entry", feed_id, entry.get('title') or "", entry.get('summary') or "")

    def parse_date(self, entry, field_name: str) -> Optional[int]:
        """Unix timestamp for ``published`` or ``updated``, None if absent or invalid."""
        timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, f"{field_name}_parsed"))
        if timestamp is not None:
            return timestamp
        return self._date_value_to_timestamp(self._get_entry_value(entry, field_name))

    def _get_entry_value(self, entry, field_name: str) -> Any:
        """Safely fetch feedparser entry fields with attribute or dict access."""
        if not field_name or entry is None:
            return None
        try:
            value = getattr(entry, field_name)
        except AttributeError:
            value = None

        if value is not None:
            return value

        getter = getattr(entry, 'get', None)
        if callable(getter):
            try:
                return getter(field_name)
            except KeyError:
                return None
        return None

    def _date_value_to_timestamp(self, value: Any) -> Optional[int]:
        """Convert assorted date representations into a Unix timestamp."""
        if value in (None, ''):
            return None

        if isinstance(value, bool):
            return None

        if isinstance(value, (int, float)):
            return int(value)

        if isinstance(value, datetime):
            dt = value
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())

        if isinstance(value, (list, tuple)):
            # feedparser's *_parsed values are UTC struct_times
            try:
                return int(timegm(tuple(value)))
            except (OverflowError, ValueError, TypeError):
                return None

        if isinstance(value, str):
            return self._parse_date_string(value)

        return None

    def _parse_date_string(self, date_str: str) -> Optional[int]:
        parsers = (
            self._parse_with_feedparser,
            self._parse_with_email_utils,
            self._parse_with_iso_format,
        )
        for parser in parsers:
            timestamp = parser(date_str)
            if timestamp is not None:
                return timestamp
        return None

    def _parse_with_feedparser(self, date_str: str) -> Optional[int]:
        try:
            time_struct = feedparser._parse_date(date_str)
            if time_struct:
                return int(timegm(time_struct))
        except (ValueError, TypeError, AttributeError, OverflowError):
            return None
        return None

    def _parse_with_email_utils(self, date_str: str) -> Optional[int]:
        try:
            dt = parsedate_to_datetime(date_str)
            if dt:
                if dt.tzinfo is None:
                    dt = dt.replace(tzinfo=timezone.utc)
                return int(dt.timestamp())
        except (TypeError, ValueError, OverflowError, IndexError):
            return None
        return None

    def _parse_with_iso_format(self, date_str: str) -> Optional[int]:
        try:
            dt = datetime.fromisoformat(date_str.strip().replace('Z', '+00:00'))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    async def close(self) -> None:
        """Shut down the parser thread pool."""
        if self.executor:
            try:
                await wait_for(
                    get_running_loop().run_in_executor(None, partial(self.executor.shutdown, wait=True)),
                    timeout=30.0
                )
            except TimeoutError:
                logger.warning("Parser thread pool shutdown timed out after 30 seconds")
                self.executor.shutdown(wait=False)
            self.executor = None
        logger.debug("FeedFetcher closed")


FetchFunc = Callable[[str, ClientSession], Awaitable[FeedDocument]]
ResultCallback = Callable[[FetchResult, int, int], None]


class FetchPipeline:
    """Fetch and parse many targets with a bounded number of requests in flight."""

    def __init__(self, fetcher: FeedFetcher, concurrency: Callable[[], int]) -> None:
        """
        Args:
            fetcher: Performs the individual fetches.
            concurrency: Returns the current ceiling; read once per ``run``.
        """
        self.fetcher = fetcher
        self._concurrency = concurrency

    @trace_span(
        "fetch_pipeline",
        tracer_name="fetcher",
        attr_from_args=lambda self, targets, **kwargs: {
            "pipeline.targets": len(targets),
        },
    )
    async def run(
        self,
        targets: Sequence[Any],
        url_of: Callable[[Any], str] = str,
        on_result: Optional[ResultCallback] = None,
        fetch: Optional[FetchFunc] = None,
    ) -> List[FetchResult]:
        """Fetch every target and return one result per target, in completion order.

        Args:
            targets: Channels, raw URLs, or anything ``url_of`` maps to a URL.
            url_of: Extracts the URL from a target.
            on_result: Called as ``on_result(result, completed, total)`` as each
                target finishes, successful or not.
            fetch: Replacement for ``FeedFetcher.fetch_and_parse``.
        """
        total = len(targets)
        if total == 0:
            return []

        limit = max(1, int(self._concurrency()))
        fetch = fetch or self.fetcher.fetch_and_parse
        semaphore = Semaphore(limit)
        started = monotonic()
        logger.info(f"Fetching {total} feeds with at most {limit} concurrent requests")

        results: List[FetchResult] = []
        async with self.fetcher.create_session() as session:

            async def fetch_with_semaphore(target) -> FetchResult:
                url = url_of(target)
                async with semaphore:
                    try:
                        document = await fetch(url, session)
                    except FeedSyncError as e:
                        logger.warning(f"Failed to fetch {url}: {e}")
                        return FetchResult(target=target, url=url, error=FetchError(target, url, e))
                    except Exception as e:
                        logger.exception(f"Unexpected error fetching {url}")
                        cause = FeedSyncError(f"{type(e).__name__}: {e}", description="Failed to fetch feed")
                        return FetchResult(target=target, url=url, error=FetchError(target, url, cause))
                return FetchResult(target=target, url=url, document=document)

            tasks = [create_task(fetch_with_semaphore(target)) for target in targets]
            for completed, next_result in enumerate(as_completed(tasks), 1):
                result = await next_result
                results.append(result)
                if on_result is not None:
                    on_result(result, completed, total)

        failures = sum(1 for r in results if not r.ok)
        logger.info(
            f"Fetched {total - failures}/{total} feeds in {format_duration(monotonic() - started)}"
            + (f" ({failures} failed)" if failures else "")
        )
        return results
