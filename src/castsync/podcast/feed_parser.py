"""RSS/Atom feed fetching and parsing.

Uses requests to fetch the document and feedparser to handle the various
feed formats. Episodes are normalized so that every one has an identity,
a publish date or None, and a place in the display order.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import List, Optional, Sequence
from urllib.parse import urlparse

import feedparser
import requests

from .. import USER_AGENT
from ..errors import FetchError, NetworkTransientError
from ..utils.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

MEDIA_EXTENSIONS = (
    ".mp3", ".m4a", ".mp4", ".m4v", ".mov", ".ogg", ".oga", ".opus",
    ".wav", ".aac", ".flac", ".weba", ".webm", ".3gp",
)


class _TransientFetchError(NetworkTransientError):
    def __init__(self, kind: str, message: str, status: Optional[int] = None):
        super().__init__(message, status=status)
        self.kind = kind


@dataclass
class ParsedEpisode:
    """Parsed episode data from RSS feed."""

    # Identity within the feed: the guid, or the enclosure URL as fallback
    guid: str
    title: str
    enclosure_url: str
    enclosure_type: str

    # Raw guid as declared by the feed, if any
    feed_guid: Optional[str] = None

    description: Optional[str] = None
    link: Optional[str] = None
    published_date: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    explicit: Optional[bool] = None
    enclosure_length: Optional[int] = None


@dataclass
class ParsedPodcast:
    """Parsed podcast data from RSS feed."""

    feed_url: str
    title: str

    description: Optional[str] = None
    website_url: Optional[str] = None
    author: Optional[str] = None
    explicit: Optional[bool] = None
    image_url: Optional[str] = None

    # Episodes in display order
    episodes: List[ParsedEpisode] = field(default_factory=list)

    # URL the feed was finally served from, after redirects
    resolved_url: Optional[str] = None


def sort_episodes(episodes: Sequence[ParsedEpisode]) -> List[ParsedEpisode]:
    """Order episodes newest first; undated episodes go last, ties keep document order."""
    dated = [e for e in episodes if e.published_date is not None]
    undated = [e for e in episodes if e.published_date is None]
    # list.sort is stable with reverse=True too
    dated.sort(key=lambda e: e.published_date, reverse=True)
    return dated + undated


class FeedParser:
    """Fetcher and parser for podcast RSS/Atom feeds.

    Example:
        parser = FeedParser()
        podcast = parser.fetch("https://example.com/feed.xml")
        print(f"Podcast: {podcast.title}")
        for episode in podcast.episodes:
            print(f"  - {episode.title}")
    """

    USER_AGENT = USER_AGENT
    DEFAULT_TIMEOUT = 20
    DEFAULT_CONNECT_TIMEOUT = 5

    def __init__(
        self,
        user_agent: Optional[str] = None,
        timeout: int = DEFAULT_TIMEOUT,
        connect_timeout: int = DEFAULT_CONNECT_TIMEOUT,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the feed parser.

        Args:
            user_agent: Custom user agent string for requests
            timeout: Read timeout in seconds
            connect_timeout: Connect timeout in seconds
            retry_policy: Attempts and backoff for transient failures
            session: requests session to reuse
        """
        self.user_agent = user_agent or self.USER_AGENT
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": self.user_agent})

    def fetch(self, feed_url: str) -> ParsedPodcast:
        """Fetch and parse a podcast feed.

        Transient failures (timeouts, connection errors, 429 and 5xx) are
        retried with exponential backoff. Other HTTP errors and malformed
        documents fail on the first attempt.

        Args:
            feed_url: URL of the RSS/Atom feed

        Returns:
            ParsedPodcast with podcast and episode data

        Raises:
            FetchError: If the feed cannot be fetched or parsed
        """
        logger.info(f"Fetching feed: {feed_url}")

        try:
            response = call_with_retry(lambda: self._get(feed_url), self.retry_policy)
        except _TransientFetchError as e:
            raise FetchError(e.kind, f"Failed to fetch {feed_url}: {e}", status=e.status) from e

        parsed = self.parse_string(response.content, feed_url)
        if response.url and response.url != feed_url:
            parsed.resolved_url = response.url
        return parsed

    def _get(self, feed_url: str) -> requests.Response:
        try:
            response = self._session.get(
                feed_url,
                timeout=(self.connect_timeout, self.timeout),
                allow_redirects=True,
            )
        except requests.Timeout as e:
            raise _TransientFetchError(FetchError.TIMEOUT, str(e)) from e
        except requests.ConnectionError as e:
            raise _TransientFetchError(FetchError.CONNECTION, str(e)) from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise _TransientFetchError(FetchError.HTTP, f"HTTP {status}", status=status)
        if status >= 400:
            raise FetchError(FetchError.HTTP, f"HTTP {status} for {feed_url}", status=status)
        return response

    def parse_string(self, content, feed_url: str = "") -> ParsedPodcast:
        """Parse a podcast feed from already fetched content.

        Args:
            content: RSS/Atom feed content (str or bytes)
            feed_url: Original URL of the feed (for reference)

        Returns:
            ParsedPodcast with podcast and episode data

        Raises:
            FetchError: If the content is not a feed
        """
        feed = feedparser.parse(content)

        if feed.bozo and feed.get("bozo_exception"):
            if not feed.entries and not feed.feed.get("title"):
                raise FetchError(
                    FetchError.MALFORMED,
                    f"Malformed feed {feed_url}: {feed.bozo_exception}",
                )
            logger.warning(f"Feed parsing warning for {feed_url}: {feed.bozo_exception}")

        if not feed.feed and not feed.entries:
            raise FetchError(FetchError.MALFORMED, f"Empty or unrecognized feed: {feed_url}")

        return self._parse_feed(feed, feed_url)

    def _parse_feed(self, feed: feedparser.FeedParserDict, feed_url: str) -> ParsedPodcast:
        f = feed.feed

        podcast = ParsedPodcast(
            feed_url=feed_url,
            title=f.get("title") or feed_url or "Unknown Podcast",
            description=self._clean_html(f.get("description") or f.get("subtitle")),
            website_url=f.get("link"),
            author=f.get("author") or f.get("itunes_author"),
            explicit=self._parse_explicit(f.get("itunes_explicit")),
            image_url=self._extract_image_url(f),
        )

        # The guid is only an identity if it is unique within this revision
        guid_counts = {}
        for entry in feed.entries:
            guid = entry.get("id") or entry.get("guid")
            if guid:
                guid_counts[guid] = guid_counts.get(guid, 0) + 1

        episodes = []
        seen = set()
        for entry in feed.entries:
            episode = self._parse_episode(entry, guid_counts)
            if episode is None:
                continue
            if episode.guid in seen:
                logger.debug(f"Skipping duplicate episode in {feed_url}: {episode.title}")
                continue
            seen.add(episode.guid)
            episodes.append(episode)

        podcast.episodes = sort_episodes(episodes)
        logger.info(f"Parsed podcast '{podcast.title}' with {len(podcast.episodes)} episodes")
        return podcast

    def _parse_episode(
        self, entry: feedparser.FeedParserDict, guid_counts: dict
    ) -> Optional[ParsedEpisode]:
        enclosure = self._extract_enclosure(entry)
        if not enclosure:
            logger.debug(f"Skipping entry without media enclosure: {entry.get('title')}")
            return None

        enclosure_url, enclosure_type, enclosure_length = enclosure

        feed_guid = entry.get("id") or entry.get("guid") or None
        if feed_guid and guid_counts.get(feed_guid, 0) == 1:
            guid = feed_guid
        else:
            guid = enclosure_url

        content = entry.get("content") or [{}]
        episode = ParsedEpisode(
            guid=guid,
            feed_guid=feed_guid,
            title=entry.get("title") or entry.get("itunes_title") or "Untitled Episode",
            enclosure_url=enclosure_url,
            enclosure_type=enclosure_type,
            enclosure_length=enclosure_length,
            description=self._clean_html(
                entry.get("description") or entry.get("summary") or content[0].get("value")
            ),
            link=entry.get("link"),
            explicit=self._parse_explicit(entry.get("itunes_explicit")),
            published_date=self._parse_date(entry),
            duration_seconds=self._parse_duration(
                entry.get("itunes_duration") or entry.get("duration")
            ),
        )
        return episode

    def _parse_date(self, entry: feedparser.FeedParserDict) -> Optional[datetime]:
        """Publish date as naive UTC, or None when missing or unparsable."""
        parsed = entry.get("published_parsed") or entry.get("updated_parsed")
        if parsed:
            try:
                return datetime(*parsed[:6])
            except (TypeError, ValueError):
                pass

        raw = entry.get("published") or entry.get("updated")
        if raw:
            try:
                value = parsedate_to_datetime(raw)
            except (TypeError, ValueError, IndexError):
                return None
            if value.tzinfo is not None:
                value = value.astimezone(UTC).replace(tzinfo=None)
            return value
        return None

    def _extract_enclosure(self, entry: feedparser.FeedParserDict) -> Optional[tuple]:
        """Return (url, type, length) of the first media enclosure, or None."""
        candidates = []
        for enclosure in entry.get("enclosures", []):
            candidates.append(
                (enclosure.get("href") or enclosure.get("url"), enclosure.get("type", ""), enclosure.get("length"))
            )
        for media in entry.get("media_content", []):
            candidates.append((media.get("url"), media.get("type", ""), media.get("filesize")))
        for link in entry.get("links", []):
            if link.get("rel") == "enclosure":
                candidates.append((link.get("href"), link.get("type", ""), link.get("length")))

        for url, mime_type, raw_length in candidates:
            if url and self._is_media_type(mime_type, url):
                length = None
                if raw_length:
                    try:
                        length = int(raw_length)
                    except (ValueError, TypeError):
                        pass
                return (url, mime_type or "audio/mpeg", length)
        return None

    def _is_media_type(self, mime_type: str, url: str) -> bool:
        if mime_type:
            if mime_type.startswith(("audio/", "video/")) or mime_type == "application/ogg":
                return True
            if mime_type != "application/octet-stream":
                return False

        path = urlparse(url).path.lower()
        return path.endswith(MEDIA_EXTENSIONS)

    def _extract_image_url(self, feed: feedparser.FeedParserDict) -> Optional[str]:
        if feed.get("itunes_image"):
            if isinstance(feed.itunes_image, dict):
                return feed.itunes_image.get("href")
            return feed.itunes_image

        if feed.get("image"):
            if isinstance(feed.image, dict):
                return feed.image.get("href") or feed.image.get("url")
            return feed.image

        return None

    def _parse_explicit(self, value) -> Optional[bool]:
        """Parse iTunes explicit flag.

        Returns:
            True if explicit, False if clean, None if unknown
        """
        if value is None:
            return None

        if isinstance(value, bool):
            return value

        value_str = str(value).lower().strip()
        if value_str in ("yes", "true", "explicit"):
            return True
        if value_str in ("no", "false", "clean"):
            return False

        return None

    def _parse_duration(self, value) -> Optional[int]:
        """Parse duration string into seconds.

        Handles "3600", "60:00" and "1:00:00". Anything else gives None.
        """
        if not value:
            return None

        value_str = str(value).strip()

        try:
            return int(value_str)
        except ValueError:
            pass

        parts = value_str.split(":")
        try:
            if len(parts) == 2:
                return int(parts[0]) * 60 + int(parts[1])
            elif len(parts) == 3:
                return int(parts[0]) * 3600 + int(parts[1]) * 60 + int(parts[2])
        except (ValueError, TypeError):
            pass

        return None

    def _clean_html(self, text: Optional[str]) -> Optional[str]:
        """Remove HTML tags and common entities from text."""
        if not text:
            return None

        clean = re.sub(r"<[^>]+>", "", text)
        clean = clean.replace("&amp;", "&")
        clean = clean.replace("&lt;", "<")
        clean = clean.replace("&gt;", ">")
        clean = clean.replace("&quot;", '"')
        clean = clean.replace("&#39;", "'")
        clean = clean.replace("&nbsp;", " ")
        clean = re.sub(r"\s+", " ", clean).strip()

        return clean if clean else None

    def close(self):
        self._session.close()
