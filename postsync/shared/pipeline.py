"""Shared pipeline utilities: feed reconciliation and chunking."""
import io
import logging
import math
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

import feedparser
import httpx

from postsync.config import settings
from postsync.schemas.models import Chunk, ExtractedLink, ExtractedPost, FeedItem, PositionedChunk
from postsync.shared.errors import FeedFetchError

logger = logging.getLogger(__name__)

FEED_ACCEPT = "application/rss+xml, application/xml, text/xml"


class RSSParser:
    """Parser for RSS and Atom feeds."""

    def __init__(
        self,
        timeout: int = settings.feed_request_timeout,
        user_agent: str = settings.feed_user_agent,
        auth_cookie: Optional[str] = settings.feed_auth_cookie,
        cookie_name: str = settings.feed_cookie_name,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize RSS parser."""
        self.timeout = timeout
        self.user_agent = user_agent
        self.auth_cookie = auth_cookie
        self.cookie_name = cookie_name
        self._transport = transport

    def default_headers(self) -> Dict[str, str]:
        headers = {"User-Agent": self.user_agent, "Accept": FEED_ACCEPT}
        if self.auth_cookie:
            headers["Cookie"] = f"{self.cookie_name}={self.auth_cookie}"
        return headers

    async def fetch_feed_items(self, feed_url: str, headers: Optional[Dict[str, str]] = None) -> List[FeedItem]:
        """Fetch a feed document and parse its entries."""
        request_headers = {**self.default_headers(), **(headers or {})}

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=True, transport=self._transport
            ) as client:
                response = await client.get(feed_url, headers=request_headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise FeedFetchError(f"Failed to fetch feed {feed_url}: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise FeedFetchError(f"Failed to fetch feed {feed_url}: {e}") from e

        items = self.parse_feed(response.content)
        logger.info(f"Found {len(items)} posts in feed {feed_url}")
        return items

    def parse_feed(self, document: Union[str, bytes]) -> List[FeedItem]:
        """Parse a feed document; unparseable input yields no items."""
        if isinstance(document, str):
            document = document.encode("utf-8")
        if not document or not document.strip():
            return []

        # A stream keeps feedparser from treating the body as a URL or path
        feed = feedparser.parse(io.BytesIO(document))
        if feed.bozo and not feed.entries:
            logger.warning(f"Could not parse feed: {feed.get('bozo_exception')}")
            return []

        return self._parse_entries(feed.entries)

    def _parse_entries(self, entries: List) -> List[FeedItem]:
        """Parse feed entries, dropping repeated identities."""
        items = []
        for entry in entries:
            items.append(
                FeedItem(
                    title=(entry.get("title") or "").strip(),
                    link=(entry.get("link") or "").strip(),
                    guid=(entry.get("id") or "").strip(),
                    published_at=(entry.get("published") or entry.get("updated") or "").strip(),
                    creator=(entry.get("author") or "").strip(),
                )
            )
        return dedupe(items)

    def reconcile(self, items: List[FeedItem], already_synced: Iterable[str], force: bool = False) -> List[FeedItem]:
        """Return the items that still need ingestion, in feed order."""
        items = dedupe(items)
        if force:
            return items

        synced = set(already_synced)
        return [item for item in items if item.identity not in synced]

    @staticmethod
    def limit(items: List[FeedItem], n: Optional[int]) -> List[FeedItem]:
        """Cap the number of items processed in one run."""
        if n is None:
            return list(items)
        if n < 0:
            raise ValueError(f"limit must be non-negative, got {n}")
        return list(items[:n])


def dedupe(items: List[FeedItem]) -> List[FeedItem]:
    """Drop items whose identity was already seen, keeping the first."""
    seen: Set[str] = set()
    unique = []
    for item in items:
        identity = item.identity
        if not identity:
            logger.debug(f"Skipping feed entry without link or guid: {item.title!r}")
            continue
        if identity in seen:
            continue
        seen.add(identity)
        unique.append(item)
    return unique


class Chunker:
    """Chunker for splitting post text into overlapping word windows."""

    def __init__(
        self,
        target_size: int = settings.chunk_size,
        overlap_ratio: float = settings.chunk_overlap_ratio,
        overlap: Optional[int] = None,
        tail_discard: Optional[int] = settings.chunk_tail_discard,
        link_match_chars: int = settings.link_match_chars,
    ):
        """Initialize chunker.

        Args:
            target_size: Window size in words
            overlap_ratio: Share of the window repeated in the next one
            overlap: Explicit overlap in words, overrides overlap_ratio
            tail_discard: Leftover words at or below this count are folded
                into the previous window instead of starting a new one
                (defaults to twice the overlap)
            link_match_chars: Prefix of a link's context used for matching
        """
        if target_size <= 0:
            raise ValueError("target_size must be positive")

        self.target_size = target_size
        self.overlap = overlap if overlap is not None else math.floor(target_size * overlap_ratio)
        if not 0 <= self.overlap < target_size:
            raise ValueError(f"overlap must be in [0, {target_size}), got {self.overlap}")

        self.tail_discard = tail_discard if tail_discard is not None else 2 * self.overlap
        if self.tail_discard < 0:
            raise ValueError("tail_discard must be non-negative")

        self.link_match_chars = link_match_chars

    @property
    def step(self) -> int:
        return self.target_size - self.overlap

    def spans(self, word_count: int) -> List[Tuple[int, int]]:
        """Word ranges [start, end) of each window."""
        if word_count == 0:
            return []

        spans = [(0, min(self.target_size, word_count))]
        while spans[-1][1] < word_count:
            start, end = spans[-1]
            if word_count - end <= self.tail_discard:
                spans[-1] = (start, word_count)
                break
            next_start = start + self.step
            spans.append((next_start, min(next_start + self.target_size, word_count)))
        return spans

    def position(self, text: str) -> List[PositionedChunk]:
        """First pass: cut the text into positioned windows."""
        words = text.split()
        return [
            PositionedChunk(chunk_index=idx, start_word=start, end_word=end, text=" ".join(words[start:end]))
            for idx, (start, end) in enumerate(self.spans(len(words)))
        ]

    def chunk_post(self, post: ExtractedPost, source: str) -> List[Chunk]:
        """Second pass: finalize counts and attach links per chunk."""
        positioned = self.position(post.plain_text)
        chunk_count = len(positioned)

        chunks = []
        for pc in positioned:
            chunks.append(
                Chunk(
                    id=chunk_id(post.slug, pc.chunk_index),
                    text=pc.text,
                    chunk_index=pc.chunk_index,
                    chunk_count=chunk_count,
                    start_word=pc.start_word,
                    end_word=pc.end_word,
                    links_in_chunk=self.links_in_text(post.links, pc.text),
                    title=post.title,
                    author=post.author,
                    published_at=post.published_at,
                    canonical_url=post.canonical_url,
                    source=source,
                )
            )

        logger.debug(f"Chunked {post.slug}: {chunk_count} chunks")
        return chunks

    def links_in_text(self, links: List[ExtractedLink], text: str) -> List[ExtractedLink]:
        """Links whose anchor text or context prefix occurs in the text."""
        haystack = text.lower()
        found = []
        for link in links:
            anchor = link.anchor_text.strip().lower()
            context = link.surrounding_context[: self.link_match_chars].strip().lower()
            if (anchor and anchor in haystack) or (context and context in haystack):
                found.append(link)
        return found


def chunk_id(slug: str, chunk_index: int) -> str:
    """Stable vector id for a chunk, so re-ingestion overwrites."""
    return f"{slug}-{chunk_index}"
