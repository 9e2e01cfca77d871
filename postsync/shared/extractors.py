"""Post content and link extraction from rendered HTML."""
import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, TypeVar, Union
from urllib.parse import unquote, urlparse

import dateparser
from bs4 import BeautifulSoup, Tag

from postsync.config import settings
from postsync.schemas.models import ExtractedLink, ExtractedPost, ExtractionFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")
Candidate = Callable[[BeautifulSoup], Optional[T]]

# Most specific first, falling back to looser containers
ARTICLE_ROOT_SELECTORS = [
    "article.post",
    ".post-content",
    "article",
    ".body.markup",
    ".body",
    "main",
]

BLOCK_TAGS = [
    "p", "li", "blockquote", "figcaption", "pre", "td", "th", "dd", "dt",
    "h1", "h2", "h3", "h4", "h5", "h6", "div", "section", "article",
]

STRIPPED_TAGS = ["script", "style", "noscript", "template"]


def normalize_whitespace(text: str) -> str:
    """Collapse whitespace runs to single spaces and trim."""
    return " ".join(text.split())


def element_text(element: Tag) -> str:
    return normalize_whitespace(element.get_text(" "))


def first_match(candidates: Sequence[Candidate], soup: BeautifulSoup) -> Optional[T]:
    """Evaluate candidates in order and return the first non-empty value."""
    for candidate in candidates:
        value = candidate(soup)
        if value:
            return value
    return None


def select_text(selector: str) -> Candidate:
    def candidate(soup: BeautifulSoup) -> Optional[str]:
        element = soup.select_one(selector)
        return element_text(element) if element else None
    return candidate


def select_attr(selector: str, attr: str) -> Candidate:
    def candidate(soup: BeautifulSoup) -> Optional[str]:
        element = soup.select_one(selector)
        if element is None:
            return None
        value = element.get(attr)
        return value.strip() if isinstance(value, str) else None
    return candidate


def select_element(selector: str) -> Candidate:
    def candidate(soup: BeautifulSoup) -> Optional[Tag]:
        return soup.select_one(selector)
    return candidate


TITLE_CANDIDATES = [
    select_text("h1.post-title"),
    select_text("h1"),
    select_attr("meta[property='og:title']", "content"),
    select_text("title"),
]

SUBTITLE_CANDIDATES = [
    select_text("h3.subtitle"),
    select_text(".subtitle"),
    select_attr("meta[name='description']", "content"),
]

AUTHOR_CANDIDATES = [
    select_text(".author-name"),
    select_text("[class*='author'] a"),
    select_attr("meta[name='author']", "content"),
]

DATE_CANDIDATES = [
    select_attr("time[datetime]", "datetime"),
    select_text("time"),
    select_attr("meta[property='article:published_time']", "content"),
]


def parse_date(value: str) -> Optional[str]:
    """Normalize a date string to ISO-8601, or None when unparseable."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.isoformat()
    except ValueError:
        pass

    parsed = dateparser.parse(value, settings={"RETURN_AS_TIMEZONE_AWARE": True, "TO_TIMEZONE": "UTC"})
    return parsed.isoformat() if parsed else None


def slug_from_url(url: str) -> str:
    """Last path segment of the URL, without an .html suffix."""
    segments = [s for s in urlparse(url).path.split("/") if s]
    if segments:
        slug = re.sub(r"\.html?$", "", unquote(segments[-1]))
        if slug:
            return slug
    return hashlib.md5(url.encode()).hexdigest()[:12]


class ContentExtractor:
    """Extract structured post data and outbound links from article HTML."""

    def __init__(
        self,
        root_selectors: Optional[List[str]] = None,
        default_author: str = settings.default_author,
        link_exclude_pattern: Optional[str] = settings.link_exclude_pattern,
        context_chars: int = settings.link_context_chars,
    ):
        """Initialize content extractor."""
        self.root_candidates = [select_element(s) for s in (root_selectors or ARTICLE_ROOT_SELECTORS)]
        self.default_author = default_author
        self.link_exclude = re.compile(link_exclude_pattern, re.IGNORECASE) if link_exclude_pattern else None
        self.context_chars = context_chars

    def extract(self, html: str, source_url: str) -> Union[ExtractedPost, ExtractionFailure]:
        """Turn rendered HTML into an ExtractedPost, or say why it could not."""
        soup = BeautifulSoup(html or "", "html.parser")
        for element in soup(STRIPPED_TAGS):
            element.decompose()

        article = first_match(self.root_candidates, soup)
        if article is None:
            logger.warning(f"Could not find article content in {source_url}")
            return ExtractionFailure(url=source_url, reason="no article root found")

        plain_text = element_text(article)
        if not plain_text:
            logger.warning(f"Article body is empty in {source_url}")
            return ExtractionFailure(url=source_url, reason="article body is empty")

        published = first_match(DATE_CANDIDATES, soup)
        published_at = parse_date(published) if published else None

        return ExtractedPost(
            title=first_match(TITLE_CANDIDATES, soup) or "",
            subtitle=first_match(SUBTITLE_CANDIDATES, soup) or "",
            author=first_match(AUTHOR_CANDIDATES, soup) or self.default_author,
            published_at=published_at or datetime.now(timezone.utc).isoformat(),
            canonical_url=source_url,
            slug=slug_from_url(source_url),
            plain_text=plain_text,
            raw_article_html=article.decode_contents(),
            links=self.extract_links(article),
        )

    def extract_links(self, article: Tag) -> List[ExtractedLink]:
        """Outbound links in the article with their surrounding text."""
        links = []
        for anchor in article.select("a[href]"):
            href = (anchor.get("href") or "").strip()
            if not href or href.startswith("#"):
                continue
            if self.link_exclude and self.link_exclude.search(href):
                continue

            block = anchor.find_parent(BLOCK_TAGS) or anchor.parent
            context = element_text(block) if block is not None else ""

            links.append(
                ExtractedLink(
                    anchor_text=element_text(anchor),
                    target_url=href,
                    surrounding_context=context[: self.context_chars],
                )
            )
        return links
