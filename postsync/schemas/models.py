"""Pydantic models for the post sync service."""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List
from datetime import datetime


class FeedItem(BaseModel):
    """One entry parsed from a feed."""
    model_config = ConfigDict(frozen=True)

    title: str = ""
    link: str = ""
    guid: str = ""
    published_at: str = ""
    creator: str = ""

    @property
    def identity(self) -> str:
        """External identity: guid when present, else the link."""
        return self.guid or self.link


class ExtractedLink(BaseModel):
    """An outbound link found in an article body."""
    model_config = ConfigDict(frozen=True)

    anchor_text: str
    target_url: str
    surrounding_context: str = ""


class ExtractedPost(BaseModel):
    """Structured post data extracted from rendered HTML."""
    model_config = ConfigDict(frozen=True)

    title: str
    subtitle: str = ""
    author: str
    published_at: str
    canonical_url: str
    slug: str
    plain_text: str
    raw_article_html: str = ""
    links: List[ExtractedLink] = Field(default_factory=list)


class ExtractionFailure(BaseModel):
    """Extraction outcome when no usable article body was found."""
    model_config = ConfigDict(frozen=True)

    url: str
    reason: str


class PositionedChunk(BaseModel):
    """A word window whose final chunk count is not yet known."""
    model_config = ConfigDict(frozen=True)

    chunk_index: int
    start_word: int
    end_word: int
    text: str


class Chunk(BaseModel):
    """A complete chunk, ready for embedding."""
    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    chunk_index: int
    chunk_count: int
    start_word: int
    end_word: int
    links_in_chunk: List[ExtractedLink] = Field(default_factory=list)
    title: str
    author: str
    published_at: str
    canonical_url: str
    source: str


class SyncRecord(BaseModel):
    """Ledger entry for one ingested feed item."""
    source: str
    external_id: str
    url: str = ""
    vector_id_prefix: Optional[str] = None
    chunk_count: int = 0
    status: str = "synced"
    error_message: Optional[str] = None
    last_synced_at: Optional[datetime] = None


class ItemFailure(BaseModel):
    """Why a single item failed during a run."""
    identity: str
    title: str = ""
    url: str = ""
    reason: str


class RunSummary(BaseModel):
    """Per-run counts reported at the end of a sync."""
    dry_run: bool = False
    considered: int = 0
    skipped: int = 0
    deferred: int = 0
    planned: List[FeedItem] = Field(default_factory=list)
    succeeded: int = 0
    failed: int = 0
    failures: List[ItemFailure] = Field(default_factory=list)
    total_chunks: int = 0
    total_links: int = 0
    duration_seconds: float = 0.0
