"""Processing worker - chunking, embedding and vector upsert for one post."""
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional
from postsync.shared.clients import SupabaseClient, EmbeddingClient, VectorIndexClient
from postsync.shared.errors import EmbeddingServiceError
from postsync.shared.pipeline import Chunker
from postsync.schemas.models import ExtractedPost, FeedItem
from postsync.config import settings

logger = logging.getLogger(__name__)


class ProcessingWorker:
    """Worker for turning an extracted post into indexed vectors."""

    def __init__(
        self,
        ledger: Optional[SupabaseClient] = None,
        embedder: Optional[EmbeddingClient] = None,
        index: Optional[VectorIndexClient] = None,
        chunker: Optional[Chunker] = None,
        source: str = settings.source,
        namespace: str = settings.namespace,
        backup_dir: Optional[str] = settings.backup_dir,
    ):
        """Initialize processing worker."""
        self.ledger = ledger or SupabaseClient()
        self.embedder = embedder or EmbeddingClient()
        self.index = index or VectorIndexClient()
        self.chunker = chunker or Chunker()
        self.source = source
        self.namespace = namespace
        self.backup_dir = Path(backup_dir) if backup_dir else None

    async def process_post(self, item: FeedItem, post: ExtractedPost, user_id: Optional[str] = None) -> int:
        """Chunk, embed, upsert and record one post.

        Returns:
            Number of chunks indexed
        """
        self._save_post_locally(post)

        chunks = self.chunker.chunk_post(post, self.source)
        if not chunks:
            raise ValueError("No chunks generated from content")

        logger.info(f"Created {len(chunks)} chunks for {post.slug}")

        embeddings = await self.embedder.embed_texts([chunk.text for chunk in chunks])
        if len(embeddings) != len(chunks):
            raise EmbeddingServiceError(f"Embedding count mismatch: {len(embeddings)} != {len(chunks)}")

        await self.index.upsert(self.namespace, list(zip(chunks, embeddings)))
        logger.info(f"Upserted {len(chunks)} vectors for {post.slug} to namespace {self.namespace}")

        # Vectors are indexed at this point; a ledger failure only means the
        # item may be ingested again on the next run.
        try:
            self.ledger.record_sync_outcome(
                self.source,
                item,
                len(chunks),
                success=True,
                post=post,
                user_id=user_id,
                namespace=self.namespace,
            )
        except Exception as e:
            logger.warning(f"Failed to record sync for {item.identity}: {e}")

        return len(chunks)

    def record_failure(self, item: FeedItem, error: str) -> None:
        """Mark the item's ledger row as errored, best-effort."""
        try:
            self.ledger.record_sync_outcome(self.source, item, 0, success=False, error=error)
        except Exception as e:
            logger.warning(f"Failed to record error for {item.identity}: {e}")

    def _save_post_locally(self, post: ExtractedPost) -> None:
        """Write the extracted post as JSON for reference/backup."""
        if self.backup_dir is None:
            return

        try:
            date_str = datetime.fromisoformat(post.published_at).date().isoformat()
        except ValueError:
            date_str = "undated"

        try:
            target_dir = self.backup_dir / self.source
            target_dir.mkdir(parents=True, exist_ok=True)
            path = target_dir / f"{date_str}-{post.slug}.json"
            path.write_text(post.model_dump_json(indent=2), encoding="utf-8")
            logger.debug(f"Saved backup of {post.slug} to {path}")
        except OSError as e:
            logger.warning(f"Failed to save backup of {post.slug}: {e}")
