"""Shared clients for Supabase, the embedding service and the vector index."""
from typing import Any, Dict, List, Optional, Set, Tuple, Type
from datetime import datetime, timezone
import asyncio
import json
import logging
import httpx
from supabase import create_client, Client
from postsync.config import settings
from postsync.schemas.models import Chunk, ExtractedPost, FeedItem, SyncRecord
from postsync.shared.errors import EmbeddingServiceError, PreconditionError, VectorIndexError

logger = logging.getLogger(__name__)

POSTS_TABLE = "imported_posts"
MANIFESTS_TABLE = "sync_manifests"

RETRYABLE_STATUS = {408, 409, 425, 429, 500, 502, 503, 504}


class SupabaseClient:
    """Supabase client wrapper for the sync ledger."""

    def __init__(self, client: Optional[Client] = None):
        """Initialize Supabase client."""
        self.client: Client = client or create_client(
            settings.supabase_url,
            settings.supabase_service_key,
        )

    def get_synced_identifiers(self, source: str) -> Set[str]:
        """External ids already ingested for a source (errored rows excluded)."""
        result = (
            self.client.table(POSTS_TABLE)
            .select("external_id, metadata")
            .eq("source", source)
            .execute()
        )
        identifiers = set()
        for row in result.data or []:
            status = (row.get("metadata") or {}).get("status", "synced")
            if row.get("external_id") and status != "error":
                identifiers.add(row["external_id"])
        return identifiers

    def get_post(self, source: str, external_id: str) -> Optional[dict]:
        """Get an imported post by its ledger key."""
        result = (
            self.client.table(POSTS_TABLE)
            .select("id, metadata")
            .eq("source", source)
            .eq("external_id", external_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def get_user_id(self, source: str) -> str:
        """User to attribute imported posts to."""
        result = self.client.table(MANIFESTS_TABLE).select("user_id").eq("source", source).limit(1).execute()
        if result.data and result.data[0].get("user_id"):
            return result.data[0]["user_id"]

        result = self.client.table(MANIFESTS_TABLE).select("user_id").limit(1).execute()
        if result.data and result.data[0].get("user_id"):
            return result.data[0]["user_id"]

        if settings.sync_user_id:
            return settings.sync_user_id

        raise PreconditionError(
            f"No user_id found. Either create a sync manifest for {source}, or set SYNC_USER_ID"
        )

    def update_manifest(self, source: str, updates: dict) -> None:
        """Update the sync manifest of a source."""
        self.client.table(MANIFESTS_TABLE).update(updates).eq("source", source).execute()

    def count_posts(self, source: str) -> int:
        """Count imported posts for a source."""
        result = (
            self.client.table(POSTS_TABLE)
            .select("id", count="exact", head=True)
            .eq("source", source)
            .execute()
        )
        return result.count or 0

    def record_sync_outcome(
        self,
        source: str,
        item: FeedItem,
        chunk_count: int,
        success: bool,
        post: Optional[ExtractedPost] = None,
        error: Optional[str] = None,
        user_id: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> Optional[SyncRecord]:
        """Create or update the ledger row for an item.

        Successful items store the full extracted post for audit. Failed items
        only mark an existing row as errored; nothing is created for an item
        that was never ingested.
        """
        external_id = item.identity
        existing = self.get_post(source, external_id)
        now = datetime.now(timezone.utc)

        if not success:
            if not existing:
                return None
            metadata = {
                **(existing.get("metadata") or {}),
                "status": "error",
                "error_message": error,
                "failed_at": now.isoformat(),
            }
            self.client.table(POSTS_TABLE).update({"metadata": metadata}).eq("id", existing["id"]).execute()
            return SyncRecord(
                source=source,
                external_id=external_id,
                url=item.link,
                chunk_count=metadata.get("chunk_count", 0),
                status="error",
                error_message=error,
            )

        if post is None:
            raise ValueError("A successful sync needs the extracted post")

        vector_id_prefix = post.slug
        record = {
            "title": post.title,
            "subtitle": post.subtitle,
            "content": post.plain_text,
            "author": post.author,
            "published_at": post.published_at or None,
            "metadata": {
                "namespace": namespace or settings.namespace,
                "slug": post.slug,
                "chunk_count": chunk_count,
                "synced_at": now.isoformat(),
                "status": "synced",
                "link_count": len(post.links),
                "links": [link.model_dump() for link in post.links],
            },
        }

        if existing:
            self.client.table(POSTS_TABLE).update(record).eq("id", existing["id"]).execute()
        else:
            self.client.table(POSTS_TABLE).insert(
                {
                    "user_id": user_id,
                    "source": source,
                    "external_id": external_id,
                    "url": post.canonical_url,
                    "pinecone_id": f"{vector_id_prefix}-0",
                    **record,
                }
            ).execute()

        return SyncRecord(
            source=source,
            external_id=external_id,
            url=post.canonical_url,
            vector_id_prefix=vector_id_prefix,
            chunk_count=chunk_count,
            status="synced",
            last_synced_at=now,
        )


async def _post_json(
    client: httpx.AsyncClient,
    url: str,
    payload: dict,
    headers: dict,
    max_retries: int,
    retry_delay: float,
    error_cls: Type[Exception],
    description: str,
) -> Any:
    """POST with exponential backoff on timeouts and retryable statuses."""
    for attempt in range(max_retries + 1):
        try:
            response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            if attempt < max_retries:
                logger.debug(f"{description} attempt {attempt + 1} failed: {e}")
                await asyncio.sleep(retry_delay * (2 ** attempt))
                continue
            raise error_cls(f"{description} failed after {max_retries} retries: {e}") from e

        if response.is_success:
            try:
                return response.json()
            except ValueError as e:
                raise error_cls(f"{description} returned invalid JSON", status_code=response.status_code) from e

        if response.status_code in RETRYABLE_STATUS and attempt < max_retries:
            logger.debug(f"{description} attempt {attempt + 1} got HTTP {response.status_code}")
            await asyncio.sleep(retry_delay * (2 ** attempt))
            continue

        raise error_cls(
            f"{description} error: {response.status_code} - {response.text[:500]}",
            status_code=response.status_code,
        )


class EmbeddingClient:
    """HTTP client for an OpenAI-compatible embeddings endpoint."""

    def __init__(
        self,
        api_url: str = settings.embedding_api_url,
        api_key: str = settings.embedding_api_key,
        model: str = settings.embedding_model,
        batch_size: int = settings.embedding_batch_size,
        timeout: int = settings.embedding_timeout,
        max_retries: int = settings.embedding_max_retries,
        retry_delay: float = settings.embedding_retry_delay,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize embedding client."""
        self.url = f"{api_url.rstrip('/')}/embeddings"
        self.api_key = api_key
        self.model = model
        self.batch_size = batch_size
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._transport = transport

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed one bounded batch; any failure fails the whole batch."""
        if not texts:
            return []
        if len(texts) > self.batch_size:
            raise ValueError(f"Batch of {len(texts)} exceeds embedding batch size {self.batch_size}")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            data = await _post_json(
                client,
                self.url,
                {"model": self.model, "input": texts},
                {"Authorization": f"Bearer {self.api_key}"},
                self.max_retries,
                self.retry_delay,
                EmbeddingServiceError,
                "Embedding API",
            )

        try:
            rows = sorted(data["data"], key=lambda row: row.get("index", 0))
            vectors = [row["embedding"] for row in rows]
        except (KeyError, TypeError) as e:
            raise EmbeddingServiceError(f"Malformed embedding response: {e}") from e

        if len(vectors) != len(texts):
            raise EmbeddingServiceError(f"Embedding count mismatch: {len(vectors)} != {len(texts)}")
        return vectors

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        """Embed any number of texts in sequential batches."""
        all_embeddings = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i : i + self.batch_size]
            all_embeddings.extend(await self.embed_batch(batch))
        return all_embeddings


class VectorIndexClient:
    """HTTP client for the Pinecone data plane."""

    def __init__(
        self,
        host: str = settings.pinecone_host,
        api_key: str = settings.pinecone_api_key,
        api_version: str = settings.pinecone_api_version,
        batch_size: int = settings.upsert_batch_size,
        timeout: int = settings.vector_index_timeout,
        max_retries: int = settings.embedding_max_retries,
        retry_delay: float = settings.embedding_retry_delay,
        content_preview_chars: int = settings.content_preview_chars,
        links_preview_chars: int = settings.links_preview_chars,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize vector index client."""
        if host and "://" not in host:
            host = f"https://{host}"
        self.url = f"{host.rstrip('/')}/vectors/upsert"
        self.api_key = api_key
        self.api_version = api_version
        self.batch_size = batch_size
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.content_preview_chars = content_preview_chars
        self.links_preview_chars = links_preview_chars
        self._transport = transport

    def build_metadata(self, chunk: Chunk, namespace: str) -> Dict[str, Any]:
        """Flat metadata for one chunk vector (no null values allowed)."""
        metadata: Dict[str, Any] = {
            "title": chunk.title,
            "author": chunk.author,
            "url": chunk.canonical_url,
            "published": chunk.published_at,
            "source": chunk.source,
            "namespace": namespace,
            "chunk_index": chunk.chunk_index,
            "chunk_count": chunk.chunk_count,
            "content": chunk.text[: self.content_preview_chars],
        }
        if chunk.links_in_chunk:
            links = json.dumps([link.model_dump() for link in chunk.links_in_chunk])
            metadata["links"] = links[: self.links_preview_chars]
        return metadata

    async def upsert(self, namespace: str, chunk_vectors: List[Tuple[Chunk, List[float]]]) -> int:
        """Write chunk vectors under a namespace in bounded sub-batches."""
        vectors = [
            {"id": chunk.id, "values": values, "metadata": self.build_metadata(chunk, namespace)}
            for chunk, values in chunk_vectors
        ]
        headers = {"Api-Key": self.api_key, "X-Pinecone-API-Version": self.api_version}

        upserted = 0
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for i in range(0, len(vectors), self.batch_size):
                batch = vectors[i : i + self.batch_size]
                await _post_json(
                    client,
                    self.url,
                    {"vectors": batch, "namespace": namespace},
                    headers,
                    self.max_retries,
                    self.retry_delay,
                    VectorIndexError,
                    "Vector upsert",
                )
                upserted += len(batch)
                logger.debug(f"Upserted {upserted}/{len(vectors)} vectors to {namespace}")

        return upserted
