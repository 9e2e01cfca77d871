"""Ingestion worker - feed reconciliation and the per-item sync loop."""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import List, Optional, Tuple, Union
from postsync.shared.browser import BrowserClient
from postsync.shared.clients import SupabaseClient
from postsync.shared.errors import BrowserConnectionError, FeedFetchError, PreconditionError, SyncError
from postsync.shared.extractors import ContentExtractor
from postsync.shared.pipeline import RSSParser
from postsync.schemas.models import ExtractionFailure, FeedItem, ItemFailure, RunSummary
from postsync.workers.processing_worker import ProcessingWorker
from postsync.config import Settings, settings

logger = logging.getLogger(__name__)


class IngestionWorker:
    """Worker for syncing new feed posts into the vector index."""

    def __init__(
        self,
        config: Settings = settings,
        browser: Optional[BrowserClient] = None,
        rss_parser: Optional[RSSParser] = None,
        extractor: Optional[ContentExtractor] = None,
        ledger: Optional[SupabaseClient] = None,
        processor: Optional[ProcessingWorker] = None,
    ):
        """Initialize ingestion worker.

        The ledger and processor talk to credentialed services, so they are
        only built once the run's preconditions have been checked.
        """
        self.config = config
        self.source = config.source
        self.feed_url = config.feed_url
        self.item_delay = config.item_delay_seconds
        self.item_timeout = config.item_timeout_seconds
        self.browser = browser or BrowserClient()
        self.rss_parser = rss_parser or RSSParser()
        self.extractor = extractor or ContentExtractor()
        self.ledger = ledger
        self.processor = processor

    async def run(self, limit: Optional[int] = None, force: bool = False, dry_run: bool = False) -> RunSummary:
        """
        Run one sync.

        Args:
            limit: Maximum number of new items to ingest
            force: Ignore existing sync records and re-ingest everything
            dry_run: Only report the planned work

        Returns:
            RunSummary with per-run counts

        Raises:
            PreconditionError: the run could not start
        """
        start_time = time.time()
        summary = RunSummary(dry_run=dry_run)
        logger.info(
            f"Starting sync for {self.source}: mode={'dry-run' if dry_run else 'live'}, "
            f"force={force}, limit={limit if limit is not None else 'none'}"
        )

        self._check_preconditions(dry_run)
        manifest_syncing = False

        try:
            user_id = None
            if not dry_run:
                await self._connect_browser()
                user_id = self._ledger_call("resolve user id", self.ledger.get_user_id, self.source)
                logger.info(f"Using user_id: {user_id[:8]}...")
                manifest_syncing = self._update_manifest({"status": "syncing", "error_message": None})

            items = await self._fetch_feed()
            already_synced = (
                set() if force
                else self._ledger_call("read synced posts", self.ledger.get_synced_identifiers, self.source)
            )
            pending = self.rss_parser.reconcile(items, already_synced, force)
            to_sync = self.rss_parser.limit(pending, limit)

            summary.considered = len(items)
            summary.skipped = len(items) - len(pending)
            summary.deferred = len(pending) - len(to_sync)
            logger.info(
                f"Sync status: {len(items)} posts in feed, {summary.skipped} already synced, "
                f"{len(pending)} new, {len(to_sync)} to sync"
            )

            if dry_run:
                summary.planned = to_sync
                for i, item in enumerate(to_sync, start=1):
                    logger.info(f"Would sync {i}. {item.title} ({item.link})")
                return self._finish(summary, start_time)

            for i, item in enumerate(to_sync, start=1):
                logger.info(f"[{i}/{len(to_sync)}] {item.title}")
                await self._sync_item(item, user_id, summary)

                # Small delay to be nice to the publisher
                if i < len(to_sync) and self.item_delay > 0:
                    await asyncio.sleep(self.item_delay)

            post_count = self._ledger_count()
            self._update_manifest(
                {
                    "status": "completed",
                    "last_sync_at": datetime.now(timezone.utc).isoformat(),
                    "error_message": None,
                    **({"post_count": post_count} if post_count is not None else {}),
                }
            )
            return self._finish(summary, start_time)

        except PreconditionError as e:
            if manifest_syncing:
                self._update_manifest({"status": "error", "error_message": str(e)})
            raise

        except asyncio.CancelledError:
            if manifest_syncing:
                self._update_manifest({"status": "error", "error_message": "Sync interrupted"})
            raise

        finally:
            await self.browser.close()

    def _finish(self, summary: RunSummary, start_time: float) -> RunSummary:
        summary.duration_seconds = time.time() - start_time
        log_summary(summary)
        return summary

    def _check_preconditions(self, dry_run: bool) -> None:
        """Fail before any work when credentials are missing."""
        missing = self.config.missing_credentials(dry_run)
        if self.ledger is not None:
            missing = [name for name in missing if not name.startswith("SUPABASE")]
        if self.processor is not None:
            missing = [name for name in missing if not name.startswith(("EMBEDDING", "PINECONE"))]
        if missing:
            raise PreconditionError(f"Missing required settings: {', '.join(missing)}")

        if self.ledger is None:
            self.ledger = SupabaseClient()
        if self.processor is None and not dry_run:
            self.processor = ProcessingWorker(ledger=self.ledger)

    async def _connect_browser(self) -> None:
        try:
            await self.browser.connect()
        except BrowserConnectionError as e:
            raise PreconditionError(
                f"Browser with remote debugging not reachable ({e}). Start it with "
                f"--remote-debugging-port={self.config.browser_port} and log in first."
            ) from e

    async def _fetch_feed(self) -> List[FeedItem]:
        try:
            return await self.rss_parser.fetch_feed_items(self.feed_url)
        except FeedFetchError as e:
            raise PreconditionError(str(e)) from e

    def _ledger_call(self, description: str, func, *args):
        """Ledger reads a run depends on; failures stop the run."""
        try:
            return func(*args)
        except PreconditionError:
            raise
        except Exception as e:
            raise PreconditionError(f"Could not {description}: {e}") from e

    def _ledger_count(self) -> Optional[int]:
        try:
            return self.ledger.count_posts(self.source)
        except Exception as e:
            logger.warning(f"Could not count synced posts: {e}")
            return None

    def _update_manifest(self, updates: dict) -> bool:
        """Best-effort manifest status update."""
        try:
            self.ledger.update_manifest(self.source, updates)
            return True
        except Exception as e:
            logger.warning(f"Failed to update sync manifest for {self.source}: {e}")
            return False

    async def _sync_item(self, item: FeedItem, user_id: Optional[str], summary: RunSummary) -> None:
        """Sync one item; failures are recorded and never stop the run."""
        try:
            outcome = await asyncio.wait_for(self._ingest_item(item, user_id), self.item_timeout)
        except Exception as e:
            reason = self._failure_reason(e)
            logger.error(f"Error syncing {item.identity}: {reason}", exc_info=not isinstance(e, SyncError))
            self._record_failure(item, reason, summary)
            return

        if isinstance(outcome, ExtractionFailure):
            logger.error(f"Skipping {item.identity}: {outcome.reason}")
            self._record_failure(item, outcome.reason, summary)
            return

        chunk_count, link_count = outcome
        summary.succeeded += 1
        summary.total_chunks += chunk_count
        summary.total_links += link_count
        logger.info(f"Synced {item.identity}: {chunk_count} chunks, {link_count} links")

    async def _ingest_item(self, item: FeedItem, user_id: Optional[str]) -> Union[ExtractionFailure, Tuple[int, int]]:
        """Fetch, extract and process one item."""
        logger.info(f"Fetching: {item.link}")
        html = await self.browser.fetch_rendered_page(item.link)
        logger.debug(f"Got {len(html)} chars of HTML for {item.link}")

        post = self.extractor.extract(html, item.link)
        if isinstance(post, ExtractionFailure):
            return post

        logger.info(f"Extracted {len(post.plain_text)} chars of text, {len(post.links)} links")
        chunk_count = await self.processor.process_post(item, post, user_id)
        return chunk_count, len(post.links)

    def _failure_reason(self, error: Exception) -> str:
        if isinstance(error, asyncio.TimeoutError) and not isinstance(error, SyncError):
            return f"Item timed out after {self.item_timeout:g}s"
        return str(error) or type(error).__name__

    def _record_failure(self, item: FeedItem, reason: str, summary: RunSummary) -> None:
        summary.failed += 1
        summary.failures.append(ItemFailure(identity=item.identity, title=item.title, url=item.link, reason=reason))
        self.processor.record_failure(item, reason)


def log_summary(summary: RunSummary) -> None:
    """Log the end-of-run report."""
    if summary.dry_run:
        logger.info(
            f"Dry run complete: {summary.considered} considered, {summary.skipped} already synced, "
            f"{len(summary.planned)} planned, {summary.deferred} over limit"
        )
        return

    logger.info(
        f"Sync complete: {summary.considered} considered, {summary.skipped} skipped, "
        f"{summary.succeeded} succeeded, {summary.failed} failed, {summary.total_chunks} chunks, "
        f"{summary.total_links} links, duration: {summary.duration_seconds:.1f}s"
    )
    for failure in summary.failures:
        logger.info(f"Failed: {failure.title or failure.identity} ({failure.url}): {failure.reason}")
