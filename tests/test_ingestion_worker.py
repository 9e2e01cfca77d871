"""Tests for the ingestion worker's run loop."""
import asyncio

import httpx
import pytest

from postsync.config import Settings
from postsync.shared.clients import MANIFESTS_TABLE, POSTS_TABLE, SupabaseClient
from postsync.shared.errors import BrowserConnectionError, PreconditionError, ProtocolCommandError
from postsync.shared.pipeline import RSSParser
from postsync.workers.ingestion_worker import IngestionWorker

FEED_URL = "https://nate.substack.com/feed"


def feed_xml(count=3):
    items = "".join(
        f"""
    <item>
      <title>Post {n}</title>
      <link>https://nate.substack.com/p/post-{n}</link>
      <guid isPermaLink="false">guid-{n}</guid>
    </item>"""
        for n in range(1, count + 1)
    )
    return f'<?xml version="1.0"?><rss version="2.0"><channel><title>Feed</title>{items}</channel></rss>'


def article(n):
    return (
        f"<html><body><article><h1>Post {n}</h1>"
        f"<p>Body of post {n} with a <a href='https://example.com/{n}'>reference</a>.</p>"
        f"</article></body></html>"
    )


class FakeBrowser:
    def __init__(self, pages=None, connect_error=None, delay=0):
        self.pages = pages or {}
        self.connect_error = connect_error
        self.delay = delay
        self.connected = False
        self.fetched = []
        self.closed = 0

    async def connect(self):
        if self.connect_error:
            raise self.connect_error
        self.connected = True

    async def fetch_rendered_page(self, url):
        self.fetched.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        page = self.pages.get(url)
        if isinstance(page, Exception):
            raise page
        return page

    async def close(self):
        self.closed += 1


class FakeProcessor:
    def __init__(self, chunk_count=2):
        self.chunk_count = chunk_count
        self.processed = []
        self.failures = []

    async def process_post(self, item, post, user_id=None):
        self.processed.append((item.identity, post.title, user_id))
        return self.chunk_count

    def record_failure(self, item, error):
        self.failures.append((item.identity, error))


def pages_for(*numbers):
    return {f"https://nate.substack.com/p/post-{n}": article(n) for n in numbers}


def feed_parser(status=200, count=3):
    transport = httpx.MockTransport(lambda request: httpx.Response(status, content=feed_xml(count).encode()))
    return RSSParser(transport=transport)


@pytest.fixture
def ledger(fake_supabase):
    fake_supabase.rows[MANIFESTS_TABLE] = [{"source": "nate_substack", "user_id": "user-1", "status": "idle"}]
    fake_supabase.rows[POSTS_TABLE] = [
        {"id": 1, "source": "nate_substack", "external_id": "guid-1", "metadata": {"status": "synced"}}
    ]
    return fake_supabase


def make_worker(ledger, browser=None, processor=None, rss_parser=None, **config):
    config.setdefault("feed_url", FEED_URL)
    config.setdefault("item_delay_seconds", 0)
    return IngestionWorker(
        config=Settings(**config),
        browser=browser or FakeBrowser(pages=pages_for(1, 2, 3)),
        rss_parser=rss_parser or feed_parser(),
        ledger=SupabaseClient(ledger),
        processor=processor or FakeProcessor(),
    )


def manifest(ledger):
    return ledger.rows[MANIFESTS_TABLE][0]


class TestDryRun:
    def test_reports_plan_without_side_effects(self, ledger):
        browser = FakeBrowser()
        processor = FakeProcessor()

        summary = asyncio.run(make_worker(ledger, browser, processor).run(dry_run=True))

        assert summary.dry_run
        assert summary.considered == 3
        assert summary.skipped == 1
        assert [item.identity for item in summary.planned] == ["guid-2", "guid-3"]
        assert not browser.connected
        assert browser.fetched == []
        assert processor.processed == []
        assert manifest(ledger)["status"] == "idle"

    def test_respects_limit(self, ledger):
        summary = asyncio.run(make_worker(ledger).run(limit=1, dry_run=True))

        assert [item.identity for item in summary.planned] == ["guid-2"]
        assert summary.deferred == 1


class TestRun:
    def test_syncs_new_items(self, ledger):
        browser = FakeBrowser(pages=pages_for(1, 2, 3))
        processor = FakeProcessor(chunk_count=2)

        summary = asyncio.run(make_worker(ledger, browser, processor).run())

        assert browser.fetched == [
            "https://nate.substack.com/p/post-2",
            "https://nate.substack.com/p/post-3",
        ]
        assert processor.processed == [("guid-2", "Post 2", "user-1"), ("guid-3", "Post 3", "user-1")]
        assert summary.succeeded == 2
        assert summary.failed == 0
        assert summary.total_chunks == 4
        assert summary.total_links == 2
        assert browser.closed == 1
        assert manifest(ledger)["status"] == "completed"
        assert manifest(ledger)["post_count"] == 1

    def test_force_resyncs_everything(self, ledger):
        processor = FakeProcessor()

        summary = asyncio.run(make_worker(ledger, processor=processor).run(force=True))

        assert summary.skipped == 0
        assert [identity for identity, _, _ in processor.processed] == ["guid-1", "guid-2", "guid-3"]

    def test_limit(self, ledger):
        summary = asyncio.run(make_worker(ledger).run(limit=1))

        assert summary.succeeded == 1
        assert summary.deferred == 1

    def test_extraction_failure_does_not_stop_run(self, ledger):
        pages = pages_for(1, 2, 3)
        pages["https://nate.substack.com/p/post-2"] = "<html><body><div>Paywalled</div></body></html>"
        processor = FakeProcessor()

        summary = asyncio.run(make_worker(ledger, FakeBrowser(pages), processor).run(force=True))

        assert summary.succeeded == 2
        assert summary.failed == 1
        assert summary.failures[0].identity == "guid-2"
        assert "no article root" in summary.failures[0].reason
        assert processor.failures == [("guid-2", summary.failures[0].reason)]
        assert [identity for identity, _, _ in processor.processed] == ["guid-1", "guid-3"]

    def test_fetch_error_is_isolated(self, ledger):
        pages = pages_for(3)
        pages["https://nate.substack.com/p/post-2"] = ProtocolCommandError("Page.navigate", "net::ERR_FAILED")
        processor = FakeProcessor()

        summary = asyncio.run(make_worker(ledger, FakeBrowser(pages), processor).run())

        assert summary.succeeded == 1
        assert summary.failed == 1
        assert "ERR_FAILED" in summary.failures[0].reason

    def test_item_timeout(self, ledger):
        browser = FakeBrowser(pages=pages_for(2, 3), delay=1)

        summary = asyncio.run(make_worker(ledger, browser, item_timeout_seconds=0.05).run(limit=1))

        assert summary.failed == 1
        assert "timed out" in summary.failures[0].reason

    def test_processing_error_is_isolated(self, ledger):
        class FailingProcessor(FakeProcessor):
            async def process_post(self, item, post, user_id=None):
                if item.identity == "guid-2":
                    raise ValueError("No chunks generated from content")
                return await super().process_post(item, post, user_id)

        processor = FailingProcessor()

        summary = asyncio.run(make_worker(ledger, processor=processor).run())

        assert summary.succeeded == 1
        assert summary.failed == 1
        assert processor.failures == [("guid-2", "No chunks generated from content")]


    def test_interrupted_run_marks_manifest(self, ledger):
        browser = FakeBrowser(pages=pages_for(2, 3), delay=5)
        worker = make_worker(ledger, browser)

        with pytest.raises(asyncio.TimeoutError):
            asyncio.run(asyncio.wait_for(worker.run(), 0.2))

        assert manifest(ledger)["status"] == "error"
        assert manifest(ledger)["error_message"] == "Sync interrupted"
        assert browser.closed == 1


class TestPreconditions:
    def test_browser_unreachable(self, ledger):
        browser = FakeBrowser(connect_error=BrowserConnectionError("refused"))
        processor = FakeProcessor()

        with pytest.raises(PreconditionError, match="remote-debugging-port"):
            asyncio.run(make_worker(ledger, browser, processor).run())

        assert processor.processed == []
        assert browser.closed == 1

    def test_feed_unreachable(self, ledger):
        browser = FakeBrowser()

        with pytest.raises(PreconditionError):
            asyncio.run(make_worker(ledger, browser, rss_parser=feed_parser(status=500)).run())

        assert browser.fetched == []
        assert browser.closed == 1
        assert manifest(ledger)["status"] == "error"

    def test_missing_feed_url(self, ledger):
        browser = FakeBrowser()

        with pytest.raises(PreconditionError, match="FEED_URL"):
            asyncio.run(make_worker(ledger, browser, feed_url="").run())

        assert not browser.connected

    def test_missing_service_credentials(self, ledger):
        worker = IngestionWorker(
            config=Settings(feed_url=FEED_URL, embedding_api_key="", pinecone_api_key="", pinecone_host=""),
            browser=FakeBrowser(),
            ledger=SupabaseClient(ledger),
        )

        with pytest.raises(PreconditionError, match="EMBEDDING_API_KEY"):
            asyncio.run(worker.run())

    def test_ledger_read_failure(self, ledger):
        ledger.fail_on = (MANIFESTS_TABLE, "select")

        with pytest.raises(PreconditionError, match="resolve user id"):
            asyncio.run(make_worker(ledger).run())
