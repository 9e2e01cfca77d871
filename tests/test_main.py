"""Tests for the command-line entrypoint."""
import asyncio
import signal

import pytest

from postsync import main as cli
from postsync.schemas.models import RunSummary
from postsync.shared.errors import PreconditionError


class StubWorker:
    calls = []
    error = None

    async def run(self, limit=None, force=False, dry_run=False):
        StubWorker.calls.append({"limit": limit, "force": force, "dry_run": dry_run})
        if StubWorker.error:
            raise StubWorker.error
        return RunSummary(dry_run=dry_run)


@pytest.fixture
def stub_worker(monkeypatch):
    StubWorker.calls = []
    StubWorker.error = None
    monkeypatch.setattr(cli, "IngestionWorker", StubWorker)
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)
    return StubWorker


def run_main(argv):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(argv)
    return exc_info.value.code


class TestParser:
    def test_defaults(self):
        args = cli.build_parser().parse_args([])

        assert args.limit is None
        assert args.force is False
        assert args.dry_run is False

    def test_flags(self):
        args = cli.build_parser().parse_args(["--limit", "5", "--force", "--dry-run"])

        assert args.limit == 5
        assert args.force
        assert args.dry_run

    def test_rejects_negative_limit(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["--limit", "-1"])

    def test_rejects_non_numeric_limit(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["--limit", "many"])


class TestMain:
    def test_success_exits_zero(self, stub_worker):
        assert run_main(["--limit", "3", "--dry-run"]) == 0
        assert stub_worker.calls == [{"limit": 3, "force": False, "dry_run": True}]

    def test_precondition_failure_exits_one(self, stub_worker):
        stub_worker.error = PreconditionError("Missing required settings: FEED_URL")

        assert run_main([]) == 1

    def test_unexpected_error_exits_one(self, stub_worker):
        stub_worker.error = RuntimeError("boom")

        assert run_main(["--force"]) == 1

    def test_interrupt_exits_zero(self, stub_worker):
        stub_worker.error = KeyboardInterrupt()

        assert run_main([]) == 0

    def test_sigterm_handler_is_removed_after_run(self, stub_worker):
        async def scenario():
            exit_code = await cli.run_sync(limit=None, force=False, dry_run=True)
            return exit_code, signal.getsignal(signal.SIGTERM)

        exit_code, handler = asyncio.run(scenario())

        assert exit_code == 0
        assert handler == signal.SIG_DFL

    def test_cancellation_exits_zero(self, stub_worker):
        stub_worker.error = asyncio.CancelledError()

        assert run_main([]) == 0
