"""Main entrypoint for the post sync service."""
import asyncio
import argparse
import logging
import signal
import sys
from typing import List, Optional
from postsync.config import settings
from postsync.shared.errors import PreconditionError
from postsync.workers.ingestion_worker import IngestionWorker

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure JSON-line logging for the process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}',
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


async def run_sync(limit: Optional[int], force: bool, dry_run: bool) -> int:
    """Run one sync and return the process exit code."""
    # SIGTERM cancels the run like Ctrl-C, so the browser connection is closed
    task = asyncio.current_task()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, task.cancel)
        handles_sigterm = True
    except (NotImplementedError, RuntimeError):
        handles_sigterm = False

    try:
        worker = IngestionWorker()
        await worker.run(limit=limit, force=force, dry_run=dry_run)
        return 0
    except PreconditionError as e:
        logger.error(f"Cannot start sync: {e}")
        return 1
    finally:
        if handles_sigterm:
            loop.remove_signal_handler(signal.SIGTERM)


def non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be non-negative, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync newsletter posts into the vector index")
    parser.add_argument(
        "--limit",
        type=non_negative_int,
        default=None,
        metavar="N",
        help="Sync at most N new posts",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Ignore existing sync records and re-sync every post",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show which posts would be synced without fetching or writing",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (default: LOG_LEVEL setting)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entrypoint."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level or settings.log_level)

    try:
        exit_code = asyncio.run(run_sync(args.limit, args.force, args.dry_run))
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Sync interrupted")
        exit_code = 0
    except Exception as e:
        logger.error(f"Sync failed: {e}", exc_info=True)
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
