"""Entry point for the Chargebee member sync.

Usage:
    python -m chargebee_sync                      # Sync all linked accounts
    python -m chargebee_sync sync --uid 42        # Sync a single account
    python -m chargebee_sync sync --start-uid 1000 --delay 1
    python -m chargebee_sync sync --resume        # Continue an interrupted run
    python -m chargebee_sync status               # Show saved progress
"""

import argparse
import logging
import sys
import time
from dataclasses import asdict
from pathlib import Path

from rich.console import Console

from .client import SubscriptionClient
from .config import load_config
from .coordinator import BatchCoordinator, BatchResult, SyncRequest, run_sync
from .messages import MessageLog
from .progress import ProgressTracker
from .store import MemberDatabase
from .sync_state import ProgressStateManager

logger = logging.getLogger("chargebee_sync")


def setup_logging(log_file: str, log_level: str) -> None:
    """Configure logging to write to both a file and stderr.

    The file handler always logs at DEBUG level for full traceability.
    The stderr handler only shows messages at the configured level or
    above, and never below WARNING so it does not fight the live display.
    """
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger("chargebee_sync")
    root_logger.setLevel(logging.DEBUG)

    formatter = logging.Formatter(
        "%(asctime)s.%(msecs)03d [%(levelname)-5s] %(name)-30s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(max(getattr(logging, log_level, logging.INFO), logging.WARNING))
    stderr_handler.setFormatter(formatter)
    root_logger.addHandler(stderr_handler)


def _non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Chargebee member sync - update plans, payments and membership from Chargebee",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sync_parser = subparsers.add_parser("sync", help="Sync Chargebee plans and payment amounts for members")
    sync_parser.add_argument("--uid", type=int, help="Process a single account ID")
    sync_parser.add_argument(
        "--start-uid", type=int,
        help="Only process accounts with an ID greater than or equal to this value",
    )
    sync_parser.add_argument(
        "--delay", type=_non_negative_int, default=0,
        help="Delay in whole seconds after each processed account (default: 0)",
    )
    sync_parser.add_argument(
        "--create-revision", action="store_true",
        help="Create revisions when saving accounts and profiles",
    )
    sync_parser.add_argument(
        "--detailed", action="store_true",
        help="Enable detailed messages for each processed account",
    )
    sync_parser.add_argument(
        "--per-account-fetch", action="store_true",
        help="Fetch each account's active subscription individually instead of in bulk",
    )
    sync_parser.add_argument(
        "--resume", action="store_true",
        help="Continue the last interrupted run from its next chunk",
    )

    subparsers.add_parser("status", help="Show the progress of the last interrupted run")
    return parser


def run(args: argparse.Namespace) -> int:
    """Run the sync command. Returns exit code."""
    console = Console()
    config = load_config()
    config.output_dir.mkdir(parents=True, exist_ok=True)
    setup_logging(str(config.log_file), config.log_level)

    detailed = bool(getattr(args, "detailed", False))
    request = SyncRequest(
        uid=getattr(args, "uid", None),
        start_uid=getattr(args, "start_uid", None),
        delay=getattr(args, "delay", 0) or 0,
        create_revision=bool(getattr(args, "create_revision", False)),
        detailed=detailed,
        per_account_fetch=bool(getattr(args, "per_account_fetch", False)),
    )

    logger.info("=" * 60)
    logger.info("Chargebee sync starting")
    logger.info("=" * 60)
    logger.info("Endpoint:        %s", config.subscriptions_endpoint)
    logger.info("API key:         %s...%s", config.api_key[:8], config.api_key[-4:])
    logger.info("Member DB:       %s", config.member_db)
    logger.info("Chunk size:      %d", config.chunk_size)
    logger.info("Request:         %s", request)

    console.print()
    console.rule("[bold cyan]Chargebee Member Sync")
    console.print()
    console.print(f"  Endpoint:        [bold]{config.subscriptions_endpoint}[/bold]")
    console.print(f"  API key:         [dim]{config.api_key[:8]}...{config.api_key[-4:]}[/dim]")
    console.print(f"  Member DB:       {config.member_db}")
    console.print(f"  Log file:        {config.log_file}")
    console.print()

    tracker = ProgressTracker(console, verbose=detailed)
    messages = MessageLog(listener=tracker.on_message)

    with MemberDatabase(config.member_db) as db, \
            ProgressStateManager(config.progress_db) as state, \
            SubscriptionClient(config, messages) as client:
        coordinator = BatchCoordinator(
            client=client,
            account_store=db.accounts,
            profile_store=db.profiles,
            plan_manager=db.plans,
            messages=messages,
            chunk_size=config.chunk_size,
            page_size=config.page_size,
            member_role=config.member_role,
            on_progress=tracker.on_progress,
        )

        start_time = time.monotonic()
        tracker.start()
        try:
            result = _run_batch(args, request, coordinator, db, state, messages)
        except KeyboardInterrupt:
            logger.warning("Interrupted by user")
            console.print("\n[yellow]Interrupted by user. Run again with --resume to continue.[/yellow]")
            return 130
        finally:
            tracker.stop()

        elapsed = time.monotonic() - start_time
        tracker.print_summary(result, elapsed)
        logger.info(
            "Run complete: %d accounts, %d API calls, %.1fs elapsed",
            result.progress.processed, client.total_api_calls, elapsed,
        )

    console.print(f"[dim]Full log: {config.log_file}[/dim]")
    console.print()
    return 0 if result.success else 1


def _run_batch(
    args: argparse.Namespace,
    request: SyncRequest,
    coordinator: BatchCoordinator,
    db: MemberDatabase,
    state: ProgressStateManager,
    messages: MessageLog,
) -> BatchResult:
    job = None
    if getattr(args, "resume", False):
        job = state.load()
        if job is None:
            messages.status("No interrupted run to resume; starting a new run.")

    result = run_sync(
        request,
        coordinator,
        db.accounts,
        messages,
        checkpoint=lambda ids, p, options: state.save(ids, p, asdict(options)),
        saved=job,
    )
    if result.success:
        state.clear()
    return result


def show_status() -> int:
    console = Console()
    config = load_config()
    with ProgressStateManager(config.progress_db) as state:
        job = state.load()
    if job is None:
        console.print("No interrupted run.")
        return 0
    progress = job.progress
    console.print(f"  Accounts processed: [bold]{progress.processed:,}[/bold] of {progress.total:,}")
    console.print(f"  Next chunk:         {progress.next_chunk + 1} of {progress.chunk_count}")
    if job.updated_at:
        console.print(f"  Last checkpoint:    {job.updated_at.isoformat()}")
    return 0


def main() -> None:
    """Synchronous entry point."""
    parser = build_parser()
    args = parser.parse_args()

    try:
        if args.command == "status":
            exit_code = show_status()
        else:
            # Default to sync (including when no command specified)
            exit_code = run(args)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        exit_code = 130

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
