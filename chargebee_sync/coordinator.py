"""Chunked batch orchestration of a Chargebee sync run."""

import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable

from .client import SubscriptionClient
from .messages import MessageSink
from .reconciler import AccountReconciler, ReconcileOptions
from .store import CUSTOMER_ID, Account, AccountStore, PlanManager, ProfileStore
from .subscriptions import SubscriptionMap, SubscriptionMapBuilder, SubscriptionRecord, normalize_customer_id
from .sync_state import BatchProgress, SavedJob
from .utils import chunked

logger = logging.getLogger("chargebee_sync.coordinator")

DEFAULT_CHUNK_SIZE = 50


class MissingCollaboratorError(Exception):
    """Raised when a service the run depends on is unavailable."""


@dataclass
class BatchOptions:
    delay: float = 0
    detailed: bool = False
    create_revision: bool = False
    per_account_fetch: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchOptions":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class BatchResult:
    success: bool
    progress: BatchProgress


@dataclass
class SyncRequest:
    """Parameters shared by every trigger surface."""

    uid: int | None = None
    start_uid: int | None = None
    delay: float = 0
    create_revision: bool = False
    detailed: bool = False
    per_account_fetch: bool = False


class BatchCoordinator:
    """Drives account chunks through subscription fetch and reconciliation.

    Each chunk does a single bulk subscription fetch for all of its
    customer ids (or one lookup per account when ``per_account_fetch`` is
    set), then reconciles its accounts one at a time. Only an unavailable
    plan manager fails the run; per-account problems are reported through
    ``messages`` and processing continues.
    """

    def __init__(
        self,
        client: SubscriptionClient,
        account_store: AccountStore,
        profile_store: ProfileStore,
        plan_manager: PlanManager | None,
        messages: MessageSink,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        page_size: int = 100,
        member_role: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_progress: Callable[[BatchProgress], None] | None = None,
    ):
        self.client = client
        self.account_store = account_store
        self.profile_store = profile_store
        self.plan_manager = plan_manager
        self.messages = messages
        self.chunk_size = max(chunk_size, 1)
        self.map_builder = SubscriptionMapBuilder(client, messages, page_size=page_size)
        self.reconciler = AccountReconciler(
            account_store, profile_store, plan_manager, messages, member_role=member_role
        )
        self._sleep = sleep
        self._on_progress = on_progress

    def start(self, account_ids: list[int]) -> BatchProgress:
        return BatchProgress(
            total=len(account_ids),
            chunk_count=(len(account_ids) + self.chunk_size - 1) // self.chunk_size,
        )

    def chunks(self, account_ids: list[int]) -> list[list[int]]:
        return list(chunked(account_ids, self.chunk_size))

    def check_collaborators(self) -> None:
        if self.plan_manager is None or not self.plan_manager.available():
            raise MissingCollaboratorError("The plan manager service is not available.")

    def run(
        self,
        account_ids: list[int],
        options: BatchOptions | None = None,
        progress: BatchProgress | None = None,
        on_chunk: Callable[[BatchProgress], None] | None = None,
    ) -> BatchResult:
        """Process the accounts not yet covered by ``progress``.

        Checkpoints are taken at chunk boundaries, so ``progress.processed``
        is the number of leading ids already handled. The remainder is
        re-chunked with the current chunk size.
        """
        options = options or BatchOptions()
        if progress is None:
            progress = self.start(account_ids)
        else:
            progress = replace(progress, total=len(account_ids))
        remaining = account_ids[progress.processed:]
        chunks = self.chunks(remaining)
        progress.chunk_count = progress.next_chunk + len(chunks)
        logger.info(
            "Sync run: %d accounts, %d remaining in %d chunks, starting at chunk %d",
            len(account_ids), len(remaining), len(chunks), progress.next_chunk + 1,
        )

        try:
            for chunk in chunks:
                progress = self.process_chunk(chunk, progress, options)
                if on_chunk:
                    on_chunk(progress)
        except MissingCollaboratorError as e:
            logger.error("Sync aborted: %s", e)
            self.messages.error(f"{e} Aborting Chargebee sync.")
            return self.finish(False, progress)

        return self.finish(True, progress)

    def finish(self, success: bool, progress: BatchProgress) -> BatchResult:
        if success:
            self.messages.status("Chargebee data has been updated for all accounts.")
        else:
            self.messages.error("An error occurred while updating Chargebee data.")
        logger.info(
            "Sync finished: success=%s, %d/%d accounts processed, %d with errors",
            success, progress.processed, progress.total, progress.errors,
        )
        return BatchResult(success, progress)

    def process_chunk(
        self,
        chunk: list[int],
        progress: BatchProgress,
        options: BatchOptions | None = None,
    ) -> BatchProgress:
        """Process one chunk and return the advanced progress.

        Raises MissingCollaboratorError before touching any account when
        the plan manager is unavailable.
        """
        options = options or BatchOptions()
        self.check_collaborators()
        progress = replace(progress)
        logger.info("Processing chunk %d/%d (%d accounts)", progress.next_chunk + 1, progress.chunk_count, len(chunk))

        pending: list[tuple[Account, str]] = []
        for account_id in chunk:
            account = self.account_store.load(account_id)
            if account is None:
                self.messages.warning(f"Account {account_id} not found.")
                self._advance(progress)
                continue
            customer_id = normalize_customer_id(account.get(CUSTOMER_ID))
            if not customer_id:
                self.messages.warning(f"Account {account_id} does not have a Chargebee customer ID.")
                self._advance(progress)
                continue
            if options.detailed:
                self.messages.status(f"Chargebee customer ID for account {account_id}: {customer_id}")
            pending.append((account, customer_id))

        subscription_map: SubscriptionMap = {}
        if pending and not options.per_account_fetch:
            subscription_map = self.map_builder.build_map(cid for _, cid in pending)

        reconcile_options = ReconcileOptions(detailed=options.detailed, create_revision=options.create_revision)
        for account, customer_id in pending:
            try:
                if options.per_account_fetch:
                    subscription = self._fetch_single(customer_id)
                else:
                    subscription = subscription_map.get(customer_id)
                profile = self.profile_store.load_by_account(account.id)
                result = self.reconciler.reconcile(account, profile, subscription, reconcile_options)
                if result.errors:
                    progress.errors += 1
            except Exception as e:
                logger.exception("Unexpected error for account %s", account.id)
                self.messages.error(f"An unexpected error occurred for account {account.id}: {e}")
                progress.errors += 1
            self._advance(progress)
            if options.delay > 0:
                self._sleep(options.delay)

        progress.next_chunk += 1
        self.messages.status(f"Processed {progress.processed} out of {progress.total} accounts.")
        return progress

    def _fetch_single(self, customer_id: str) -> SubscriptionRecord | None:
        entry = self.client.fetch_customer_subscription(customer_id)
        return SubscriptionRecord.from_entry(entry) if entry else None

    def _advance(self, progress: BatchProgress) -> None:
        progress.processed += 1
        logger.debug("Processed %d of %d accounts", progress.processed, progress.total)
        if self._on_progress:
            self._on_progress(progress)


def resolve_account_ids(
    request: SyncRequest,
    account_store: AccountStore,
    messages: MessageSink,
) -> list[int]:
    """Account ids a request targets: one uid, or all linked accounts."""
    if request.uid is not None:
        messages.status(f"Processing only account {request.uid}.")
        return [request.uid]
    if request.start_uid is not None:
        messages.status(f"Processing only accounts with ID >= {request.start_uid}.")
    account_ids = account_store.find_linked_ids(request.start_uid)
    messages.status(f"Found {len(account_ids)} accounts with a Chargebee customer ID.")
    return account_ids


def run_sync(
    request: SyncRequest,
    coordinator: BatchCoordinator,
    account_store: AccountStore,
    messages: MessageSink,
    checkpoint: Callable[[list[int], BatchProgress, BatchOptions], None] | None = None,
    saved: SavedJob | None = None,
) -> BatchResult:
    """Resolve the accounts a request targets and run the batch.

    With ``saved`` the interrupted job's accounts, options and progress
    are used instead of the request. ``checkpoint`` is called after every
    chunk with what is needed to resume.
    """
    if saved is not None:
        messages.status(
            f"Resuming run at account {saved.progress.processed + 1} of {len(saved.account_ids)}."
        )
        if request != SyncRequest():
            messages.status(
                "Using the accounts and options of the interrupted run; "
                "--uid, --start-uid, --delay, --create-revision, --detailed "
                "and --per-account-fetch are ignored."
            )
        account_ids = saved.account_ids
        if saved.options:
            options = BatchOptions.from_dict(saved.options)
        else:
            options = request_options(request, len(account_ids))
        progress = saved.progress
    else:
        account_ids = resolve_account_ids(request, account_store, messages)
        if not account_ids:
            messages.status("No accounts found to sync.")
            return BatchResult(True, BatchProgress())
        options = request_options(request, len(account_ids))
        progress = None

    on_chunk = None
    if checkpoint:
        def on_chunk(p: BatchProgress) -> None:
            checkpoint(account_ids, p, options)

    return coordinator.run(account_ids, options, progress=progress, on_chunk=on_chunk)


def request_options(request: SyncRequest, account_count: int) -> BatchOptions:
    return BatchOptions(
        delay=max(request.delay, 0),
        detailed=request.detailed or account_count == 1,
        create_revision=request.create_revision,
        per_account_fetch=request.per_account_fetch,
    )
