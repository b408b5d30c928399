"""Run one sync task per account concurrently and report a tagged outcome for each."""

from __future__ import annotations

import enum
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Iterable

from archive_errors import ArchiveError
from config_loader import ImapAccount
from content_store import ContentStore
from progress import AccountFinished, AccountStarted, Listener, ProgressAggregator
from sync_imap import AccountSummary, sync_imap_account

logger = logging.getLogger(__name__)

SyncFn = Callable[..., AccountSummary]

MAX_DIAGNOSTIC = 200


class OutcomeStatus(enum.Enum):
    OK = "ok"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class Outcome:
    """Result of one account task: OK, FAILED (expected error) or ABORTED (anything else)."""

    account: str
    status: OutcomeStatus
    reason: str = ""
    summary: AccountSummary | None = None

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.OK

    def describe(self) -> str:
        if self.ok and self.summary is not None:
            return f"{self.account}: ok ({self.summary.describe()})"
        if self.ok:
            return f"{self.account}: ok"
        return f"{self.account}: {self.status.value} ({self.reason})"


@dataclass
class RunReport:
    """Per-account outcomes in completion order."""

    outcomes: list[Outcome] = field(default_factory=list)

    @property
    def ok_count(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed_count(self) -> int:
        return len(self.outcomes) - self.ok_count

    @property
    def all_ok(self) -> bool:
        return self.failed_count == 0

    @property
    def messages_new(self) -> int:
        return sum(o.summary.messages_new for o in self.outcomes if o.summary is not None)

    def by_account(self) -> dict[str, Outcome]:
        return {o.account: o for o in self.outcomes}


def _diagnostic(exc: BaseException) -> str:
    text = f"{type(exc).__name__}: {exc}"
    if len(text) > MAX_DIAGNOSTIC:
        text = text[: MAX_DIAGNOSTIC - 3] + "..."
    return text


def _run_account(
    account: ImapAccount,
    store: ContentStore,
    full_resync: bool,
    sync_fn: SyncFn,
    post: Listener,
) -> Outcome:
    """Task body: expected failures become FAILED here, anything else escapes to the join."""
    post(AccountStarted(account.name))
    try:
        summary = sync_fn(account, store, full_resync=full_resync, emit=post)
    except ArchiveError as exc:
        logger.error("Failed to sync account '%s': %s", account.name, exc)
        reason = _diagnostic(exc)
        post(AccountFinished(account.name, ok=False, diagnostic=reason))
        return Outcome(account.name, OutcomeStatus.FAILED, reason=reason)

    post(AccountFinished(account.name, ok=True, diagnostic=summary.describe()))
    return Outcome(account.name, OutcomeStatus.OK, summary=summary)


def run_all(
    accounts: Iterable[ImapAccount],
    store: ContentStore,
    *,
    full_resync: bool = False,
    max_workers: int | None = None,
    sync_fn: SyncFn = sync_imap_account,
    listener: Listener | None = None,
) -> RunReport:
    """
    Sync every account in parallel and wait for all of them.

    One account failing never cancels or delays another. Progress events go
    through a single aggregator; `listener`, if given, sees each of them.
    """
    accounts = list(accounts)
    report = RunReport()
    if not accounts:
        logger.warning("No accounts to sync")
        return report

    workers = max_workers or len(accounts)
    logger.info("Syncing %d accounts with %d workers", len(accounts), workers)

    with ProgressAggregator(listener) as progress:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sync") as pool:
            futures = {
                pool.submit(_run_account, account, store, full_resync, sync_fn, progress.post): account
                for account in accounts
            }
            for future in as_completed(futures):
                account = futures[future]
                try:
                    outcome = future.result()
                except Exception as exc:
                    logger.exception("Sync task for account '%s' terminated abnormally", account.name)
                    reason = _diagnostic(exc)
                    progress.post(AccountFinished(account.name, ok=False, diagnostic=reason))
                    outcome = Outcome(account.name, OutcomeStatus.ABORTED, reason=reason)
                report.outcomes.append(outcome)

    logger.info(
        "Sync run finished: %d ok, %d failed, %d new messages",
        report.ok_count,
        report.failed_count,
        report.messages_new,
    )
    return report
