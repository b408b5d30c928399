"""IMAP incremental sync: mirrors every mailbox of an account into the archive."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from archive_errors import MailError
from config_loader import ImapAccount
from content_store import ContentStore
from ingest_pipeline import IngestionPipeline
from mail_session import MailSession
from progress import Listener, MailboxStarted, MessageProgress, discard

logger = logging.getLogger(__name__)

SessionFactory = Callable[[ImapAccount], MailSession]


@dataclass
class MailboxResult:
    mailbox: str
    seen: int = 0
    new: int = 0
    watermark: int | None = None
    error: str | None = None


@dataclass
class AccountSummary:
    account: str
    mailboxes_synced: int = 0
    mailboxes_failed: int = 0
    mailboxes_ignored: int = 0
    messages_seen: int = 0
    messages_new: int = 0

    def describe(self) -> str:
        text = (
            f"{self.messages_new} new / {self.messages_seen} fetched "
            f"in {self.mailboxes_synced} mailboxes"
        )
        if self.mailboxes_failed:
            text += f", {self.mailboxes_failed} mailboxes failed"
        return text


def sync_mailbox(
    session: MailSession,
    pipeline: IngestionPipeline,
    account_name: str,
    mailbox: str,
    *,
    full_resync: bool = False,
    emit: Listener = discard,
) -> MailboxResult:
    """
    Fetch everything at or above the mailbox watermark and ingest it.

    The watermark is written only after the message carrying that UID is
    committed, and only ever moves up. Mail errors end this mailbox early
    and are returned in the result; storage errors propagate.
    """
    store = pipeline.store
    stored = store.get_watermark(account_name, mailbox)
    watermark = stored if stored is not None else 1
    starting_uid = 1 if full_resync else watermark
    result = MailboxResult(mailbox=mailbox, watermark=stored)

    try:
        meta, messages = session.fetch_range(mailbox, starting_uid)
        emit(MailboxStarted(account_name, mailbox, meta.exists))
        highest = watermark
        for msg in messages:
            ingested = pipeline.ingest(msg.raw)
            result.seen += 1
            if ingested.created:
                result.new += 1
            if msg.uid > highest:
                store.put_watermark(account_name, mailbox, msg.uid)
                highest = msg.uid
                result.watermark = msg.uid
            emit(MessageProgress(account_name, mailbox, msg.uid, ingested.created))
    except MailError as exc:
        logger.error(
            "Account '%s': failed to fetch mailbox %r, skipping it: %s",
            account_name,
            mailbox,
            exc,
        )
        result.error = str(exc)
        return result

    if result.seen:
        logger.info(
            "Account '%s' / %r: %d fetched, %d new (watermark %s)",
            account_name,
            mailbox,
            result.seen,
            result.new,
            result.watermark,
        )
    else:
        logger.info("Account '%s' / %r: no new messages", account_name, mailbox)
    return result


def sync_imap_account(
    account: ImapAccount,
    store: ContentStore,
    *,
    full_resync: bool = False,
    emit: Listener = discard,
    session_factory: SessionFactory | None = None,
) -> AccountSummary:
    """
    Sync all non-ignored mailboxes of one IMAP account, in sorted order.

    Connection, login and listing failures raise MailError; a failing
    mailbox is logged and the next one is tried.
    """
    factory = session_factory or MailSession.connect
    pipeline = IngestionPipeline(store)
    summary = AccountSummary(account=account.name)

    with factory(account) as session:
        mailboxes = sorted(session.list_mailboxes())
        logger.info("Account '%s': %d mailboxes", account.name, len(mailboxes))

        for mailbox in mailboxes:
            if mailbox in account.ignore_mailboxes:
                logger.info("Account '%s': ignoring mailbox %r", account.name, mailbox)
                summary.mailboxes_ignored += 1
                continue

            result = sync_mailbox(
                session,
                pipeline,
                account.name,
                mailbox,
                full_resync=full_resync,
                emit=emit,
            )
            summary.messages_seen += result.seen
            summary.messages_new += result.new
            if result.error is None:
                summary.mailboxes_synced += 1
            else:
                summary.mailboxes_failed += 1

    logger.info(
        "Account '%s': downloaded %d new messages (%d already archived)",
        account.name,
        pipeline.new,
        pipeline.duplicates,
    )
    return summary
