"""Main daemon: loads configs, runs a sync of every account on its interval."""

from __future__ import annotations

import logging
import signal
import time
from collections import defaultdict
from pathlib import Path

import schedule

from config_loader import ImapAccount, Settings, configure_logging, load_all_configs
from content_store import ContentStore
from orchestrator import RunReport, run_all

logger = logging.getLogger("mail-sync")

PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Graceful shutdown
shutdown_requested = False


def _handle_signal(_signum: int, _frame: object) -> None:
    global shutdown_requested  # noqa: PLW0603
    logger.info("Shutdown signal received, stopping...")
    shutdown_requested = True


def group_by_interval(accounts: list[ImapAccount]) -> dict[int, list[ImapAccount]]:
    """Accounts sharing a sync interval run together in one orchestrator pass."""
    groups: dict[int, list[ImapAccount]] = defaultdict(list)
    for account in accounts:
        groups[account.interval_seconds].append(account)
    return dict(sorted(groups.items()))


def sync_group(accounts: list[ImapAccount], store: ContentStore, max_workers: int | None) -> RunReport:
    """Scheduler job: one orchestrator run over `accounts`; never raises."""
    report = run_all(accounts, store, max_workers=max_workers)
    for outcome in report.outcomes:
        if not outcome.ok:
            logger.warning("Account '%s' will be retried next interval", outcome.account)
    return report


def main() -> None:
    """Entry point: load configs, schedule jobs, run loop."""
    configure_logging()
    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    settings = Settings.from_env(PROJECT_ROOT)
    logger.info("Starting mail-sync daemon")
    logger.info("Config dir : %s", settings.config_dir)
    logger.info("Archive db : %s", settings.db_path)

    accounts = load_all_configs(settings.config_dir)
    if not accounts:
        logger.warning("No account configs found in %s", settings.config_dir)

    with ContentStore(settings.db_path, pool_size=settings.pool_size) as store:
        groups = group_by_interval(accounts)
        for interval_sec, group in groups.items():
            logger.info(
                "Scheduling %s every %d seconds",
                ", ".join(repr(a.name) for a in group),
                interval_sec,
            )
            schedule.every(interval_sec).seconds.do(
                sync_group, accounts=group, store=store, max_workers=settings.max_workers
            )

        # Run initial sync immediately
        if accounts:
            sync_group(accounts, store, settings.max_workers)

        # Main loop
        while not shutdown_requested:
            schedule.run_pending()
            time.sleep(1)

        schedule.clear()

    logger.info("Daemon stopped")


if __name__ == "__main__":
    main()
