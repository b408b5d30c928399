#!/usr/bin/env python3
"""Run sync for a single account by config filename.

Usage:
    python sync_one.py work-imap
    python sync_one.py work-imap.yml [--all]

Environment: CONFIG_DIR, ARCHIVE_DB (defaults to project dirs)
"""

from __future__ import annotations

import sys
from pathlib import Path

from archive_errors import ArchiveError
from config_loader import Settings, configure_logging, load_account_config
from content_store import ContentStore
from orchestrator import run_all

# Project root (parent of scripts/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    full_resync = "--all" in args
    names = [a for a in args if a != "--all"]
    if len(names) != 1:
        print("Usage: python sync_one.py <account> [--all]", file=sys.stderr)
        print("  account: config filename without or with .yml (e.g. work-imap)", file=sys.stderr)
        return 1

    configure_logging()
    settings = Settings.from_env(PROJECT_ROOT)
    name = names[0].removesuffix(".yml")
    config_path = settings.config_dir / f"{name}.yml"

    if not config_path.exists():
        print(f"Config not found: {config_path}", file=sys.stderr)
        return 1

    account = load_account_config(config_path)
    if account is None:
        return 1

    try:
        with ContentStore(settings.db_path, pool_size=settings.pool_size) as store:
            report = run_all([account], store, full_resync=full_resync, max_workers=1)
    except ArchiveError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    outcome = report.outcomes[0]
    if not outcome.ok:
        print(f"Sync failed: {outcome.reason}", file=sys.stderr)
        return 1
    new = outcome.summary.messages_new if outcome.summary is not None else 0
    print(f"Sync complete: {new} new messages")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
