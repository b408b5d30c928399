#!/usr/bin/env python3
"""
Mirror IMAP accounts into the local archive and move it to/from a file tree.

Usage:
    python mail_archive.py fetch [--all] [--account NAME ...]
    python mail_archive.py export [DIR]
    python mail_archive.py import DIR
    python mail_archive.py status

Environment: CONFIG_DIR, ARCHIVE_DB, OBJ_DIR, DB_POOL_SIZE, SYNC_WORKERS, LOG_LEVEL
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from archive_errors import ArchiveError
from config_loader import Settings, configure_logging, load_all_configs
from content_store import ContentStore
from ingest_pipeline import IngestionPipeline
from object_tree import export_tree, import_tree
from orchestrator import run_all

logger = logging.getLogger("mail-archive")

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def cmd_fetch(args: argparse.Namespace, settings: Settings) -> int:
    accounts = load_all_configs(settings.config_dir)
    if args.account:
        known = {a.name for a in accounts}
        unknown = sorted(set(args.account) - known)
        if unknown:
            print(f"Unknown account(s): {', '.join(unknown)}", file=sys.stderr)
            return 1
        accounts = [a for a in accounts if a.name in args.account]
    if not accounts:
        print(f"No account configs found in {settings.config_dir}", file=sys.stderr)
        return 1

    with ContentStore(settings.db_path, pool_size=settings.pool_size) as store:
        report = run_all(
            accounts,
            store,
            full_resync=args.all,
            max_workers=settings.max_workers,
        )

    for outcome in sorted(report.outcomes, key=lambda o: o.account):
        print(outcome.describe())
    print(f"Accounts: {report.ok_count} ok, {report.failed_count} failed")
    return 0 if report.all_ok else 1


def cmd_export(args: argparse.Namespace, settings: Settings) -> int:
    obj_dir: Path = args.dir or settings.obj_dir
    with ContentStore(settings.db_path, pool_size=settings.pool_size) as store:
        written = export_tree(store, obj_dir)
    print(f"Export complete: {written} files written to {obj_dir}")
    return 0


def cmd_import(args: argparse.Namespace, settings: Settings) -> int:
    with ContentStore(settings.db_path, pool_size=settings.pool_size) as store:
        new = import_tree(IngestionPipeline(store), args.dir)
    print(f"Import complete: {new} new messages")
    return 0


def cmd_status(_args: argparse.Namespace, settings: Settings) -> int:
    with ContentStore(settings.db_path, pool_size=settings.pool_size) as store:
        print(f"Messages: {store.count_messages()}")
        for mark in store.list_watermarks():
            print(f"  {mark.account} / {mark.mailbox}: uid {mark.uid}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Incremental IMAP archive")
    parser.add_argument("--log", dest="log_level", help="Log level (default: LOG_LEVEL or INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    fetch = sub.add_parser("fetch", help="Fetch new messages from all configured accounts")
    fetch.add_argument("--all", action="store_true", help="Re-download everything from scratch")
    fetch.add_argument(
        "--account", action="append", metavar="NAME", help="Only this account (repeatable)"
    )
    fetch.set_defaults(func=cmd_fetch)

    export = sub.add_parser("export", help="Write the archive as a .eml.gz file tree")
    export.add_argument("dir", type=Path, nargs="?", help="Target directory (default: OBJ_DIR)")
    export.set_defaults(func=cmd_export)

    imp = sub.add_parser("import", help="Ingest a .eml.gz file tree into the archive")
    imp.add_argument("dir", type=Path)
    imp.set_defaults(func=cmd_import)

    status = sub.add_parser("status", help="Show message count and watermarks")
    status.set_defaults(func=cmd_status)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    try:
        settings = Settings.from_env(PROJECT_ROOT)
        return args.func(args, settings)
    except ArchiveError as exc:
        logger.error("%s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
