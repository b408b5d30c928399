"""
Export/import the archive as a flat file tree.

Layout: {obj_dir}/{hash[:2]}/{hash}.eml.gz, one gzip-compressed raw message
per file. Both directions skip what is already present, so they can be
re-run at any time.
"""

from __future__ import annotations

import logging
import zlib
from pathlib import Path
from typing import Iterator

from archive_errors import InvalidInputError, StorageError
from content_store import ContentStore
from eml_utils import (
    EML_GZ_SUFFIX,
    object_path,
    parse_date_from_bytes,
    read_gz,
    set_file_received_time,
    write_gz,
)
from ingest_pipeline import IngestionPipeline

logger = logging.getLogger(__name__)

LOG_EVERY = 1000


def export_tree(store: ContentStore, obj_dir: Path) -> int:
    """Write every stored message missing from `obj_dir`. Returns files written."""
    if obj_dir.exists() and not obj_dir.is_dir():
        raise InvalidInputError(f"Not a directory: {obj_dir}")
    obj_dir.mkdir(parents=True, exist_ok=True)

    total = store.count_messages()
    logger.info("Exporting %d messages to %s", total, obj_dir)

    written = 0
    for done, msg in enumerate(store.fetch_all_messages(), start=1):
        path = object_path(obj_dir, msg.hash)
        if not path.exists():
            try:
                write_gz(path, msg.raw)
            except OSError as exc:
                raise StorageError(f"cannot write {path}: {exc}") from exc
            received_at = parse_date_from_bytes(msg.raw)
            if received_at is not None:
                set_file_received_time(path, received_at)
            written += 1
        if done % LOG_EVERY == 0:
            logger.info("Export: %d / %d", done, total)

    logger.info("Export done: %d files written, %d already present", written, total - written)
    return written


def find_exported(obj_dir: Path) -> Iterator[Path]:
    """All *.eml.gz files below `obj_dir`, in a stable order."""
    for path in sorted(obj_dir.rglob(f"*{EML_GZ_SUFFIX}")):
        if path.is_file() and not path.name.startswith("."):
            yield path


def import_tree(pipeline: IngestionPipeline, obj_dir: Path) -> int:
    """Ingest every file of an exported tree. Returns the number of new messages."""
    if not obj_dir.is_dir():
        raise InvalidInputError(f"Not a directory: {obj_dir}")

    paths = list(find_exported(obj_dir))
    logger.info("Importing %d files from %s", len(paths), obj_dir)

    new = 0
    for done, path in enumerate(paths, start=1):
        try:
            raw = read_gz(path)
        except (OSError, EOFError, zlib.error) as exc:
            logger.error("Cannot read %s, skipping: %s", path, exc)
            continue

        result = pipeline.ingest(raw)
        expected = path.name[: -len(EML_GZ_SUFFIX)]
        if result.hash != expected:
            logger.warning("%s: content hash is %s, stored under that", path, result.hash)
        if result.created:
            new += 1
        if done % LOG_EVERY == 0:
            logger.info("Import: %d / %d", done, len(paths))

    logger.info("Import done: %d new messages from %d files", new, len(paths))
    return new
