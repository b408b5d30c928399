"""Turn raw message bytes into a content-addressed archive entry."""

from __future__ import annotations

import logging
from typing import NamedTuple

from content_store import ContentStore
from eml_utils import content_hash

logger = logging.getLogger(__name__)


class IngestResult(NamedTuple):
    hash: str
    created: bool


class IngestionPipeline:
    """Hash a raw message and write it through the store as one atomic unit."""

    def __init__(self, store: ContentStore) -> None:
        self.store = store
        self.new = 0
        self.duplicates = 0

    def ingest(self, raw: bytes) -> IngestResult:
        """
        Store `raw`, reporting whether it was new to the archive.

        Re-ingesting identical bytes writes nothing new. StorageError from
        the store propagates; nothing of the message is left behind then.
        """
        digest = content_hash(raw)
        created = self.store.ingest(digest, raw)
        if created:
            self.new += 1
            logger.debug("Stored new message %s (%d bytes)", digest, len(raw))
        else:
            self.duplicates += 1
        return IngestResult(digest, created)

    def ingest_raw(self, raw: bytes) -> str:
        """Store `raw` and return its content hash."""
        return self.ingest(raw).hash
