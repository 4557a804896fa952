"""In-memory URL sets backed by durable marker tables."""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from forumcrawl.storage import Database

logger = logging.getLogger(__name__)


class DedupStore:
    """
    Answers "was this URL already processed?" for one key space.

    Lookups hit the in-memory set first, then the durable store; a durable hit
    is copied back into memory. mark() updates memory before the durable
    write, so a failed write can only cause a re-fetch after a restart, never
    a false negative within the same run.
    """

    def __init__(
        self,
        name: str,
        *,
        lookup: Callable[[str], bool],
        insert: Callable[..., None],
        load: Callable[[], Iterable[str]],
        clear: Callable[[], None] | None = None,
    ) -> None:
        self.name = name
        self._lookup = lookup
        self._insert = insert
        self._load = load
        self._clear = clear
        self._seen: set[str] = set()

    @classmethod
    def scraped_pages(cls, db: Database) -> DedupStore:
        return cls(
            "scraped URLs",
            lookup=db.is_url_scraped,
            insert=db.mark_url_scraped,
            load=db.load_scraped_urls,
            clear=db.clear_scraped_urls,
        )

    @classmethod
    def downloaded_files(cls, db: Database) -> DedupStore:
        return cls(
            "downloaded files",
            lookup=db.is_file_downloaded,
            insert=db.mark_file_downloaded,
            load=db.load_downloaded_files,
        )

    def __contains__(self, key: str) -> bool:
        return self.is_marked(key)

    def __len__(self) -> int:
        return len(self._seen)

    def load_all(self) -> None:
        """Warm the in-memory set from durable storage (call once at startup)."""
        try:
            keys = list(self._load())
        except Exception:
            logger.exception("Failed to load %s", self.name)
            return
        self._seen.clear()
        self._seen.update(keys)
        logger.info("Loaded %d previously %s", len(self._seen), self.name)

    def is_marked(self, key: str) -> bool:
        if key in self._seen:
            return True
        try:
            found = self._lookup(key)
        except Exception:
            logger.exception("Failed to check %s for %s", self.name, key)
            return False
        if found:
            self._seen.add(key)
        return found

    def mark(self, key: str, *args: object) -> None:
        """Record key; extra args are passed to the durable insert (e.g. post id)."""
        self._seen.add(key)
        try:
            self._insert(key, *args)
        except Exception:
            logger.exception("Failed to persist %s marker for %s", self.name, key)

    def clear(self) -> None:
        """Forget every key, in memory and (when supported) durably."""
        self._seen.clear()
        if self._clear is not None:
            self._clear()
