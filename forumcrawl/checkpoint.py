"""Crash-recovery checkpoint: which subforum/thread the post phase last started."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Sequence

from forumcrawl.storage import Database

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(frozen=True)
class CrawlState:
    subforum_url: str | None = None
    thread_url: str | None = None
    completed: bool = False
    updated_at: datetime | None = None

    @property
    def phase(self) -> Phase:
        if self.completed:
            return Phase.COMPLETED
        if self.subforum_url is None and self.thread_url is None:
            return Phase.NOT_STARTED
        return Phase.IN_PROGRESS


class CheckpointStore:
    """
    Reads and advances the singleton ScrapingState row.

    Transitions, in crawl order: start_subforum -> start_thread (per thread)
    -> finish_subforum, and finally complete(). reset() is the only way back
    from a completed crawl.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def load(self) -> CrawlState:
        row = self._db.get_scraping_state()
        return CrawlState(
            subforum_url=row.last_subforum_url,
            thread_url=row.last_thread_url,
            completed=bool(row.completed),
            updated_at=row.last_updated,
        )

    def _save(self, subforum_url: str | None, thread_url: str | None, completed: bool = False) -> None:
        self._db.save_scraping_state(subforum_url, thread_url, completed)
        logger.debug(
            "Checkpoint saved: %s - %s - completed=%s",
            subforum_url or "NONE",
            thread_url or "NONE",
            completed,
        )

    def start_subforum(self, subforum_url: str) -> None:
        self._save(subforum_url, None)

    def start_thread(self, subforum_url: str, thread_url: str) -> None:
        self._save(subforum_url, thread_url)

    def finish_subforum(self, subforum_url: str) -> None:
        """Drop thread granularity but keep the subforum position."""
        self._save(subforum_url, None)

    def complete(self) -> None:
        self._save(None, None, completed=True)
        logger.info("Checkpoint: crawl marked completed")

    def reset(self) -> None:
        self._save(None, None, completed=False)
        logger.info("Checkpoint reset")


def resume_index(items: Sequence[object], url: str | None) -> int:
    """Position of the item whose .url equals url; 0 if url is None or absent."""
    if url is None:
        return 0
    for i, item in enumerate(items):
        if getattr(item, "url", None) == url:
            return i
    return 0
