"""
Crawl pipeline: map the subforum tree and thread listings, then walk every
thread's post pages from the last checkpoint. Used by the CLI and by tests.

Ordering rules the engine keeps:
- A listing's pages are marked scraped only after all of its records are
  stored and the listing finished without a fetch failure.
- A checkpoint is advanced only when the work it names is about to start or
  has finished.
"""

from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

import httpx
from bs4 import BeautifulSoup
from sqlalchemy.exc import SQLAlchemyError
from tqdm import tqdm

from forumcrawl.checkpoint import CheckpointStore, CrawlState, Phase, resume_index
from forumcrawl.config import Config, Limits
from forumcrawl.dedup import DedupStore
from forumcrawl.errors import FetchFailure
from forumcrawl.extractors import DocumentExtractor, ForumStats, PostRow, ThreadRow
from forumcrawl.fetcher import Fetcher, filename_from_url
from forumcrawl.flaresolverr import BypassSession
from forumcrawl.storage import Database, Post, Subforum, Thread

logger = logging.getLogger(__name__)

Confirm = Callable[[str, bool], bool]


def accept_defaults(question: str, default: bool) -> bool:
    """Non-interactive confirm: always take the default answer."""
    logger.info("%s -> %s", question, "yes" if default else "no")
    return default


def _percent(done: int, total: int) -> int:
    return 0 if total <= 0 else round(done / total * 100)


@dataclass
class CrawlStats:
    subforums: int = 0
    threads: int = 0
    posts: int = 0
    pages: int = 0
    files_downloaded: int = 0
    files_failed: int = 0
    users: set[str] = field(default_factory=set)
    totals: ForumStats | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def percentages(self) -> dict[str, int] | None:
        if self.totals is None:
            return None
        return {
            "threads": _percent(self.threads, self.totals.threads),
            "posts": _percent(self.posts, self.totals.posts),
            "users": _percent(len(self.users), self.totals.members),
        }

    def summary(self) -> str:
        elapsed = (datetime.now(timezone.utc) - self.started_at).total_seconds()
        parts = [
            f"elapsed={elapsed:.0f}s",
            f"subforums={self.subforums}",
            f"threads={self.threads}",
            f"posts={self.posts}",
            f"users={len(self.users)}",
            f"pages={self.pages}",
            f"files={self.files_downloaded} ok/{self.files_failed} failed",
        ]
        pct = self.percentages()
        if pct is not None:
            parts.append(
                f"complete: threads {pct['threads']}%, posts {pct['posts']}%, users {pct['users']}%"
            )
        return ", ".join(parts)


class CrawlEngine:
    """
    Owns every piece of mutable crawl state (stats, dedup caches, the
    fetcher and its rate limiter), so independent engines never interfere.
    """

    def __init__(
        self,
        config: Config,
        db: Database,
        *,
        bypass: BypassSession | None = None,
        transport: httpx.BaseTransport | None = None,
        extractor: DocumentExtractor | None = None,
        confirm: Confirm = accept_defaults,
        sleep: Callable[[float], None] = time.sleep,
        progress: bool = False,
    ) -> None:
        self.config = config
        self.limits: Limits = config.limits
        self.db = db
        self.scraped = DedupStore.scraped_pages(db)
        self.files = DedupStore.downloaded_files(db)
        self.checkpoints = CheckpointStore(db)
        self.extractor = extractor or DocumentExtractor(config.selectors)
        self.fetcher = Fetcher.from_config(
            config, scraped=self.scraped, bypass=bypass, transport=transport, sleep=sleep
        )
        self.confirm = confirm
        self._sleep = sleep
        self.stats = CrawlStats()
        self.progress = progress
        self._post_bar: tqdm | None = None

    def close(self) -> None:
        self.fetcher.close()

    # Entry point

    def run(self, *, reset: bool = False) -> bool:
        """
        Crawl the forum, resuming from the stored checkpoint.

        Returns False when the run is declined (including a completed crawl
        without reset), True when the crawl completed.

        :raises FetchFailure: if the forum index cannot be fetched.
        """
        self.scraped.load_all()
        self.files.load_all()
        state = self.checkpoints.load()

        if reset:
            self.reset()
            state = CrawlState()
        elif state.phase is Phase.COMPLETED:
            if not self.confirm("Previous crawl was completed. Reset crawl state?", False):
                logger.info("Crawl was already completed. Exiting.")
                return False
            self.reset()
            state = CrawlState()
        elif state.phase is Phase.IN_PROGRESS:
            if self.confirm(f"Resume crawl from {state.subforum_url}?", True):
                logger.info("Resuming crawl from subforum: %s", state.subforum_url)
            else:
                self.reset()
                state = CrawlState()

        logger.info("Getting forum statistics...")
        index_html = self.fetcher.fetch(self.config.forum_url, should_mark_scraped=False)
        self.stats.totals = self.extractor.forum_stats(index_html)
        totals = self.stats.totals
        logger.info(
            "Forum overview: %d threads, %d posts, %d members",
            totals.threads,
            totals.posts,
            totals.members,
        )
        if not totals.complete:
            logger.warning("Could not read all forum statistics; progress percentages will be off")
        if self.limits.bounded:
            logger.info("Test mode limits: %s", self.config.describe_limits())

        if not self.confirm("Continue with crawl?", True):
            logger.info("Crawl cancelled.")
            return False

        logger.info("Starting forum crawl...")
        self.crawl_subforums(index_html=index_html)
        self.crawl_posts(state)
        self.checkpoints.complete()
        logger.info("Final statistics: %s", self.stats.summary())
        logger.info("Crawl completed successfully.")
        return True

    def reset(self) -> None:
        """Forget the checkpoint and every scraped-page marker. File markers stay."""
        cleared = len(self.scraped)
        self.checkpoints.reset()
        self.scraped.clear()
        logger.info("Crawl state reset (%d scraped-page markers cleared)", cleared)

    # Map phase: subforum tree and thread listings

    def crawl_subforums(self, url: str | None = None, *, index_html: str | None = None) -> None:
        """Walk the subforum tree below the forum index, depth-first."""
        url = url or self.config.forum_url
        if url in self.scraped:
            logger.info("Forum index already mapped, using stored subforums")
            children = self.db.get_subforums(None)
        else:
            html = index_html or self.fetcher.fetch(url)
            children = self._insert_subforums(self.extractor.parse(html), url, None)
            self.scraped.mark(url)
        self._walk(children)

    def _walk(self, subforums: list[Subforum]) -> None:
        for subforum in subforums:
            if self.stats.subforums >= self.limits.subforums:
                return
            self.stats.subforums += 1
            before = self.fetcher.requests
            children = self.crawl_subforum_threads(subforum)
            if self.fetcher.requests > before:
                self._sleep(self.config.subforum_delay)
            self._walk(children)

    def _insert_subforums(
        self, soup: BeautifulSoup, page_url: str, parent_id: int | None
    ) -> list[Subforum]:
        links = self.extractor.subforum_links(soup, page_url)
        logger.info("Found %d subforums/child forums on %s", len(links), page_url)
        rows: list[Subforum] = []
        for link in links:
            try:
                row = self.db.insert_subforum(link.title, link.url, parent_id)
            except SQLAlchemyError:
                logger.exception("Failed to insert subforum %s", link.title)
                continue
            logger.info("Added subforum: %s (parent_id=%s)", link.title, parent_id)
            rows.append(row)
        return rows

    def crawl_subforum_threads(self, subforum: Subforum) -> list[Subforum]:
        """
        Store the threads of every listing page of subforum and return its
        child subforums (read from page 1, or from storage when page 1 was
        already scraped or could not be fetched).
        """
        children: list[Subforum] | None = None
        done: list[str] = []
        added = 0
        failed = False
        page_url: str | None = subforum.url
        while page_url:
            if len(done) >= self.limits.pages_per_subforum:
                break
            try:
                html = self.fetcher.fetch(page_url)
            except FetchFailure as e:
                logger.error("Failed to scrape thread listing %s: %s", page_url, e)
                failed = True
                break
            if not html:
                break
            soup = self.extractor.parse(html)
            if children is None:
                children = self._insert_subforums(soup, page_url, subforum.id)
            rows = self.extractor.thread_rows(soup, page_url)
            logger.info("Found %d threads on page: %s", len(rows), page_url)
            self.stats.pages += 1
            done.append(page_url)
            for row in rows:
                if added >= self.limits.threads_per_subforum:
                    break
                if self._insert_thread(subforum, row):
                    added += 1
            if added >= self.limits.threads_per_subforum:
                break
            page_url = self._next_page(soup, page_url, done)
            if page_url:
                self._sleep(self.config.request_delay)
        if not failed:
            self._mark_pages(done)
        if children is None:
            children = self.db.get_subforums(subforum.id)
        return children

    def _insert_thread(self, subforum: Subforum, row: ThreadRow) -> bool:
        try:
            self.db.insert_thread(subforum.url, row.title, row.url, row.creator, row.created_at)
        except SQLAlchemyError:
            logger.exception("Failed to insert thread %s", row.url)
            return False
        logger.info("Added thread: %s (%s) by %s", row.title, row.created_at, row.creator)
        self.stats.threads += 1
        return True

    # Post phase: thread pages from the checkpoint onward

    def crawl_posts(self, state: CrawlState | None = None) -> None:
        """Crawl posts of every stored thread, starting at the checkpoint in state."""
        totals = self.stats.totals
        self._post_bar = tqdm(
            desc="Posts",
            unit=" post",
            total=(totals.posts if totals is not None else 0) or None,
            initial=self.db.count(Post),
            file=sys.stderr,
            disable=not self.progress,
        )
        try:
            self._crawl_posts(state or CrawlState())
        finally:
            self._post_bar.close()
            self._post_bar = None

    def _crawl_posts(self, state: CrawlState) -> None:
        subforums = self.db.all_subforums()
        start = resume_index(subforums, state.subforum_url)
        if state.subforum_url and (not subforums or subforums[start].url != state.subforum_url):
            logger.warning("Checkpoint subforum %s not found, starting from the top", state.subforum_url)
        elif state.subforum_url:
            logger.info(
                "Resuming from subforum %d/%d: %s", start + 1, len(subforums), subforums[start].title
            )

        for i in range(start, len(subforums)):
            subforum = subforums[i]
            logger.info("Processing subforum %d/%d: %s", i + 1, len(subforums), subforum.title)
            self.checkpoints.start_subforum(subforum.url)
            threads = self.db.get_threads_by_subforum(subforum.url)

            first = 0
            if subforum.url == state.subforum_url and state.thread_url:
                first = resume_index(threads, state.thread_url)
                if threads and threads[first].url == state.thread_url:
                    logger.info(
                        "Resuming from thread %d/%d: %s", first + 1, len(threads), threads[first].title
                    )

            fetched_any = False
            for j in range(first, len(threads)):
                thread = threads[j]
                logger.info("Processing thread %d/%d: %s", j + 1, len(threads), thread.title)
                self.checkpoints.start_thread(subforum.url, thread.url)
                if self.crawl_thread_posts(thread):
                    fetched_any = True
                    self._sleep(self.config.request_delay)

            self.checkpoints.finish_subforum(subforum.url)
            if fetched_any:
                self._sleep(self.config.subforum_delay)

    def crawl_thread_posts(self, thread: Thread) -> bool:
        """Store the posts of every page of thread. Returns True if any page was fetched."""
        done: list[str] = []
        stored = 0
        failed = False
        page_url: str | None = thread.url
        while page_url:
            if len(done) >= self.limits.pages_per_thread:
                break
            try:
                html = self.fetcher.fetch(page_url)
            except FetchFailure as e:
                logger.error("Failed to scrape posts from %s: %s", page_url, e)
                failed = True
                break
            if not html:
                break
            soup = self.extractor.parse(html)
            rows = self.extractor.post_rows(soup, page_url)
            logger.info("Found %d posts on page %s", len(rows), page_url)
            self.stats.pages += 1
            done.append(page_url)
            for row in rows:
                if stored >= self.limits.posts_per_thread:
                    break
                if self._store_post(thread, row) is not None:
                    stored += 1
            if stored >= self.limits.posts_per_thread:
                break
            page_url = self._next_page(soup, page_url, done)
            if page_url:
                self._sleep(self.config.request_delay)
        if not failed:
            self._mark_pages(done)
        return bool(done)

    def _store_post(self, thread: Thread, row: PostRow) -> int | None:
        try:
            post_id = self.db.insert_post(
                thread.url, row.username, row.comment, row.posted_at, row.user_url
            )
        except SQLAlchemyError:
            logger.exception("Failed to insert post by %s in %s", row.username, thread.url)
            return None
        for file_url in row.image_urls:
            if self.config.download_files:
                self.download_file(file_url, post_id)
            else:
                logger.info("Would have downloaded: %s", file_url)
        self.stats.posts += 1
        self.stats.users.add(row.username)
        if self._post_bar is not None:
            self._post_bar.update(1)
        return post_id

    def download_file(self, file_url: str, post_id: int) -> bool:
        """
        Store one attachment for post_id unless it was already downloaded.
        Failures are logged and counted, not persisted.
        """
        if file_url in self.files:
            logger.info("File already downloaded, skipping: %s", file_url)
            return False
        try:
            data, mime_type = self.fetcher.fetch_binary(file_url)
        except FetchFailure as e:
            logger.error("Error downloading file %s: %s", file_url, e)
            self.stats.files_failed += 1
            return False
        filename = filename_from_url(file_url, f"unknown-{int(time.time())}")
        try:
            self.db.insert_file(post_id, filename, mime_type, data)
        except SQLAlchemyError:
            logger.exception("Error storing file %s", file_url)
            self.stats.files_failed += 1
            return False
        self.files.mark(file_url, post_id)
        self.stats.files_downloaded += 1
        logger.info("Inserted file into database: %s", filename)
        return True

    # Helpers

    def _next_page(self, soup: BeautifulSoup, page_url: str, visited: list[str]) -> str | None:
        next_url = self.extractor.next_page(soup, page_url)
        if next_url is None:
            return None
        if next_url == page_url or next_url in visited:
            logger.warning("Pagination on %s points back to %s, stopping", page_url, next_url)
            return None
        return next_url

    def _mark_pages(self, urls: list[str]) -> None:
        for url in urls:
            self.scraped.mark(url)
