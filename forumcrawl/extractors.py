"""Turn forum HTML into subforum links, thread rows, post rows and pagination links."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from forumcrawl.config import Selectors

logger = logging.getLogger(__name__)

UNKNOWN_CREATOR = "Unknown"
UNDATED_PREFIX = "undated "

# "Started by <a href=...>alice</a>, 03-14-2011 09:12 PM" (raw markup) or the
# plain-text form "Started by alice, on 03-14-2011 09:12 PM".
_STARTED_BY_HTML_RE = re.compile(r"Started by\s*<a[^>]*>(.*?)</a>\s*,\s*(.*)", re.IGNORECASE | re.DOTALL)
_STARTED_BY_TEXT_RE = re.compile(r"Started by\s*([^,]*?)\s*,\s*(.*)", re.IGNORECASE | re.DOTALL)
_LEADING_ON_RE = re.compile(r"^on\s+", re.IGNORECASE)
_WS_RE = re.compile(r"\s+")
_DIGITS_RE = re.compile(r"[\d,]+")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_started_by(text: str | None, *, now: str | None = None) -> tuple[str, str]:
    """
    Split a thread's "Started by X, Y" blob into (creator, created_at).

    Falls back to ("Unknown", now) when the pattern does not match or a part
    is blank. now defaults to the current UTC time in ISO-8601.
    """
    fallback = (UNKNOWN_CREATOR, now or now_iso())
    if not text:
        return fallback
    m = _STARTED_BY_HTML_RE.search(text) or _STARTED_BY_TEXT_RE.search(text)
    if not m:
        return fallback
    creator = _WS_RE.sub(" ", re.sub(r"<[^>]+>", "", m.group(1))).strip()
    created_at = _LEADING_ON_RE.sub("", _WS_RE.sub(" ", m.group(2)).strip())
    return (creator or fallback[0], created_at or fallback[1])


def parse_count(text: str | None) -> int:
    """'12,345' -> 12345; anything without digits -> 0."""
    if not text:
        return 0
    m = _DIGITS_RE.search(text)
    if not m:
        return 0
    digits = m.group(0).replace(",", "")
    return int(digits) if digits else 0


@dataclass(frozen=True)
class SubforumLink:
    title: str
    url: str


@dataclass(frozen=True)
class ThreadRow:
    title: str
    url: str
    creator: str
    created_at: str


@dataclass(frozen=True)
class PostRow:
    username: str
    comment: str
    posted_at: str
    user_url: str | None
    image_urls: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ForumStats:
    threads: int = 0
    posts: int = 0
    members: int = 0

    @property
    def complete(self) -> bool:
        return self.threads > 0 and self.posts > 0 and self.members > 0


def _soup(html: str | BeautifulSoup) -> BeautifulSoup:
    if isinstance(html, BeautifulSoup):
        return html
    return BeautifulSoup(html, "lxml")


def _text(tag) -> str:
    return tag.get_text().strip() if tag is not None else ""


def _absolute(base_url: str, href: str | None) -> str | None:
    """Resolve href against base_url; None (with a warning) when it is malformed."""
    if not href:
        return None
    try:
        return urljoin(base_url, href.strip())
    except ValueError as e:
        logger.warning("Skipping malformed link %r on %s: %s", href, base_url, e)
        return None


class DocumentExtractor:
    """
    Extraction points over configurable CSS rules. Each method accepts raw
    HTML or an already parsed soup (parse once with parse() when calling
    several methods on one page).
    """

    def __init__(self, selectors: Selectors | None = None) -> None:
        self.selectors = selectors or Selectors()

    def parse(self, html: str) -> BeautifulSoup:
        return _soup(html)

    def subforum_links(self, html: str | BeautifulSoup, base_url: str) -> list[SubforumLink]:
        links: list[SubforumLink] = []
        seen: set[str] = set()
        for a in _soup(html).select(self.selectors.subforum):
            title = _text(a)
            url = _absolute(base_url, a.get("href"))
            if not title or not url:
                logger.warning("Invalid forum title or href on %s", base_url)
                continue
            if url in seen:
                continue
            seen.add(url)
            links.append(SubforumLink(title=title, url=url))
        return links

    def thread_rows(self, html: str | BeautifulSoup, base_url: str) -> list[ThreadRow]:
        sel = self.selectors
        rows: list[ThreadRow] = []
        for row in _soup(html).select(sel.thread):
            link = row.select_one(sel.thread_title)
            title = _text(link)
            url = _absolute(base_url, link.get("href")) if link is not None else None
            if not title or not url:
                logger.warning("Skipping thread with missing title or href on %s", base_url)
                continue
            blob = row.select_one(sel.thread_author_date)
            creator, created_at = parse_started_by(blob.get_text(" ") if blob is not None else None)
            rows.append(ThreadRow(title=title, url=url, creator=creator, created_at=created_at))
        return rows

    def post_rows(self, html: str | BeautifulSoup, base_url: str) -> list[PostRow]:
        """
        Posts with an author and content. A post without a timestamp is keyed
        on its markup id ("undated post_123") so re-parsing the same page
        yields the same row; without either it is skipped.
        """
        sel = self.selectors
        rows: list[PostRow] = []
        for post in _soup(html).select(sel.post):
            username = _text(post.select_one(sel.post_author))
            comment = _text(post.select_one(sel.post_content))
            if not username or not comment:
                logger.warning("Skipping post with missing author or content on %s", base_url)
                continue
            posted_at = _text(post.select_one(sel.post_timestamp))
            if not posted_at:
                markup_id = (post.get("id") or "").strip()
                if not markup_id:
                    logger.warning("Skipping post by %s with no timestamp or id on %s", username, base_url)
                    continue
                posted_at = f"{UNDATED_PREFIX}{markup_id}"
            link = post.select_one(sel.post_author_link)
            user_url = _absolute(base_url, link.get("href")) if link is not None else None
            images: list[str] = []
            for img in post.select(sel.post_image):
                src = (img.get("src") or "").strip()
                if not src or src.startswith("data:"):
                    continue
                img_url = _absolute(base_url, src)
                if img_url and img_url not in images:
                    images.append(img_url)
            rows.append(
                PostRow(
                    username=username,
                    comment=comment,
                    posted_at=posted_at,
                    user_url=user_url,
                    image_urls=images,
                )
            )
        return rows

    def next_page(self, html: str | BeautifulSoup, base_url: str) -> str | None:
        """URL of the next listing page, or None on the last page."""
        soup = _soup(html)
        a = soup.select_one(self.selectors.pagination)
        if a is None or not a.get("href"):
            candidates = [t for t in soup.select(self.selectors.pagination_last) if t.get("href")]
            a = candidates[-1] if candidates else None
        if a is None:
            return None
        return _absolute(base_url, a["href"])

    def forum_stats(self, html: str | BeautifulSoup) -> ForumStats:
        soup = _soup(html)
        sel = self.selectors
        return ForumStats(
            threads=parse_count(_text(soup.select_one(sel.stats_threads))),
            posts=parse_count(_text(soup.select_one(sel.stats_posts))),
            members=parse_count(_text(soup.select_one(sel.stats_members))),
        )
