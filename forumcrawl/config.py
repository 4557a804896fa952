"""Crawl settings read from the environment (optionally overridden by CLI flags)."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Mapping

from forumcrawl.errors import ConfigError
from forumcrawl.flaresolverr import get_flaresolverr_url

DEFAULT_DATABASE_PATH = "data/forum_data.db"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:109.0) Gecko/20100101 Firefox/115.0"
)

# Sentinel for "no cap"; compare with >= like any other limit.
UNBOUNDED = sys.maxsize

_TRUE = ("true", "1", "yes", "on")
_FALSE = ("false", "0", "no", "off", "")


def _env_int(environ: Mapping[str, str], key: str, default: int | None) -> int | None:
    value = environ.get(key)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip(), 10)
    except ValueError:
        raise ConfigError(f"{key} must be a valid number, got {value!r}") from None


def _env_bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    value = environ.get(key)
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigError(f"{key} must be a boolean value (true or false), got {value!r}")


@dataclass(frozen=True)
class Selectors:
    """CSS location rules for each extraction point (vBulletin 4 defaults)."""

    subforum: str = "ol#forums > li.forumbit_nopost > ol.childforum > li.forumbit_post h2.forumtitle > a"
    thread: str = "#threads > li.threadbit"
    thread_title: str = "h3.threadtitle a.title"
    thread_author_date: str = ".threadmeta .author span.label"
    stats_threads: str = 'dt:-soup-contains("Threads") + dd'
    stats_posts: str = 'dt:-soup-contains("Posts") + dd'
    stats_members: str = 'dt:-soup-contains("Members") + dd'
    pagination: str = 'a[rel="next"]'
    pagination_last: str = 'div[id*="-pagenav-"] .pagination a'
    post: str = "li.postcontainer"
    post_author: str = ".username strong"
    post_author_link: str = "a.username"
    post_content: str = 'div[id^="post_message_"] blockquote.postcontent'
    post_timestamp: str = "div.posthead span.postdate span.date"
    post_image: str = ".postcontent img[src]"

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> Selectors:
        """Override any rule with CSS_SELECTOR_<NAME>, e.g. CSS_SELECTOR_THREAD_TITLE."""
        overrides = {}
        for f in fields(cls):
            value = environ.get(f"CSS_SELECTOR_{f.name.upper()}")
            if value and value.strip():
                overrides[f.name] = value.strip()
        return cls(**overrides)


@dataclass(frozen=True)
class Limits:
    """Caps for bounded (test) runs. Every field is UNBOUNDED in a normal run."""

    subforums: int = UNBOUNDED
    threads_per_subforum: int = UNBOUNDED
    posts_per_thread: int = UNBOUNDED
    pages_per_subforum: int = UNBOUNDED
    pages_per_thread: int = UNBOUNDED

    @property
    def bounded(self) -> bool:
        return any(getattr(self, f.name) != UNBOUNDED for f in fields(self))

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> Limits:
        def cap(key: str) -> int:
            value = _env_int(environ, key, None)
            return UNBOUNDED if value is None or value < 0 else value

        return cls(
            subforums=cap("MAX_SUBFORUMS"),
            threads_per_subforum=cap("MAX_THREADS_PER_SUBFORUM"),
            posts_per_thread=cap("MAX_POSTS_PER_THREAD"),
            pages_per_subforum=cap("MAX_PAGES_PER_SUBFORUM"),
            pages_per_thread=cap("MAX_PAGES_PER_THREAD"),
        )


@dataclass(frozen=True)
class Config:
    forum_url: str = ""
    database_path: str = DEFAULT_DATABASE_PATH
    user_agent: str = DEFAULT_USER_AGENT
    # Seconds here; the environment carries milliseconds.
    request_delay: float = 0.5
    retry_delay: float = 5.0
    subforum_delay: float = 10.0
    max_retries: int = 3
    request_timeout: float = 30.0
    download_files: bool = False
    test_mode: bool = False
    flaresolverr_url: str | None = None
    limits: Limits = field(default_factory=Limits)
    selectors: Selectors = field(default_factory=Selectors)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Config:
        """Build a Config from FORUM_URL, DATABASE_PATH, DELAY_BETWEEN_REQUESTS, ..."""
        env = os.environ if environ is None else environ
        test_mode = _env_bool(env, "TEST_MODE", False)
        max_retries = _env_int(env, "MAX_RETRIES", 3)
        if max_retries < 1:
            raise ConfigError("MAX_RETRIES must be at least 1")
        return cls(
            forum_url=(env.get("FORUM_URL") or "").strip(),
            database_path=(env.get("DATABASE_PATH") or "").strip() or DEFAULT_DATABASE_PATH,
            request_delay=_env_int(env, "DELAY_BETWEEN_REQUESTS", 500) / 1000.0,
            retry_delay=_env_int(env, "RETRY_DELAY", 5000) / 1000.0,
            subforum_delay=_env_int(env, "SUBFORUM_DELAY", 10000) / 1000.0,
            max_retries=max_retries,
            request_timeout=float(_env_int(env, "REQUEST_TIMEOUT", 30)),
            download_files=_env_bool(env, "DOWNLOAD_FILES", False),
            test_mode=test_mode,
            flaresolverr_url=get_flaresolverr_url(env),
            limits=Limits.from_env(env) if test_mode else Limits(),
            selectors=Selectors.from_env(env),
        )

    def with_overrides(self, **changes: object) -> Config:
        """Return a copy with the given fields replaced; None values are ignored."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @property
    def database_url(self) -> str:
        if "://" in self.database_path:
            return self.database_path
        return f"sqlite:///{self.database_path}"

    def ensure_database_dir(self) -> None:
        """Create the parent directory of a file-backed SQLite database."""
        if "://" in self.database_path:
            return
        Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)

    def describe_limits(self) -> str:
        def show(n: int) -> str:
            return "unbounded" if n == UNBOUNDED else str(n)

        lim = self.limits
        return (
            f"subforums={show(lim.subforums)}, "
            f"threads/subforum={show(lim.threads_per_subforum)}, "
            f"posts/thread={show(lim.posts_per_thread)}, "
            f"pages/subforum={show(lim.pages_per_subforum)}, "
            f"pages/thread={show(lim.pages_per_thread)}"
        )
