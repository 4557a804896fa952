"""Fake vBulletin-style forum served through httpx.MockTransport."""

import tempfile
from pathlib import Path

import httpx

from forumcrawl.config import Config
from forumcrawl.storage import Database

BASE = "https://forum.test/"


def forum_list(links):
    items = "".join(
        f'<li class="forumbit_post"><h2 class="forumtitle"><a href="{href}">{title}</a></h2></li>'
        for title, href in links
    )
    return f'<ol id="forums"><li class="forumbit_nopost"><ol class="childforum">{items}</ol></li></ol>'


def index_page(links, threads=2, posts=4, members=3):
    return (
        "<html><body>"
        f"<dl><dt>Threads</dt><dd>{threads:,}</dd><dt>Posts</dt><dd>{posts:,}</dd>"
        f"<dt>Members</dt><dd>{members:,}</dd></dl>"
        f"{forum_list(links)}</body></html>"
    )


def subforum_page(children=(), threads=(), next_href=None):
    rows = "".join(
        '<li class="threadbit"><h3 class="threadtitle">'
        f'<a class="title" href="{href}">{title}</a></h3>'
        '<div class="threadmeta"><div class="author"><span class="label">'
        f'Started by <a href="/members/1-{creator}">{creator}</a>, {created}'
        "</span></div></div></li>"
        for title, href, creator, created in threads
    )
    nxt = f'<a rel="next" href="{next_href}">Next</a>' if next_href else ""
    return f'<html><body>{forum_list(children)}<ol id="threads">{rows}</ol>{nxt}</body></html>'


def thread_page(posts, next_href=None):
    items = []
    for i, (username, comment, posted_at, *images) in enumerate(posts):
        imgs = "".join(f'<img src="{src}">' for src in images)
        items.append(
            f'<li class="postcontainer" id="post_{i}">'
            f'<div class="posthead"><span class="postdate"><span class="date">{posted_at}</span></span></div>'
            f'<a class="username" href="/members/{username}"><strong>{username}</strong></a>'
            f'<div id="post_message_{i}"><blockquote class="postcontent">{comment}{imgs}</blockquote></div>'
            "</li>"
        )
    nxt = f'<a rel="next" href="{next_href}">Next</a>' if next_href else ""
    return f'<html><body><ol id="posts">{"".join(items)}</ol>{nxt}</body></html>'


class FakeForum:
    """URL -> body (str), bytes, httpx.Response, or exception. Records every request."""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.requests: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        body = self.pages.get(url)
        if body is None:
            return httpx.Response(404, text="Not Found")
        if isinstance(body, Exception):
            raise body
        if isinstance(body, httpx.Response):
            return body
        if isinstance(body, bytes):
            return httpx.Response(200, content=body, headers={"content-type": "image/png"})
        return httpx.Response(200, text=body, headers={"content-type": "text/html; charset=utf-8"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def two_level_forum() -> FakeForum:
    """Index -> Root -> Child; one thread each, two posts over two pages per thread."""
    root = BASE + "forums/1-root"
    child = BASE + "forums/2-child"
    t1 = BASE + "threads/10-welcome"
    t2 = BASE + "threads/20-child-topic"
    return FakeForum(
        {
            BASE: index_page([("Root", "/forums/1-root")]),
            root: subforum_page(
                children=[("Child", "/forums/2-child")],
                threads=[("Welcome", "/threads/10-welcome", "alice", "03-14-2011, 09:12 PM")],
            ),
            child: subforum_page(
                threads=[("Child topic", "/threads/20-child-topic", "bob", "04-01-2012, 10:00 AM")],
            ),
            t1: thread_page([("alice", "First!", "03-14-2011, 09:12 PM")], next_href="/threads/10-welcome/page2"),
            t1 + "/page2": thread_page([("bob", "Second", "03-15-2011, 08:00 AM")]),
            t2: thread_page([("bob", "Hello child", "04-01-2012, 10:00 AM")], next_href="/threads/20-child-topic/page2"),
            t2 + "/page2": thread_page([("carol", "Reply", "04-02-2012, 11:00 AM")]),
        }
    )


def make_config(db_path: Path, **overrides) -> Config:
    values = dict(
        forum_url=BASE,
        database_path=str(db_path),
        request_delay=0.0,
        retry_delay=0.0,
        subforum_delay=0.0,
        max_retries=2,
    )
    values.update(overrides)
    return Config(**values)


class TempDatabaseMixin:
    """unittest mixin: a fresh file-backed database per test in self.db."""

    def setUp(self):
        super().setUp()
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tmp.name) / "forum.db"
        self.db = self.open_db()

    def open_db(self) -> Database:
        db = Database(f"sqlite:///{self.db_path}")
        db.setup()
        return db

    def tearDown(self):
        self.db.close()
        self._tmp.cleanup()
        super().tearDown()
