"""SQLite persistence: forum entities, dedup markers and the crawl checkpoint."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    event,
    func,
    select,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()

STATE_ROW_ID = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Subforum(Base):
    __tablename__ = "subforums"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(Text, nullable=False)
    url = Column(Text, nullable=False, unique=True)
    parent_id = Column(Integer, ForeignKey("subforums.id"), nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<Subforum(id={self.id}, title={self.title!r}, parent_id={self.parent_id})>"


class Thread(Base):
    __tablename__ = "threads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subforum_url = Column(Text, ForeignKey("subforums.url"), nullable=False, index=True)
    title = Column(Text, nullable=False)
    url = Column(Text, nullable=False, unique=True)
    creator = Column(Text, nullable=False)
    # Forum-formatted text, e.g. "03-14-2011, 09:12 PM"
    created_at = Column(Text, nullable=False)


class Post(Base):
    __tablename__ = "posts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    thread_url = Column(Text, ForeignKey("threads.url"), nullable=False, index=True)
    username = Column(Text, nullable=False)
    comment = Column(Text, nullable=False)
    posted_at = Column(Text, nullable=False)
    user_url = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("thread_url", "username", "posted_at", name="uq_posts_thread_user_time"),
    )


class User(Base):
    """Distinct post authors, with the number of posts stored for each."""

    __tablename__ = "users"

    username = Column(Text, primary_key=True)
    first_seen = Column(Text, nullable=False)
    post_count = Column(Integer, nullable=False, default=1)


class File(Base):
    __tablename__ = "files"

    id = Column(Integer, primary_key=True, autoincrement=True)
    post_id = Column(Integer, ForeignKey("posts.id"), nullable=False, index=True)
    filename = Column(Text, nullable=False)
    mime_type = Column(Text, nullable=True)
    file_data = Column(LargeBinary, nullable=False)


class ScrapedURL(Base):
    __tablename__ = "scraped_urls"

    url = Column(Text, primary_key=True)
    scraped_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class DownloadedFile(Base):
    __tablename__ = "downloaded_files"

    url = Column(Text, primary_key=True)
    post_id = Column(Integer, ForeignKey("posts.id"), nullable=False)
    downloaded_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class ScrapingState(Base):
    """Singleton checkpoint row (id is always 1)."""

    __tablename__ = "scraping_state"

    id = Column(Integer, primary_key=True)
    last_subforum_url = Column(Text, nullable=True)
    last_thread_url = Column(Text, nullable=True)
    last_updated = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed = Column(Boolean, nullable=False, default=False)

    __table_args__ = (CheckConstraint(f"id = {STATE_ROW_ID}", name="ck_scraping_state_singleton"),)


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    """WAL lets a viewer read while the crawler writes."""
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


class Database:
    """
    Durable store for one crawl. Every public write runs in its own transaction
    and is committed before the method returns.
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        self.engine = create_engine(url, echo=echo)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Session in a transaction that commits on exit and rolls back on error."""
        with self._sessions.begin() as session:
            yield session

    def setup(self) -> None:
        """Create missing tables and the singleton checkpoint row."""
        Base.metadata.create_all(self.engine)
        with self.session() as s:
            s.execute(
                sqlite_insert(ScrapingState)
                .values(id=STATE_ROW_ID, last_updated=utcnow(), completed=False)
                .on_conflict_do_nothing(index_elements=["id"])
            )
        logger.info("Database ready: %s", self.url)

    def close(self) -> None:
        self.engine.dispose()
        logger.info("Database connection closed.")

    # Entities

    def insert_subforum(self, title: str, url: str, parent_id: int | None = None) -> Subforum:
        """Insert or ignore by URL; always returns the stored row."""
        with self.session() as s:
            s.execute(
                sqlite_insert(Subforum)
                .values(title=title, url=url, parent_id=parent_id)
                .on_conflict_do_nothing(index_elements=["url"])
            )
            return s.scalars(select(Subforum).where(Subforum.url == url)).one()

    def insert_thread(
        self, subforum_url: str, title: str, url: str, creator: str, created_at: str
    ) -> Thread:
        with self.session() as s:
            s.execute(
                sqlite_insert(Thread)
                .values(
                    subforum_url=subforum_url,
                    title=title,
                    url=url,
                    creator=creator,
                    created_at=created_at,
                )
                .on_conflict_do_nothing(index_elements=["url"])
            )
            return s.scalars(select(Thread).where(Thread.url == url)).one()

    def insert_post(
        self,
        thread_url: str,
        username: str,
        comment: str,
        posted_at: str,
        user_url: str | None = None,
    ) -> int:
        """Insert or ignore a post; returns its id (the existing one on a duplicate)."""
        with self.session() as s:
            result = s.execute(
                sqlite_insert(Post)
                .values(
                    thread_url=thread_url,
                    username=username,
                    comment=comment,
                    posted_at=posted_at,
                    user_url=user_url,
                )
                .on_conflict_do_nothing(index_elements=["thread_url", "username", "posted_at"])
            )
            if result.rowcount:
                s.execute(
                    sqlite_insert(User)
                    .values(username=username, first_seen=posted_at, post_count=1)
                    .on_conflict_do_update(
                        index_elements=["username"],
                        set_={"post_count": User.post_count + 1},
                    )
                )
            return s.scalars(
                select(Post.id).where(
                    Post.thread_url == thread_url,
                    Post.username == username,
                    Post.posted_at == posted_at,
                )
            ).one()

    def insert_file(
        self, post_id: int, filename: str, mime_type: str | None, data: bytes
    ) -> File:
        with self.session() as s:
            row = File(post_id=post_id, filename=filename, mime_type=mime_type, file_data=data)
            s.add(row)
            s.flush()
            return row

    def get_subforums(self, parent_id: int | None = None) -> list[Subforum]:
        """Direct children of parent_id (roots when None), in insertion order."""
        if parent_id is None:
            cond = Subforum.parent_id.is_(None)
        else:
            cond = Subforum.parent_id == parent_id
        with self.session() as s:
            return list(s.scalars(select(Subforum).where(cond).order_by(Subforum.id)))

    def all_subforums(self) -> list[Subforum]:
        """Every subforum in insertion (discovery) order."""
        with self.session() as s:
            return list(s.scalars(select(Subforum).order_by(Subforum.id)))

    def get_threads_by_subforum(self, subforum_url: str) -> list[Thread]:
        with self.session() as s:
            return list(
                s.scalars(
                    select(Thread).where(Thread.subforum_url == subforum_url).order_by(Thread.id)
                )
            )

    def get_posts_by_thread(self, thread_url: str) -> list[Post]:
        with self.session() as s:
            return list(
                s.scalars(select(Post).where(Post.thread_url == thread_url).order_by(Post.id))
            )

    def get_files_by_post(self, post_id: int) -> list[File]:
        with self.session() as s:
            return list(s.scalars(select(File).where(File.post_id == post_id).order_by(File.id)))

    def count(self, model: type[Base]) -> int:
        with self.session() as s:
            return s.scalar(select(func.count()).select_from(model)) or 0

    # Dedup markers

    def is_url_scraped(self, url: str) -> bool:
        with self.session() as s:
            return s.get(ScrapedURL, url) is not None

    def mark_url_scraped(self, url: str) -> None:
        with self.session() as s:
            s.execute(
                sqlite_insert(ScrapedURL)
                .values(url=url, scraped_at=utcnow())
                .on_conflict_do_nothing(index_elements=["url"])
            )

    def load_scraped_urls(self) -> list[str]:
        with self.session() as s:
            return list(s.scalars(select(ScrapedURL.url)))

    def clear_scraped_urls(self) -> None:
        with self.session() as s:
            s.execute(delete(ScrapedURL))

    def is_file_downloaded(self, url: str) -> bool:
        with self.session() as s:
            return s.get(DownloadedFile, url) is not None

    def mark_file_downloaded(self, url: str, post_id: int) -> None:
        with self.session() as s:
            s.execute(
                sqlite_insert(DownloadedFile)
                .values(url=url, post_id=post_id, downloaded_at=utcnow())
                .on_conflict_do_nothing(index_elements=["url"])
            )

    def load_downloaded_files(self) -> list[str]:
        with self.session() as s:
            return list(s.scalars(select(DownloadedFile.url)))

    # Checkpoint

    def get_scraping_state(self) -> ScrapingState:
        with self.session() as s:
            state = s.get(ScrapingState, STATE_ROW_ID)
            if state is None:
                logger.info("No scraping state found, using default state")
                return ScrapingState(
                    id=STATE_ROW_ID,
                    last_subforum_url=None,
                    last_thread_url=None,
                    last_updated=utcnow(),
                    completed=False,
                )
            return state

    def save_scraping_state(
        self,
        last_subforum_url: str | None,
        last_thread_url: str | None,
        completed: bool = False,
    ) -> None:
        with self.session() as s:
            s.execute(
                update(ScrapingState)
                .where(ScrapingState.id == STATE_ROW_ID)
                .values(
                    last_subforum_url=last_subforum_url,
                    last_thread_url=last_thread_url,
                    last_updated=utcnow(),
                    completed=completed,
                )
            )
