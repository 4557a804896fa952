"""forumcrawl CLI. Invoked as `forumcrawl` when installed with pip install -e ."""

import argparse
import logging
import os
import sys

from forumcrawl._deps import check_required

logger = logging.getLogger("forumcrawl")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: bool = False, log_file: str | None = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    # httpx logs every request at INFO; the fetcher already does.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def ask(question: str, default: bool) -> bool:
    """Interactive yes/no prompt on stderr; empty answer or EOF takes the default."""
    suffix = "(Y/n)" if default else "(y/N)"
    print(f"{question} {suffix} ", end="", file=sys.stderr, flush=True)
    try:
        answer = input().strip().lower()
    except EOFError:
        return default
    if not answer:
        return default
    return answer in ("y", "yes")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="forumcrawl",
        description="Crawl a paginated forum (subforums, threads, posts, files) into SQLite, resumably.",
    )
    parser.add_argument("--forum-url", default=None, metavar="URL", help="Forum index URL (default: FORUM_URL)")
    parser.add_argument(
        "--db",
        default=None,
        metavar="PATH",
        help="SQLite database path or SQLAlchemy URL (default: DATABASE_PATH or data/forum_data.db)",
    )
    parser.add_argument(
        "--flaresolverr",
        nargs="?",
        const="",
        default=None,
        metavar="URL",
        help="Relay page fetches through FlareSolverr (default: FLARESOLVERR_URL or http://localhost:8191).",
    )
    parser.add_argument(
        "--download-files",
        action="store_true",
        default=None,
        help="Store images embedded in posts (default: DOWNLOAD_FILES).",
    )
    parser.add_argument(
        "--test-mode",
        action="store_true",
        default=None,
        help="Apply MAX_* caps from the environment to bound the run.",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=None,
        metavar="SECS",
        help="Minimum seconds between requests (default: DELAY_BETWEEN_REQUESTS/1000)",
    )
    parser.add_argument("--reset", action="store_true", help="Reset crawl state before starting.")
    parser.add_argument("--yes", "-y", action="store_true", help="Do not prompt; take the default answer.")
    parser.add_argument("--status", action="store_true", help="Print stored counts and checkpoint, then exit.")
    parser.add_argument("--no-progress", action="store_true", help="Disable the post progress bar.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging.")
    parser.add_argument("--log-file", default=None, metavar="PATH", help="Also write the log to PATH.")
    return parser


def print_status(db) -> None:
    from forumcrawl.checkpoint import CheckpointStore
    from forumcrawl.storage import File, Post, Subforum, Thread, User

    state = CheckpointStore(db).load()
    print(f"Subforums: {db.count(Subforum)}", file=sys.stderr)
    print(f"Threads:   {db.count(Thread)}", file=sys.stderr)
    print(f"Posts:     {db.count(Post)}", file=sys.stderr)
    print(f"Users:     {db.count(User)}", file=sys.stderr)
    print(f"Files:     {db.count(File)}", file=sys.stderr)
    print(f"State:     {state.phase.value}", file=sys.stderr)
    if state.subforum_url:
        print(f"  Subforum: {state.subforum_url}", file=sys.stderr)
    if state.thread_url:
        print(f"  Thread:   {state.thread_url}", file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    check_required()

    from forumcrawl.config import Config, Limits
    from forumcrawl.errors import BypassError, ConfigError, FetchFailure
    from forumcrawl.flaresolverr import DEFAULT_FLARESOLVERR_URL, BypassSession
    from forumcrawl.pipeline import CrawlEngine, accept_defaults
    from forumcrawl.storage import Database

    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.log_file)

    try:
        config = Config.from_env()
        if args.test_mode:
            config = config.with_overrides(test_mode=True, limits=Limits.from_env(os.environ))
    except ConfigError as e:
        parser.error(str(e))
    config = config.with_overrides(
        forum_url=args.forum_url,
        database_path=args.db,
        download_files=args.download_files,
        request_delay=args.delay,
    )
    # FlareSolverr: --flaresolverr [URL] or FLARESOLVERR_URL env
    if args.flaresolverr is not None:
        config = config.with_overrides(
            flaresolverr_url=args.flaresolverr.strip() or config.flaresolverr_url or DEFAULT_FLARESOLVERR_URL
        )

    config.ensure_database_dir()
    db = Database(config.database_url)
    db.setup()
    if args.status:
        print_status(db)
        db.close()
        return 0

    if not config.forum_url:
        db.close()
        parser.error("A forum URL is required (--forum-url or FORUM_URL).")

    bypass: BypassSession | None = None
    engine: CrawlEngine | None = None
    try:
        if config.flaresolverr_url:
            bypass = BypassSession(
                config.flaresolverr_url, timeout_ms=int(config.request_timeout * 1000) * 2
            )
            bypass.create()
        engine = CrawlEngine(
            config,
            db,
            bypass=bypass,
            confirm=accept_defaults if args.yes else ask,
            progress=not args.no_progress,
        )
        engine.run(reset=args.reset)
        return 0
    except KeyboardInterrupt:
        logger.warning("Interrupted; closing database.")
        return 130
    except BypassError as e:
        logger.error("Bypass session failed: %s", e)
        return 1
    except FetchFailure as e:
        logger.error("Fatal fetch failure (%s): %s", e.kind.value, e)
        return 1
    except Exception:
        logger.exception("Fatal error")
        return 1
    finally:
        if engine is not None:
            engine.close()
        if bypass is not None:
            bypass.destroy()
            bypass.close()
        db.close()


if __name__ == "__main__":
    sys.exit(main())
