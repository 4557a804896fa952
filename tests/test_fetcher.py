"""Tests for the rate-limited, retrying fetcher."""

import json
import unittest
from types import SimpleNamespace

import httpx

from forumcrawl.dedup import DedupStore
from forumcrawl.errors import ErrorKind, FetchError, FetchFailure
from forumcrawl.fetcher import Fetcher, RateLimiter, filename_from_url
from forumcrawl.flaresolverr import BypassSession

URL = "https://forum.test/page"


class FakeClock:
    """Monotonic clock that only moves when sleep() is called."""

    def __init__(self):
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_fetcher(handler, clock=None, **kwargs) -> Fetcher:
    clock = clock or FakeClock()
    kwargs.setdefault("min_interval", 0.0)
    kwargs.setdefault("retry_delay", 5.0)
    return Fetcher(
        transport=httpx.MockTransport(handler),
        sleep=clock.sleep,
        clock=clock,
        **kwargs,
    )


class TestRateLimiter(unittest.TestCase):

    def test_first_call_does_not_sleep(self):
        clock = FakeClock()
        RateLimiter(2.0, clock=clock, sleep=clock.sleep).wait()
        self.assertEqual(clock.sleeps, [])

    def test_sleeps_remaining_delta(self):
        clock = FakeClock()
        limiter = RateLimiter(2.0, clock=clock, sleep=clock.sleep)
        limiter.wait()
        clock.now += 0.5
        limiter.wait()
        self.assertEqual(clock.sleeps, [1.5])

    def test_no_sleep_when_interval_already_elapsed(self):
        clock = FakeClock()
        limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)
        limiter.wait()
        clock.now += 3
        limiter.wait()
        self.assertEqual(clock.sleeps, [])


class TestFetcherRetries(unittest.TestCase):

    def test_retry_exhaustion_performs_exactly_max_retries_attempts(self):
        calls = []

        def handler(request):
            calls.append(str(request.url))
            return httpx.Response(500, text="oops")

        clock = FakeClock()
        fetcher = make_fetcher(handler, clock, max_retries=3)
        with self.assertRaises(FetchFailure) as ctx:
            fetcher.fetch(URL)
        err = ctx.exception
        self.assertEqual(len(calls), 3)
        self.assertEqual(err.kind, ErrorKind.HTTP)
        self.assertEqual(err.status, 500)
        self.assertEqual(err.attempts, 3)
        self.assertIn("status: 500", err.message)
        # Linear backoff: retry_delay * attempt, none after the last attempt.
        self.assertEqual(clock.sleeps, [5.0, 10.0])

    def test_network_error_kind(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with self.assertRaises(FetchFailure) as ctx:
            make_fetcher(handler, max_retries=2).fetch(URL)
        self.assertEqual(ctx.exception.kind, ErrorKind.NETWORK)
        self.assertIn("connection refused", ctx.exception.message)

    def test_empty_body_is_retried(self):
        responses = [httpx.Response(200, text=""), httpx.Response(200, text="<html>ok</html>")]

        def handler(request):
            return responses.pop(0)

        clock = FakeClock()
        self.assertEqual(make_fetcher(handler, clock).fetch(URL), "<html>ok</html>")
        self.assertEqual(clock.sleeps, [5.0])

    def test_empty_body_exhaustion_kind(self):
        with self.assertRaises(FetchFailure) as ctx:
            make_fetcher(lambda r: httpx.Response(200, text=""), max_retries=1).fetch(URL)
        self.assertEqual(ctx.exception.kind, ErrorKind.EMPTY)

    def test_recovers_after_transient_failure(self):
        responses = [httpx.Response(503), httpx.Response(200, text="fine")]
        fetcher = make_fetcher(lambda r: responses.pop(0))
        self.assertEqual(fetcher.fetch(URL), "fine")
        self.assertEqual(fetcher.requests, 2)

    def test_max_retries_must_be_positive(self):
        with self.assertRaises(ValueError):
            Fetcher(max_retries=0)


class TestFetcherDedupAndRate(unittest.TestCase):

    def _store(self, marked=()):
        keys = set(marked)
        return DedupStore("test", lookup=lambda k: k in keys, insert=lambda k: keys.add(k), load=lambda: keys)

    def test_already_scraped_url_makes_no_request(self):
        calls = []
        fetcher = make_fetcher(lambda r: calls.append(r) or httpx.Response(200, text="x"))
        fetcher.scraped = self._store([URL])
        self.assertEqual(fetcher.fetch(URL), "")
        self.assertEqual(calls, [])

    def test_should_mark_scraped_false_ignores_markers(self):
        fetcher = make_fetcher(lambda r: httpx.Response(200, text="index"))
        fetcher.scraped = self._store([URL])
        self.assertEqual(fetcher.fetch(URL, should_mark_scraped=False), "index")

    def test_fetch_does_not_mark(self):
        store = self._store()
        fetcher = make_fetcher(lambda r: httpx.Response(200, text="x"))
        fetcher.scraped = store
        fetcher.fetch(URL)
        self.assertFalse(store.is_marked(URL))

    def test_rate_floor_between_request_starts(self):
        clock = FakeClock()
        starts = []

        def handler(request):
            starts.append(clock())
            clock.now += 0.1  # the request itself takes a little time
            return httpx.Response(200, text="x")

        fetcher = make_fetcher(handler, clock, min_interval=1.5)
        for i in range(5):
            fetcher.fetch(f"{URL}/{i}")
        gaps = [b - a for a, b in zip(starts, starts[1:])]
        self.assertEqual(len(gaps), 4)
        for gap in gaps:
            self.assertGreaterEqual(gap, 1.5 - 1e-9)


class TestFetcherBypass(unittest.TestCase):

    def test_pages_are_relayed_through_bypass_with_headers(self):
        payloads = []

        def solver(request):
            payloads.append(json.loads(request.content))
            return httpx.Response(200, json={"status": "ok", "solution": {"status": 200, "response": "<p>proxied</p>"}})

        bypass = BypassSession("http://solver.test:8191", transport=httpx.MockTransport(solver))
        bypass.session_id = "s"
        self.addCleanup(bypass.close)
        fetcher = make_fetcher(lambda r: self.fail("direct request made"), bypass=bypass, headers={"X-Test": "1"})
        self.assertEqual(fetcher.fetch(URL), "<p>proxied</p>")
        (payload,) = payloads
        self.assertEqual((payload["cmd"], payload["url"], payload["session"]), ("request.get", URL, "s"))
        self.assertEqual(payload["headers"]["X-Test"], "1")
        self.assertIn("User-Agent", payload["headers"])

    def test_bypass_failures_follow_retry_rules(self):
        def relay(url, headers=None):
            raise FetchError(ErrorKind.HTTP, "FlareSolverr error: challenge failed", url=url)

        clock = FakeClock()
        fetcher = make_fetcher(lambda r: None, clock, bypass=SimpleNamespace(relay=relay), max_retries=2)
        with self.assertRaises(FetchFailure) as ctx:
            fetcher.fetch(URL)
        self.assertEqual(ctx.exception.kind, ErrorKind.HTTP)
        self.assertIn("challenge failed", ctx.exception.message)
        self.assertEqual(clock.sleeps, [5.0])

    def test_binary_download_replays_bypass_identity(self):
        seen = {}

        def handler(request):
            seen["ua"] = request.headers.get("user-agent")
            seen["cookie"] = request.headers.get("cookie")
            return httpx.Response(200, content=b"GIF89a", headers={"content-type": "image/gif; charset=binary"})

        bypass = SimpleNamespace(user_agent="SolverUA/1.0", cookies={"cf_clearance": "abc"})
        data, content_type = make_fetcher(handler, bypass=bypass).fetch_binary("https://forum.test/a.gif")
        self.assertEqual(data, b"GIF89a")
        self.assertEqual(content_type, "image/gif")
        self.assertEqual(seen["ua"], "SolverUA/1.0")
        self.assertIn("cf_clearance=abc", seen["cookie"])

    def test_binary_download_failure(self):
        fetcher = make_fetcher(lambda r: httpx.Response(404), max_retries=2)
        with self.assertRaises(FetchFailure) as ctx:
            fetcher.fetch_binary("https://forum.test/missing.png")
        self.assertEqual(ctx.exception.status, 404)
        self.assertEqual(fetcher.requests, 2)


class TestFilenameFromUrl(unittest.TestCase):

    def test_filename(self):
        self.assertEqual(filename_from_url("https://f.test/img/a%20b.png?x=1", "fb"), "a b.png")
        self.assertEqual(filename_from_url("https://f.test/", "fb"), "fb")


if __name__ == "__main__":
    unittest.main()
