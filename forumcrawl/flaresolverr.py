"""
FlareSolverr integration: relay page fetches through a named FlareSolverr
session to get past Cloudflare/DDoS-GUARD challenges.

FlareSolverr is a proxy server that solves challenges in a headless browser
and returns the cleared HTML and cookies. See: https://github.com/FlareSolverr/FlareSolverr
"""

from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Mapping

import httpx

from forumcrawl.errors import BypassError, ErrorKind, FetchError

logger = logging.getLogger(__name__)

DEFAULT_FLARESOLVERR_URL = "http://localhost:8191"
DEFAULT_TIMEOUT_MS = 60_000


def get_flaresolverr_url(environ: Mapping[str, str] | None = None) -> str | None:
    """Return FlareSolverr base URL from FLARESOLVERR_URL (or USE_FLARESOLVERR), or None if not set."""
    env = os.environ if environ is None else environ
    url = (env.get("FLARESOLVERR_URL") or env.get("USE_FLARESOLVERR") or "").strip()
    return url or None


class BypassSession:
    """
    One FlareSolverr browser session, reused for every page of a crawl so the
    challenge is solved once. Also remembers the user agent and cookies of the
    last solution so plain downloads can present the same identity.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_FLARESOLVERR_URL,
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_url = base_url.rstrip("/") + "/v1"
        self._timeout_ms = timeout_ms
        self._client = httpx.Client(timeout=timeout_ms / 1000.0 + 30, transport=transport)
        self.session_id: str | None = None
        self.user_agent: str | None = None
        self.cookies: dict[str, str] = {}

    def __enter__(self) -> BypassSession:
        self.create()
        return self

    def __exit__(self, *args: object) -> None:
        self.destroy()
        self.close()

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        resp = self._client.post(self.api_url, json=payload)
        resp.raise_for_status()
        return resp.json()

    def create(self) -> str:
        """Open a session. Any failure is fatal: there is no direct-fetch fallback."""
        session_id = f"forumcrawl-{uuid.uuid4().hex[:12]}"
        try:
            data = self._post({"cmd": "sessions.create", "session": session_id})
        except (httpx.HTTPError, ValueError) as e:
            raise BypassError(f"Could not reach FlareSolverr at {self.api_url}: {e}") from e
        if data.get("status") != "ok":
            msg = data.get("message", "Unknown FlareSolverr error")
            raise BypassError(f"FlareSolverr could not create a session: {msg}")
        self.session_id = data.get("session") or session_id
        logger.info("FlareSolverr session created: %s", self.session_id)
        return self.session_id

    def relay(self, url: str, headers: Mapping[str, str] | None = None) -> str:
        """
        Fetch url through the session and return the page HTML.

        :raises FetchError: network (proxy unreachable), http (FlareSolverr or
            target error status) or empty (no page body).
        """
        if self.session_id is None:
            raise BypassError("FlareSolverr session not created")
        payload: dict[str, Any] = {
            "cmd": "request.get",
            "url": url,
            "session": self.session_id,
            "maxTimeout": self._timeout_ms,
        }
        if headers:
            payload["headers"] = dict(headers)
        try:
            data = self._post(payload)
        except httpx.HTTPStatusError as e:
            raise FetchError(
                ErrorKind.HTTP,
                f"FlareSolverr HTTP error: {e.response.status_code}",
                status=e.response.status_code,
                url=url,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise FetchError(ErrorKind.NETWORK, f"FlareSolverr request failed: {e}", url=url) from e

        if data.get("status") != "ok":
            msg = data.get("message", "Unknown FlareSolverr error")
            raise FetchError(ErrorKind.HTTP, f"FlareSolverr error: {msg}", url=url)

        solution = data.get("solution") or {}
        self._remember_identity(solution)
        status = solution.get("status")
        if isinstance(status, int) and status >= 400:
            raise FetchError(ErrorKind.HTTP, f"HTTP error! status: {status}", status=status, url=url)
        html = solution.get("response")
        if not html:
            raise FetchError(ErrorKind.EMPTY, "Empty response received", url=url)
        return html

    def _remember_identity(self, solution: Mapping[str, Any]) -> None:
        if solution.get("userAgent"):
            self.user_agent = solution["userAgent"]
        for cookie in solution.get("cookies") or []:
            name = cookie.get("name")
            if name:
                self.cookies[name] = cookie.get("value", "")

    def destroy(self) -> None:
        """Best-effort: failures are logged, never raised."""
        if self.session_id is None:
            return
        session_id, self.session_id = self.session_id, None
        try:
            data = self._post({"cmd": "sessions.destroy", "session": session_id})
            if data.get("status") != "ok":
                logger.warning(
                    "FlareSolverr could not destroy session %s: %s",
                    session_id,
                    data.get("message", "unknown error"),
                )
            else:
                logger.info("FlareSolverr session destroyed: %s", session_id)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("FlareSolverr session %s not destroyed: %s", session_id, e)

    def close(self) -> None:
        if not self._client.is_closed:
            self._client.close()
