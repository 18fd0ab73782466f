"""Bounded HTTP fetching with per-hop SSRF validation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urljoin, urlparse

import httpx

from linkpeek.config import Settings
from linkpeek.safety import HostGuard

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"http", "https"}
REDIRECT_STATUSES = {301, 302, 303, 307, 308}
HTML_CONTENT_TYPES = ("text/html", "application/xhtml")
FORBIDDEN_HOST_CHARS = frozenset(" #%/<>?@[\\]^|")


class UnfurlFetchError(RuntimeError):
    """Raised when the remote server or the network misbehaves."""


class FetchState(str, Enum):
    RESOLVING = "resolving"
    CONNECTING = "connecting"
    REDIRECTED = "redirected"
    READING = "reading"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class FetchOutcome:
    body: str
    final_url: str


@dataclass(frozen=True, slots=True)
class _Redirect:
    location: str


class _RedirectReceived(Exception):
    """Carries a raw Location header out of the response hook."""

    def __init__(self, location: str) -> None:
        super().__init__(location)
        self.location = location


async def _intercept_redirect(response: httpx.Response) -> None:
    # Runs before httpx parses Location into next_request, which would
    # reject a malformed target with a generic protocol error.
    location = response.headers.get("location")
    if response.status_code in REDIRECT_STATUSES and location:
        raise _RedirectReceived(location)


class SafeFetcher:
    """Fetches a single HTML page, following redirects by hand.

    Redirects are never followed by the transport. Every hop goes back
    through ``HostGuard`` before a connection is opened, so a public first
    hop cannot bounce the request onto an internal address.
    """

    def __init__(
        self,
        *,
        guard: HostGuard | None = None,
        timeout_s: float = 5.0,
        max_redirects: int = 3,
        max_body_bytes: int = 50 * 1024,
        user_agent: str = "LinkPeek/1.0 bot",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.guard = guard or HostGuard()
        self.timeout_s = timeout_s
        self.max_redirects = max_redirects
        self.max_body_bytes = max_body_bytes
        self.user_agent = user_agent
        self._transport = transport

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> SafeFetcher:
        return cls(
            guard=HostGuard(dns_timeout_s=settings.dns_timeout_s),
            timeout_s=settings.fetch_timeout_s,
            max_redirects=settings.max_redirects,
            max_body_bytes=settings.max_body_bytes,
            user_agent=settings.user_agent,
            transport=transport,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=False,
            timeout=httpx.Timeout(self.timeout_s),
            transport=self._transport,
            headers={"User-Agent": self.user_agent, "Accept": "text/html"},
            event_hooks={"response": [_intercept_redirect]},
        )

    def _enter(self, state: FetchState, url: str) -> None:
        logger.debug("fetch %s: %s", state.value, url)

    async def fetch(self, url: str) -> FetchOutcome:
        """Fetch ``url`` and return the capped body and the final URL reached.

        Raises SSRFError when a hop targets a blocked host and
        UnfurlFetchError for every other failure.
        """
        current_url = url
        redirects = 0
        try:
            _require_allowed_scheme(current_url)
            async with self._client() as client:
                while True:
                    self._enter(FetchState.RESOLVING, current_url)
                    await self.guard.assert_public(urlparse(current_url).hostname or "")

                    self._enter(FetchState.CONNECTING, current_url)
                    hop = await self._timed_hop(client, current_url)
                    if isinstance(hop, FetchOutcome):
                        self._enter(FetchState.DONE, current_url)
                        return hop

                    self._enter(FetchState.REDIRECTED, current_url)
                    redirects += 1
                    if redirects > self.max_redirects:
                        raise UnfurlFetchError("Too many redirects.")
                    current_url = _resolve_redirect(current_url, hop.location)
        except Exception:
            self._enter(FetchState.FAILED, current_url)
            raise

    async def _timed_hop(self, client: httpx.AsyncClient, url: str) -> FetchOutcome | _Redirect:
        # wait_for bounds the whole hop; cancelling it closes the stream.
        try:
            return await asyncio.wait_for(self._hop(client, url), self.timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise UnfurlFetchError("The page took too long to respond.") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise UnfurlFetchError("Could not fetch URL.") from exc

    async def _hop(self, client: httpx.AsyncClient, url: str) -> FetchOutcome | _Redirect:
        try:
            async with client.stream("GET", url) as response:
                return await self._read_page(response, url)
        except _RedirectReceived as redirect:
            return _Redirect(location=redirect.location)

    async def _read_page(self, response: httpx.Response, url: str) -> FetchOutcome:
        if response.status_code in REDIRECT_STATUSES:
            raise UnfurlFetchError("Redirect without location header.")

        if not response.is_success:
            raise UnfurlFetchError("The page returned an error.")

        content_type = response.headers.get("content-type", "").lower()
        if not any(ct in content_type for ct in HTML_CONTENT_TYPES):
            raise UnfurlFetchError("URL does not point to an HTML page.")

        self._enter(FetchState.READING, url)
        raw = await self._read_capped(response)
        return FetchOutcome(body=raw.decode("utf-8", errors="replace"), final_url=url)

    async def _read_capped(self, response: httpx.Response) -> bytes:
        buf = bytearray()
        async for chunk in response.aiter_bytes():
            buf.extend(chunk)
            if len(buf) >= self.max_body_bytes:
                break
        return bytes(buf[: self.max_body_bytes])


def valid_hostname(hostname: str) -> bool:
    """Reject hosts a browser URL parser would refuse, before any DNS lookup."""
    if any(ch in FORBIDDEN_HOST_CHARS or ord(ch) < 0x20 or ord(ch) == 0x7F for ch in hostname):
        return False
    try:
        hostname.encode("idna")
    except UnicodeError:
        return False
    return True


def _require_allowed_scheme(url: str) -> None:
    if urlparse(url).scheme.lower() not in ALLOWED_SCHEMES:
        raise UnfurlFetchError("Could not fetch URL.")


def _resolve_redirect(current_url: str, location: str) -> str:
    try:
        target = urljoin(current_url, location.strip())
        parsed = urlparse(target)
        hostname = parsed.hostname
        parsed.port  # raises ValueError on a malformed port
    except ValueError as exc:
        raise UnfurlFetchError("Invalid redirect URL.") from exc
    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise UnfurlFetchError("Could not fetch URL.")
    if not hostname or not valid_hostname(hostname):
        raise UnfurlFetchError("Invalid redirect URL.")
    return target
