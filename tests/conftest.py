from __future__ import annotations

import socket
from typing import Any

import httpx
import pytest

from linkpeek.fetch import SafeFetcher


@pytest.fixture
def fake_dns(monkeypatch: pytest.MonkeyPatch):
    """Answer DNS lookups from a fixed IP or a host -> IP mapping.

    Hosts missing from the mapping fail to resolve. Every looked-up host is
    appended to the returned list.
    """
    lookups: list[str] = []

    def _set(answer: str | dict[str, str]) -> list[str]:
        def _fake_getaddrinfo(host, *args, **kwargs):
            lookups.append(host)
            ip = answer.get(host) if isinstance(answer, dict) else answer
            if ip is None:
                raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")
            family = socket.AF_INET6 if ":" in ip else socket.AF_INET
            return [(family, socket.SOCK_STREAM, 6, "", (ip, 0))]

        monkeypatch.setattr(socket, "getaddrinfo", _fake_getaddrinfo)
        return lookups

    return _set


def html_page(body: str, status: int = 200, content_type: str = "text/html; charset=utf-8"):
    return (status, {"content-type": content_type}, body.encode("utf-8"))


def redirect(location: str | None, status: int = 301):
    headers = {"location": location} if location is not None else {}
    return (status, headers, b"")


def mock_site(routes: dict[str, Any], seen: list[str] | None = None) -> httpx.MockTransport:
    """Serve canned responses keyed by full URL; unknown URLs get a 404."""

    def handler(request: httpx.Request):
        url = str(request.url)
        if seen is not None:
            seen.append(url)
        route = routes.get(url)
        if route is None:
            return httpx.Response(404, headers={"content-type": "text/html"}, content=b"missing")
        if callable(route):
            return route(request)
        status, headers, content = route
        return httpx.Response(status, headers=headers, content=content)

    return httpx.MockTransport(handler)


@pytest.fixture
def make_fetcher():
    def _make(transport: httpx.MockTransport, **kwargs) -> SafeFetcher:
        return SafeFetcher(transport=transport, **kwargs)

    return _make
