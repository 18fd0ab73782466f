"""Network safety and SSRF protections."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket

logger = logging.getLogger(__name__)

LOOPBACK_HOSTNAMES = {"localhost", "localhost."}

BLOCKED_IPV4_PREFIXES = ("127.", "10.", "0.", "169.254.", "192.168.")
BLOCKED_IPV6 = {"::1", "::"}
BLOCKED_IPV6_PREFIXES = ("fc", "fd", "fe80")


class SSRFError(Exception):
    """Raised when a host is blocked or cannot be resolved.

    The message is the internal reason and must not be shown to end users.
    """


def _normalize(address: str) -> str:
    address = address.strip()
    try:
        return ipaddress.ip_address(address).compressed.lower()
    except ValueError:
        return address.lower()


def _in_172_range(address: str) -> bool:
    # 172.16.0.0/12 covers 172.16.x.x through 172.31.x.x
    if not address.startswith("172."):
        return False
    second = address.split(".")[1]
    return second.isdigit() and 16 <= int(second) <= 31


def _is_blocked_ipv6(address: str) -> bool:
    if address in BLOCKED_IPV6:
        return True
    return address.startswith(BLOCKED_IPV6_PREFIXES)


def is_private_ip(address: str) -> bool:
    """Return True if ``address`` is loopback, private, link-local or unspecified."""
    # IPv4-mapped IPv6 such as ::ffff:7f00:1 matches no prefix and is not blocked.
    normalized = _normalize(address)
    if _in_172_range(normalized):
        return True
    if normalized.startswith(BLOCKED_IPV4_PREFIXES):
        return True
    return _is_blocked_ipv6(normalized)


class HostGuard:
    """Resolves hostnames and rejects any that point at internal addresses."""

    def __init__(self, dns_timeout_s: float = 5.0) -> None:
        self.dns_timeout_s = dns_timeout_s

    async def resolve(self, hostname: str) -> list[str]:
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
        return [info[4][0] for info in infos]

    async def assert_public(self, hostname: str) -> None:
        """Raise SSRFError unless every address ``hostname`` resolves to is public."""
        hostname = (hostname or "").lower()
        if hostname in LOOPBACK_HOSTNAMES:
            raise SSRFError("Blocked host")
        if not hostname:
            raise SSRFError("DNS resolution failed")

        try:
            addresses = await asyncio.wait_for(self.resolve(hostname), self.dns_timeout_s)
        except (OSError, UnicodeError, asyncio.TimeoutError) as exc:
            raise SSRFError("DNS resolution failed") from exc
        if not addresses:
            raise SSRFError("DNS resolution failed")

        for address in addresses:
            if is_private_ip(address):
                logger.debug("Host %s resolved to blocked address %s", hostname, address)
                raise SSRFError("Blocked host")
