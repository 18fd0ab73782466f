"""Link unfurling: validate, fetch, extract."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from urllib.parse import urlparse, urlunparse

from linkpeek.extract import extract_metadata
from linkpeek.fetch import ALLOWED_SCHEMES, SafeFetcher, UnfurlFetchError, valid_hostname
from linkpeek.safety import SSRFError

logger = logging.getLogger(__name__)


class UnfurlValidationError(ValueError):
    """Raised for bad caller input. The message is safe to show verbatim."""


@dataclass(frozen=True, slots=True)
class UnfurlResult:
    title: str | None
    description: str | None
    image_url: str | None
    site_name: str | None
    url: str

    def to_dict(self) -> dict[str, str | None]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class Unfurled:
    result: UnfurlResult


@dataclass(frozen=True, slots=True)
class ValidationFailed:
    message: str


@dataclass(frozen=True, slots=True)
class SSRFBlocked:
    reason: str


@dataclass(frozen=True, slots=True)
class FetchFailed:
    message: str


UnfurlOutcome = Unfurled | ValidationFailed | SSRFBlocked | FetchFailed


def validate_url(raw: object) -> str:
    """Validate a user-supplied URL and return it normalized."""
    if not raw or not isinstance(raw, str):
        raise UnfurlValidationError("URL is required.")

    trimmed = raw.strip()
    if not trimmed:
        raise UnfurlValidationError("URL is required.")

    try:
        parsed = urlparse(trimmed)
        hostname = parsed.hostname
        parsed.port  # raises ValueError on a malformed port
    except ValueError as exc:
        raise UnfurlValidationError("Invalid URL format.") from exc

    if not parsed.scheme:
        raise UnfurlValidationError("Invalid URL format.")
    scheme = parsed.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise UnfurlValidationError("Only http and https URLs are allowed.")
    if not hostname or not valid_hostname(hostname):
        raise UnfurlValidationError("Invalid URL format.")

    return urlunparse(parsed._replace(scheme=scheme, path=parsed.path or "/"))


class UnfurlEngine:
    """Single entry point for turning a raw URL into preview metadata."""

    def __init__(self, fetcher: SafeFetcher | None = None) -> None:
        self.fetcher = fetcher or SafeFetcher()

    async def unfurl(self, raw_url: object) -> UnfurlResult:
        """Unfurl ``raw_url``.

        Raises UnfurlValidationError before any network access, then
        SSRFError or UnfurlFetchError if the fetch is aborted. The returned
        ``url`` is the one actually fetched, after redirects.
        """
        url = validate_url(raw_url)
        fetched = await self.fetcher.fetch(url)
        metadata = extract_metadata(fetched.body, fetched.final_url)
        return UnfurlResult(
            title=metadata.title,
            description=metadata.description,
            image_url=metadata.image_url,
            site_name=metadata.site_name,
            url=fetched.final_url,
        )

    async def attempt(self, raw_url: object) -> UnfurlOutcome:
        """Like ``unfurl`` but maps the expected failures to outcome variants."""
        try:
            result = await self.unfurl(raw_url)
        except UnfurlValidationError as exc:
            return ValidationFailed(message=str(exc))
        except SSRFError as exc:
            logger.warning("Unfurl blocked for %r: %s", raw_url, exc)
            return SSRFBlocked(reason=str(exc))
        except UnfurlFetchError as exc:
            logger.info("Unfurl failed for %r: %s", raw_url, exc)
            return FetchFailed(message=str(exc))
        return Unfurled(result=result)
