"""Open Graph metadata extraction from untrusted HTML."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_DESCRIPTION_LENGTH = 1000
MAX_SITE_NAME_LENGTH = 200
MAX_IMAGE_URL_LENGTH = 2000

_TAG_RE = re.compile(r"<[^>]*>")


@dataclass(frozen=True, slots=True)
class PageMetadata:
    title: str | None = None
    description: str | None = None
    image_url: str | None = None
    site_name: str | None = None


def _strip_tags(text: str) -> str:
    return _TAG_RE.sub("", text).strip()


def _truncate(text: str | None, max_length: int) -> str | None:
    if not text:
        return None
    return text[:max_length]


def _meta(soup: BeautifulSoup, key: str) -> str | None:
    tag = soup.find("meta", attrs={"property": key}) or soup.find("meta", attrs={"name": key})
    content = tag.get("content") if tag else None
    if not isinstance(content, str) or not content:
        return None
    return _strip_tags(content) or None


def _resolve_image(value: str | None, page_url: str) -> str | None:
    if not value or value.lower().startswith("data:"):
        return None
    try:
        resolved = urljoin(page_url, value)
        scheme = urlparse(resolved).scheme
    except ValueError:
        return None
    if scheme.lower() not in {"http", "https"}:
        return None
    return resolved


def _extract(html: str, page_url: str) -> PageMetadata:
    soup = BeautifulSoup(html, "html.parser")

    title = _meta(soup, "og:title")
    if not title and soup.title is not None:
        title = _strip_tags(soup.title.get_text()) or None

    description = _meta(soup, "og:description") or _meta(soup, "description")
    image_url = _resolve_image(_meta(soup, "og:image"), page_url)
    site_name = _meta(soup, "og:site_name")

    return PageMetadata(
        title=_truncate(title, MAX_TITLE_LENGTH),
        description=_truncate(description, MAX_DESCRIPTION_LENGTH),
        image_url=_truncate(image_url, MAX_IMAGE_URL_LENGTH),
        site_name=_truncate(site_name, MAX_SITE_NAME_LENGTH),
    )


def extract_metadata(html: str, page_url: str) -> PageMetadata:
    """Extract preview fields from ``html``.

    Every value is tag-stripped and length-capped. Anything that cannot be
    parsed comes back as ``None``; this function does not raise.
    """
    try:
        return _extract(html, page_url)
    except Exception as exc:  # noqa: BLE001
        logger.debug("metadata extraction failed for %s: %s", page_url, exc)
        return PageMetadata()
