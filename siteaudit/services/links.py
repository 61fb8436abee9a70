"""URL normalization, link extraction and HTML metadata helpers."""

from __future__ import annotations

from email.utils import parsedate_to_datetime
from urllib.parse import unquote, urldefrag, urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup

from siteaudit.services.database import to_iso

RESOURCE_EXTENSIONS: dict[str, tuple[str, ...]] = {
    "pdf": (".pdf",),
    "document": (".doc", ".docx", ".odt", ".rtf", ".txt"),
    "spreadsheet": (".xls", ".xlsx", ".csv", ".ods"),
    "presentation": (".ppt", ".pptx", ".odp"),
    "archive": (".zip", ".rar", ".7z", ".tar", ".gz"),
    "image": (".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico"),
}

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")

_SKIPPED_SCHEMES = ("mailto:", "tel:", "javascript:", "data:")


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "lxml")


def normalize_url(url: str) -> str:
    """
    Canonical form used as the queue key.

    Drops the fragment, lowercases scheme and host and strips one trailing
    slash (so ``https://example.com/`` and ``https://example.com`` collapse).
    """
    url, _ = urldefrag(url.strip())
    parsed = urlparse(url)
    normalized = urlunparse(
        (
            parsed.scheme.lower(),
            parsed.netloc.lower(),
            parsed.path,
            parsed.params,
            parsed.query,
            "",
        )
    )
    if normalized.endswith("/"):
        normalized = normalized[:-1]
    return normalized


def host_variants(*urls: str) -> set[str]:
    """Hostnames considered same-site, including www/non-www variants."""
    hosts: set[str] = set()
    for url in urls:
        hostname = (urlparse(url).hostname or "").lower()
        if not hostname:
            continue
        hosts.add(hostname)
        if hostname.startswith("www."):
            hosts.add(hostname[4:])
        else:
            hosts.add(f"www.{hostname}")
    return hosts


def is_homepage(url: str) -> bool:
    return urlparse(url).path in ("", "/")


def extract_links(html: str, page_url: str, allowed_hosts: set[str]) -> list[str]:
    """
    Extract same-site links from ``<a href>`` elements.

    Relative links resolve against ``page_url`` (the final URL after
    redirects). Returns normalized URLs in document order without duplicates.
    """
    soup = parse_html(html)
    links: dict[str, None] = {}

    for anchor in soup.find_all("a", href=True):
        href = str(anchor["href"]).strip()
        if not href or href.startswith("#") or href.lower().startswith(_SKIPPED_SCHEMES):
            continue
        try:
            absolute = urljoin(page_url, href)
            parsed = urlparse(absolute)
        except ValueError:
            continue
        if parsed.scheme not in ("http", "https"):
            continue
        if (parsed.hostname or "").lower() not in allowed_hosts:
            continue
        links[normalize_url(absolute)] = None

    return list(links)


def resource_type_for(url: str) -> str | None:
    """Map a URL's file extension to a resource type, or None for pages."""
    path = urlparse(url).path.lower()
    for resource_type, extensions in RESOURCE_EXTENSIONS.items():
        if path.endswith(extensions):
            return resource_type
    return None


def resource_title(url: str) -> str | None:
    """Resources have no <title>, so the decoded filename stands in."""
    filename = urlparse(url).path.rsplit("/", 1)[-1]
    return unquote(filename) if filename else None


def is_html_content_type(content_type: str | None) -> bool:
    if not content_type:
        # Servers that omit the header almost always serve HTML
        return True
    return content_type.split(";")[0].strip().lower() in HTML_CONTENT_TYPES


def parse_last_modified(header: str | None) -> str | None:
    """Convert an HTTP Last-Modified header to ISO-8601, or None if unparseable."""
    if not header:
        return None
    try:
        return to_iso(parsedate_to_datetime(header))
    except (TypeError, ValueError):
        return None


def extract_metadata(soup: BeautifulSoup) -> tuple[str | None, str | None]:
    """Return (title, meta description), each stripped or None."""
    title = None
    if soup.title is not None:
        title = soup.title.get_text().strip() or None

    description = None
    meta = soup.find("meta", attrs={"name": "description"})
    if meta is not None and meta.get("content"):
        description = str(meta["content"]).strip() or None

    return title, description
