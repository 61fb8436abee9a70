"""SEO checks."""

from __future__ import annotations

import re
from collections import defaultdict
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx

from siteaudit.checks.registry import AUX_TIMEOUT, CheckContext, CheckOutcome, registry
from siteaudit.schemas.common import CheckCategory, CheckPriority
from siteaudit.services.links import normalize_url
from siteaudit.services.robots import RobotsPolicy, robots_url_for

META_DESCRIPTION_MIN = 150
META_DESCRIPTION_MAX = 160
MAX_URL_PATH_LENGTH = 75

STOP_WORDS = frozenset(
    """
    a an the and or but in on at to for of with by is are was were be been being
    have has had do does did will would could should may might must can this that
    these those i you he she it we they what which who when where why how all each
    every both few more most other some such no not only own same so than too very
    just also
    """.split()
)

ID_PATTERNS = (
    re.compile(r"^[0-9]+$"),
    re.compile(r"^[a-f0-9]{8,}$", re.IGNORECASE),
    re.compile(r"^[a-z0-9]{20,}$", re.IGNORECASE),
    re.compile(r"^\d{4}-\d{2}-\d{2}$"),
)


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def _meta_content(context: CheckContext, name: str) -> str | None:
    tag = context.soup.find("meta", attrs={"name": re.compile(f"^{name}$", re.IGNORECASE)})
    if tag is None or not tag.get("content"):
        return None
    return str(tag["content"]).strip() or None


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


# === Page checks ===


@registry.register(
    "missing_title",
    category=CheckCategory.SEO,
    priority=CheckPriority.CRITICAL,
    description="Every page needs a <title> for search result listings",
)
def missing_title(context: CheckContext) -> CheckOutcome:
    title = context.title
    if title is None and context.soup.title is not None:
        title = context.soup.title.get_text().strip() or None
    if not title:
        return CheckOutcome.failed(
            "Page has no <title>. Add a unique, descriptive title of 50-60 characters."
        )
    return CheckOutcome.passed(f"Title: {title}", length=len(title))


@registry.register(
    "missing_meta_description",
    category=CheckCategory.SEO,
    priority=CheckPriority.CRITICAL,
    description="Meta descriptions are used as the snippet in search results",
)
def missing_meta_description(context: CheckContext) -> CheckOutcome:
    description = context.meta_description or _meta_content(context, "description")
    if not description:
        return CheckOutcome.failed(
            "Page has no meta description. Search engines will pick an arbitrary snippet."
        )
    return CheckOutcome.passed("Meta description present", length=len(description))


@registry.register(
    "meta_description_length",
    category=CheckCategory.SEO,
    priority=CheckPriority.RECOMMENDED,
    description="Meta description should be between 150-160 characters",
)
def meta_description_length(context: CheckContext) -> CheckOutcome:
    description = context.meta_description or _meta_content(context, "description")
    if not description:
        # Reported by missing_meta_description
        return CheckOutcome.passed()

    length = len(description)
    if length < META_DESCRIPTION_MIN or length > META_DESCRIPTION_MAX:
        return CheckOutcome.warning(
            f"Meta description is {length} characters "
            f"(recommended: {META_DESCRIPTION_MIN}-{META_DESCRIPTION_MAX})",
            length=length,
        )
    return CheckOutcome.passed(length=length)


@registry.register(
    "heading_hierarchy",
    category=CheckCategory.SEO,
    priority=CheckPriority.RECOMMENDED,
    description="Heading levels should not be skipped",
)
def heading_hierarchy(context: CheckContext) -> CheckOutcome:
    levels = [
        int(tag.name[1]) for tag in context.soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"])
    ]
    if not levels:
        return CheckOutcome.passed()

    skipped: list[str] = []
    previous = 0
    for level in levels:
        if previous > 0 and level > previous + 1:
            skipped.append(f"H{previous} -> H{level}")
        previous = level

    if skipped:
        return CheckOutcome.warning(
            "Headings should follow a logical order (H1 -> H2 -> H3). "
            f"Skipped: {', '.join(skipped)}.",
            skipped_levels=skipped,
        )
    return CheckOutcome.passed("Headings follow correct hierarchy")


@registry.register(
    "canonical_validation",
    category=CheckCategory.SEO,
    priority=CheckPriority.RECOMMENDED,
    description="Canonical URLs should be valid and self-referencing on unique pages",
)
def canonical_validation(context: CheckContext) -> CheckOutcome:
    link = context.soup.find("link", rel="canonical")
    href = str(link.get("href") or "").strip() if link is not None else ""
    if not href:
        return CheckOutcome.passed("No canonical tag")

    try:
        canonical = urljoin(context.url, href)
        parsed = urlparse(canonical)
    except ValueError:
        parsed = None
    if parsed is None or parsed.scheme not in ("http", "https") or not parsed.netloc:
        return CheckOutcome.failed(
            f'Canonical URL is malformed: "{href}". Use absolute URLs for canonical tags.',
            canonical=href,
        )

    if normalize_url(canonical) != normalize_url(context.url):
        return CheckOutcome.warning(
            f"Canonical points to a different URL: {canonical} (current: {context.url}). "
            "Ensure this is intentional for duplicate content.",
            canonical=canonical,
        )
    return CheckOutcome.passed(f"Canonical URL is self-referencing: {canonical}", canonical=canonical)


@registry.register(
    "noindex_on_important_pages",
    category=CheckCategory.SEO,
    priority=CheckPriority.CRITICAL,
    description="Important pages must not carry a noindex directive",
)
def noindex_on_important_pages(context: CheckContext) -> CheckOutcome:
    directives = [
        value
        for value in (_meta_content(context, "robots"), _meta_content(context, "googlebot"))
        if value
    ]
    noindex = next((d for d in directives if "noindex" in d.lower()), None)
    if noindex is None:
        return CheckOutcome.passed("No noindex directives found on this page")

    path = urlparse(context.url).path
    segments = [segment for segment in path.split("/") if segment]
    if len(segments) <= 1:
        return CheckOutcome.failed(
            f"This important page has a noindex directive ({noindex}), preventing search "
            "engines from indexing it.",
            meta_content=noindex,
            path=path or "/",
        )
    return CheckOutcome.warning(
        f"Page has noindex directive ({noindex}). Verify this is intentional.",
        meta_content=noindex,
    )


def _extract_words(text: str) -> list[str]:
    cleaned = re.sub(r"[^a-z0-9\s-]", " ", text.lower())
    return [w for w in re.split(r"[\s-]+", cleaned) if len(w) > 2 and w not in STOP_WORDS]


@registry.register(
    "non_descriptive_url",
    category=CheckCategory.SEO,
    priority=CheckPriority.RECOMMENDED,
    description="URL slugs should be descriptive and relate to page content",
)
def non_descriptive_url(context: CheckContext) -> CheckOutcome:
    segments = [
        re.sub(r"\.[^.]+$", "", segment)
        for segment in urlparse(context.url).path.split("/")
        if segment
    ]
    if not segments:
        return CheckOutcome.passed("Homepage - no URL slug to check")

    slug = segments[-1]
    if any(pattern.match(slug) for pattern in ID_PATTERNS):
        return CheckOutcome.failed(
            f'URL contains ID-like slug "{slug}" instead of descriptive words.',
            slug=slug,
        )

    issues: list[str] = []
    slug_words = _extract_words(slug.replace("-", " "))
    if not slug_words:
        issues.append(f'Slug "{slug}" contains no meaningful keywords')
    if "_" in slug:
        issues.append("URL uses underscores instead of hyphens")
    if slug != slug.lower():
        issues.append("URL contains uppercase characters")

    full_path = "/" + "/".join(segments)
    if len(full_path) > MAX_URL_PATH_LENGTH:
        issues.append(f"URL path is {len(full_path)} characters")

    if context.title and len(slug_words) >= 2:
        title_words = set(_extract_words(context.title))
        if title_words and not title_words.intersection(slug_words):
            issues.append("URL slug words don't appear in page title")

    if issues:
        return CheckOutcome.warning(". ".join(issues), slug=slug, path=full_path)
    return CheckOutcome.passed(f'URL "{slug}" is descriptive and well-formatted')


# === Site-wide checks ===


@registry.register(
    "broken_internal_links",
    category=CheckCategory.SEO,
    priority=CheckPriority.CRITICAL,
    description="Internal links returning 4xx/5xx errors hurt SEO and user experience",
    site_wide=True,
)
def broken_internal_links(context: CheckContext) -> CheckOutcome:
    broken = [
        page
        for page in context.all_pages
        if page.error is not None or (page.status_code is not None and page.status_code >= 400)
    ]
    if not broken:
        return CheckOutcome.passed(
            f"All {len(context.all_pages)} internal pages returned successful status codes",
            total_pages=len(context.all_pages),
        )

    by_status: dict[str, list[str]] = defaultdict(list)
    for page in broken:
        by_status[str(page.status_code) if page.status_code else "unreachable"].append(page.url)
    summary = ", ".join(f"{status}: {_plural(len(urls), 'page')}" for status, urls in by_status.items())

    return CheckOutcome.failed(
        f"Found {_plural(len(broken), 'broken internal link')} ({summary}).",
        broken_count=len(broken),
        broken_urls=[{"url": p.url, "status": p.status_code} for p in broken[:10]],
        by_status=dict(by_status),
    )


def _group_duplicates(pairs: list[tuple[str, str]]) -> list[dict[str, Any]]:
    grouped: dict[str, list[str]] = defaultdict(list)
    for value, url in pairs:
        grouped[value].append(url)
    duplicates = [
        {"value": value, "urls": urls[:5], "count": len(urls)}
        for value, urls in grouped.items()
        if len(urls) > 1
    ]
    duplicates.sort(key=lambda d: (-d["count"], d["value"]))
    return duplicates


@registry.register(
    "duplicate_titles",
    category=CheckCategory.SEO,
    priority=CheckPriority.CRITICAL,
    description="Duplicate page titles confuse search engines",
    site_wide=True,
)
def duplicate_titles(context: CheckContext) -> CheckOutcome:
    pairs = [
        (page.title.strip(), page.url)
        for page in context.all_pages
        if page.title and page.title.strip() and not page.is_resource
    ]
    duplicates = _group_duplicates(pairs)
    if not duplicates:
        return CheckOutcome.passed(
            "All page titles are unique", unique_titles=len({title for title, _ in pairs})
        )

    affected = sum(d["count"] for d in duplicates)
    return CheckOutcome.failed(
        f"Found {_plural(len(duplicates), 'duplicate title')} affecting {affected} pages.",
        duplicate_count=len(duplicates),
        affected_pages=affected,
        duplicates=duplicates[:10],
    )


@registry.register(
    "duplicate_meta_descriptions",
    category=CheckCategory.SEO,
    priority=CheckPriority.RECOMMENDED,
    description="Duplicate meta descriptions reduce click-through rates",
    site_wide=True,
)
def duplicate_meta_descriptions(context: CheckContext) -> CheckOutcome:
    pairs = [
        (page.meta_description.strip(), page.url)
        for page in context.all_pages
        if page.meta_description and page.meta_description.strip() and not page.is_resource
    ]
    duplicates = _group_duplicates(pairs)
    if not duplicates:
        return CheckOutcome.passed("All meta descriptions are unique")

    affected = sum(d["count"] for d in duplicates)
    return CheckOutcome.warning(
        f"Found {_plural(len(duplicates), 'duplicate meta description')} "
        f"affecting {affected} pages.",
        duplicate_count=len(duplicates),
        affected_pages=affected,
        duplicates=duplicates[:10],
    )


@registry.register(
    "redirect_chains",
    category=CheckCategory.SEO,
    priority=CheckPriority.RECOMMENDED,
    description="Redirects should go directly to the final URL",
    site_wide=True,
)
def redirect_chains(context: CheckContext) -> CheckOutcome:
    chains = sorted(
        (page for page in context.all_pages if page.redirect_hops >= 2),
        key=lambda page: (-page.redirect_hops, page.url),
    )
    if not chains:
        return CheckOutcome.passed("No redirect chains found in crawled pages")

    max_hops = chains[0].redirect_hops
    outcome = CheckOutcome.failed if max_hops >= 3 else CheckOutcome.warning
    return outcome(
        f"Found {_plural(len(chains), 'redirect chain')} with up to {max_hops} hops. "
        "Update internal links to point directly to the final URL.",
        chain_count=len(chains),
        max_hops=max_hops,
        longest_chains=[{"url": p.url, "hops": p.redirect_hops} for p in chains[:5]],
    )


@registry.register(
    "http_to_https_redirect",
    category=CheckCategory.SEO,
    priority=CheckPriority.CRITICAL,
    description="The HTTP version should redirect to HTTPS",
    site_wide=True,
)
async def http_to_https_redirect(context: CheckContext) -> CheckOutcome:
    if urlparse(context.url).scheme == "http":
        return CheckOutcome.passed("Site uses HTTP (SSL check handles this separately)")

    http_url = "http://" + context.url.split("://", 1)[1]
    try:
        response = await context.http.head(
            http_url, follow_redirects=False, timeout=AUX_TIMEOUT
        )
    except httpx.HTTPError:
        return CheckOutcome.passed("HTTP version is not accessible (likely server-level block)")

    if response.is_redirect:
        location = response.headers.get("location", "")
        target = urljoin(http_url, location)
        if urlparse(target).scheme == "https":
            return CheckOutcome.passed(
                f"HTTP correctly redirects to HTTPS ({response.status_code} redirect)",
                redirect_status=response.status_code,
                redirect_location=location,
            )
        return CheckOutcome.warning(
            f"HTTP redirects but not to HTTPS. Location: {location}",
            redirect_status=response.status_code,
            redirect_location=location,
        )

    return CheckOutcome.failed(
        "HTTP version is accessible without redirecting to HTTPS "
        f"(returned {response.status_code}). Configure a 301 redirect.",
        http_status=response.status_code,
    )


@registry.register(
    "missing_robots_txt",
    category=CheckCategory.SEO,
    priority=CheckPriority.CRITICAL,
    description="robots.txt controls how search engines crawl the site",
    site_wide=True,
)
async def missing_robots_txt(context: CheckContext) -> CheckOutcome:
    robots_url = robots_url_for(context.url)
    try:
        response = await context.http.get(robots_url, timeout=AUX_TIMEOUT)
    except httpx.HTTPError:
        return CheckOutcome.failed(
            "Could not access robots.txt (connection error).", url=robots_url
        )

    if response.status_code != 200:
        return CheckOutcome.failed(
            f"No robots.txt found (HTTP {response.status_code}).",
            status_code=response.status_code,
        )

    content = response.text
    if not re.search(r"^\s*User-agent:", content, re.IGNORECASE | re.MULTILINE):
        return CheckOutcome.warning(
            "robots.txt exists but has no User-agent directives.", url=robots_url
        )

    has_sitemap = bool(re.search(r"^\s*Sitemap:", content, re.IGNORECASE | re.MULTILINE))
    has_rules = bool(re.search(r"^\s*(Dis)?allow:", content, re.IGNORECASE | re.MULTILINE))
    return CheckOutcome.passed(
        "robots.txt is properly configured",
        url=robots_url,
        has_sitemap=has_sitemap,
        has_crawl_rules=has_rules,
    )


async def _is_reachable(client: httpx.AsyncClient, url: str) -> bool:
    try:
        response = await client.head(url, timeout=AUX_TIMEOUT)
    except httpx.HTTPError:
        return False
    return response.status_code == 200


@registry.register(
    "missing_sitemap",
    category=CheckCategory.SEO,
    priority=CheckPriority.CRITICAL,
    description="An XML sitemap helps search engines discover pages",
    site_wide=True,
)
async def missing_sitemap(context: CheckContext) -> CheckOutcome:
    origin = _origin(context.url)
    candidates = [
        f"{origin}/sitemap.xml",
        f"{origin}/sitemap_index.xml",
        f"{origin}/sitemap/sitemap.xml",
    ]
    for candidate in candidates:
        if await _is_reachable(context.http, candidate):
            return CheckOutcome.passed(f"XML sitemap found at {candidate}", sitemap_url=candidate)

    declared: list[str] = []
    try:
        response = await context.http.get(robots_url_for(context.url), timeout=AUX_TIMEOUT)
        if response.status_code == 200:
            declared = RobotsPolicy.from_text(response.text, user_agent="*").sitemaps
    except httpx.HTTPError:
        pass

    for sitemap_url in declared:
        if await _is_reachable(context.http, sitemap_url):
            return CheckOutcome.passed(
                f"XML sitemap found at {sitemap_url} (declared in robots.txt)",
                sitemap_url=sitemap_url,
            )

    if declared:
        return CheckOutcome.failed(
            f"Sitemap declared in robots.txt ({declared[0]}) but not accessible.",
            declared=declared,
        )
    return CheckOutcome.failed(
        "No XML sitemap found. Create /sitemap.xml and reference it in robots.txt.",
        checked=candidates,
    )
