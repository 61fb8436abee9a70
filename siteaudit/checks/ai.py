"""AI-readiness checks: can language-model crawlers read and understand the site."""

from __future__ import annotations

import json
import re
import time
from datetime import UTC, datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from siteaudit.checks.registry import AUX_TIMEOUT, CheckContext, CheckOutcome, registry
from siteaudit.schemas.common import CheckCategory, CheckPriority
from siteaudit.services.database import parse_timestamp
from siteaudit.services.links import is_homepage, parse_html
from siteaudit.services.robots import RobotsPolicy, robots_url_for

AI_CRAWLERS = ("GPTBot", "PerplexityBot", "ClaudeBot", "ChatGPT-User", "Anthropic-AI")
STALE_CONTENT_DAYS = 90
SLOW_RESPONSE_MS = 5000
FAST_RESPONSE_MS = 2000
MARKDOWN_PATHS = ("/llms-full.txt", "/README.md", "/docs.md", "/about.md", "/index.md")
ORGANIZATION_TYPES = {"Organization", "LocalBusiness", "Corporation"}
ORGANIZATION_FIELDS = ("name", "url", "logo", "description")

SPA_SELECTORS = (
    "#root",
    "#__next",
    "[data-reactroot]",
    "#app",
    "[ng-app]",
    "[data-ng-app]",
    "app-root",
)
MAIN_CONTENT_SELECTORS = "main, article, [role=main], .content, #content, .post, .article"


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def _json_ld_items(soup: BeautifulSoup) -> list[dict[str, Any]]:
    """Flatten all JSON-LD blocks (including @graph members) into a list of objects."""
    items: list[dict[str, Any]] = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(script.get_text())
        except (json.JSONDecodeError, TypeError):
            continue
        candidates = data if isinstance(data, list) else [data]
        for candidate in candidates:
            if not isinstance(candidate, dict):
                continue
            graph = candidate.get("@graph")
            if isinstance(graph, list):
                items.extend(item for item in graph if isinstance(item, dict))
            else:
                items.append(candidate)
    return items


def _types_of(item: dict[str, Any]) -> list[str]:
    value = item.get("@type")
    if isinstance(value, list):
        return [str(v) for v in value]
    return [str(value)] if value else []


# === Page checks ===


@registry.register(
    "js_rendered_content",
    category=CheckCategory.AI_READINESS,
    priority=CheckPriority.CRITICAL,
    description="AI crawlers cannot execute JavaScript, so content must be in the initial HTML",
)
def js_rendered_content(context: CheckContext) -> CheckOutcome:
    script_count = len(context.soup.find_all("script"))
    is_spa = any(context.soup.select_one(selector) for selector in SPA_SELECTORS)

    # Separate tree: boilerplate is stripped before counting words
    soup = parse_html(context.html)
    for tag in soup.find_all(["script", "style", "noscript", "nav", "header", "footer"]):
        tag.decompose()
    body = soup.body or soup
    word_count = len(body.get_text(" ").split())
    paragraph_count = len(soup.find_all("p"))
    heading_count = len(soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]))

    if word_count >= 100 and (paragraph_count >= 2 or heading_count >= 1):
        return CheckOutcome.passed(
            f"Page has {word_count} words of server-rendered content.",
            word_count=word_count,
            paragraph_count=paragraph_count,
        )
    if is_spa and word_count < 50:
        return CheckOutcome.failed(
            f"Page appears to be a JavaScript SPA with only {word_count} words in initial HTML. "
            "Implement server-side rendering or static generation.",
            word_count=word_count,
            is_spa=True,
        )
    if word_count < 50 and script_count > 10:
        return CheckOutcome.failed(
            f"Page has only {word_count} words but {script_count} script tags. "
            "Content may be rendered by JavaScript.",
            word_count=word_count,
            script_count=script_count,
        )
    if word_count < 100:
        return CheckOutcome.warning(
            f"Page has only {word_count} words in initial HTML.",
            word_count=word_count,
            has_main_content=bool(soup.select_one(MAIN_CONTENT_SELECTORS)),
        )
    return CheckOutcome.passed(
        f"Page has {word_count} words of server-rendered content.", word_count=word_count
    )


# === Site-wide checks ===


@registry.register(
    "ai_crawlers_blocked",
    category=CheckCategory.AI_READINESS,
    priority=CheckPriority.CRITICAL,
    description="robots.txt should not block AI crawlers like GPTBot or ClaudeBot",
    site_wide=True,
)
async def ai_crawlers_blocked(context: CheckContext) -> CheckOutcome:
    try:
        response = await context.http.get(robots_url_for(context.url), timeout=AUX_TIMEOUT)
    except httpx.HTTPError:
        return CheckOutcome.passed("robots.txt not reachable; AI crawlers are not blocked")
    if response.status_code != 200:
        return CheckOutcome.passed("No robots.txt; AI crawlers are not blocked")

    policy = RobotsPolicy.from_text(response.text, user_agent="*")
    blocked = [bot for bot in AI_CRAWLERS if policy.blocks_agent(bot)]
    if blocked:
        return CheckOutcome.failed(f"AI crawlers blocked: {', '.join(blocked)}", blocked=blocked)
    return CheckOutcome.passed("AI crawlers are allowed by robots.txt")


@registry.register(
    "missing_llms_txt",
    category=CheckCategory.AI_READINESS,
    priority=CheckPriority.CRITICAL,
    description="/llms.txt describes the site for language models",
    site_wide=True,
)
async def missing_llms_txt(context: CheckContext) -> CheckOutcome:
    llms_url = f"{_origin(context.url)}/llms.txt"
    try:
        response = await context.http.head(llms_url, timeout=AUX_TIMEOUT)
        if response.status_code == 200:
            return CheckOutcome.passed("Found at /llms.txt", url=llms_url)
    except httpx.HTTPError:
        pass
    return CheckOutcome.failed(
        "Create a /llms.txt file to help AI assistants understand your site.", url=llms_url
    )


@registry.register(
    "missing_markdown",
    category=CheckCategory.AI_READINESS,
    priority=CheckPriority.OPTIONAL,
    description="Markdown versions of pages improve AI crawler accessibility",
    site_wide=True,
)
async def missing_markdown(context: CheckContext) -> CheckOutcome:
    origin = _origin(context.url)
    found: list[str] = []

    for path in MARKDOWN_PATHS:
        try:
            response = await context.http.head(f"{origin}{path}", timeout=AUX_TIMEOUT)
        except httpx.HTTPError:
            continue
        if response.status_code == 200:
            found.append(path)

    pages = [p for p in context.all_pages if not p.is_resource and not is_homepage(p.url)]
    for page in pages[:10]:
        md_url = f"{page.url.rstrip('/')}.md"
        try:
            response = await context.http.head(md_url, timeout=AUX_TIMEOUT)
        except httpx.HTTPError:
            continue
        content_type = response.headers.get("content-type", "")
        if response.status_code == 200 and any(
            kind in content_type for kind in ("text/markdown", "text/plain", "text/x-markdown")
        ):
            found.append(md_url)

    if not found:
        return CheckOutcome.failed(
            "No markdown alternatives found. Consider providing /llms-full.txt "
            "or .md versions of key pages."
        )
    return CheckOutcome.passed(
        f"Found {len(found)} markdown endpoint{'' if len(found) == 1 else 's'}",
        endpoints=found,
    )


@registry.register(
    "missing_organization_schema",
    category=CheckCategory.AI_READINESS,
    priority=CheckPriority.RECOMMENDED,
    description="Organization schema helps AI understand the business identity",
    site_wide=True,
)
def missing_organization_schema(context: CheckContext) -> CheckOutcome:
    for item in _json_ld_items(context.soup):
        if ORGANIZATION_TYPES.intersection(_types_of(item)):
            missing = [name for name in ORGANIZATION_FIELDS if not item.get(name)]
            if missing:
                return CheckOutcome.warning(
                    "Organization schema found but missing recommended fields: "
                    f"{', '.join(missing)}.",
                    missing_fields=missing,
                )
            return CheckOutcome.passed(
                f"Organization schema found: {item.get('name')}", name=item.get("name")
            )

    return CheckOutcome.failed(
        "No Organization schema found on homepage. Add JSON-LD structured data "
        "describing your business.",
        suggested_url=_origin(context.url),
    )


@registry.register(
    "missing_structured_data",
    category=CheckCategory.AI_READINESS,
    priority=CheckPriority.CRITICAL,
    description="JSON-LD structured data on the homepage",
    site_wide=True,
)
def missing_structured_data(context: CheckContext) -> CheckOutcome:
    scripts = context.soup.find_all("script", attrs={"type": "application/ld+json"})
    if not scripts:
        return CheckOutcome.failed(
            "Add JSON-LD structured data to help search engines and AI understand your content."
        )
    types = sorted({t for item in _json_ld_items(context.soup) for t in _types_of(item)})
    if types:
        return CheckOutcome.passed(f"Found: {', '.join(types)}", types=types)
    return CheckOutcome.passed("JSON-LD structured data found")


def _parse_date(value: str) -> datetime | None:
    value = value.strip()
    try:
        return parse_timestamp(value.replace("Z", "+00:00"))
    except ValueError:
        pass
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


@registry.register(
    "no_recent_updates",
    category=CheckCategory.AI_READINESS,
    priority=CheckPriority.RECOMMENDED,
    description="Sites without recent updates may be deprioritized (depends on the current date)",
    site_wide=True,
    time_variant=True,
)
async def no_recent_updates(context: CheckContext) -> CheckOutcome:
    dates = [
        parsed
        for page in context.all_pages
        if page.last_modified and (parsed := _parse_date(page.last_modified)) is not None
    ]

    try:
        response = await context.http.get(f"{_origin(context.url)}/sitemap.xml", timeout=AUX_TIMEOUT)
        if response.status_code == 200:
            for match in re.findall(r"<lastmod>([^<]+)</lastmod>", response.text, re.IGNORECASE):
                parsed = _parse_date(match)
                if parsed is not None:
                    dates.append(parsed)
    except httpx.HTTPError:
        pass

    if not dates:
        return CheckOutcome.warning(
            "Unable to determine content freshness. No Last-Modified headers or "
            "sitemap lastmod dates found."
        )

    most_recent = max(dates)
    days = (context.now - most_recent).days
    if most_recent < context.now - timedelta(days=STALE_CONTENT_DAYS):
        return CheckOutcome.failed(
            f"No content updates in {days} days (threshold: {STALE_CONTENT_DAYS} days).",
            days_since_update=days,
            last_update=most_recent.isoformat(),
        )
    return CheckOutcome.passed(
        f"Content updated {days} day{'' if days == 1 else 's'} ago",
        days_since_update=days,
        last_update=most_recent.isoformat(),
    )


@registry.register(
    "slow_page_response",
    category=CheckCategory.AI_READINESS,
    priority=CheckPriority.CRITICAL,
    description="AI crawlers time out on slow pages (measured live)",
    site_wide=True,
    time_variant=True,
)
async def slow_page_response(context: CheckContext) -> CheckOutcome:
    started = time.perf_counter()
    try:
        await context.http.get(_origin(context.url), timeout=10.0)
    except httpx.TimeoutException:
        return CheckOutcome.failed("Homepage did not respond within 10 seconds.")
    except httpx.HTTPError as e:
        return CheckOutcome.failed(f"Homepage request failed: {e}", error=str(e))
    elapsed_ms = round((time.perf_counter() - started) * 1000)

    seconds = f"{elapsed_ms / 1000:.2f}"
    if elapsed_ms <= FAST_RESPONSE_MS:
        return CheckOutcome.passed(
            f"Homepage responds in {seconds}s.", response_time_ms=elapsed_ms
        )
    if elapsed_ms <= SLOW_RESPONSE_MS:
        return CheckOutcome.warning(
            f"Homepage responds in {seconds}s. AI crawlers prefer responses under 2s.",
            response_time_ms=elapsed_ms,
        )
    return CheckOutcome.failed(
        f"Homepage responds in {seconds}s. AI crawlers may time out.",
        response_time_ms=elapsed_ms,
    )
