"""Pytest fixtures for site audit tests."""

from __future__ import annotations

import os
from collections.abc import Generator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
import pytest

from siteaudit.config.settings import Config, get_config, reset_config
from siteaudit.core.coordinator import AuditCoordinator
from siteaudit.services.concurrency import ConcurrencyManager
from siteaudit.services.crawl_queue import CrawlQueue
from siteaudit.services.store import AuditStore
from siteaudit.services.websocket import WebSocketManager

SITE = "http://example.com"

LONG_DESCRIPTION = (
    "Example Corp builds reliable widgets for teams of every size. Browse our catalogue, "
    "read the engineering blog and get in touch with our friendly support team today."
)
PARAGRAPH = " ".join(["Widgets help teams ship faster with fewer defects every week."] * 4)


def html_page(
    title: str | None,
    body: str = "",
    description: str | None = LONG_DESCRIPTION,
    head: str = "",
) -> str:
    """Build a small, well-formed HTML document."""
    parts = ['<html><head><meta name="viewport" content="width=device-width, initial-scale=1">']
    if title is not None:
        parts.append(f"<title>{title}</title>")
    if description is not None:
        parts.append(f'<meta name="description" content="{description}">')
    parts.append(head)
    parts.append(f"</head><body>{body}</body></html>")
    return "".join(parts)


@dataclass
class FakeResponse:
    status: int = 200
    body: str = ""
    headers: dict[str, str] = field(default_factory=lambda: {"content-type": "text/html"})


class FakeSite:
    """
    In-memory website served through httpx.MockTransport.

    Routes are keyed by path and ignore scheme and host. Unknown paths are 404.
    """

    def __init__(self, routes: dict[str, FakeResponse] | None = None):
        self.routes: dict[str, FakeResponse] = dict(routes or {})
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handle)

    def add(self, path: str, body: str = "", status: int = 200, **headers: str) -> None:
        merged = {"content-type": "text/html"}
        merged.update({k.replace("_", "-"): v for k, v in headers.items()})
        self.routes[path] = FakeResponse(status, body, merged)

    def redirect(self, path: str, location: str, status: int = 301) -> None:
        self.routes[path] = FakeResponse(status, "", {"location": location})

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, text="Not found", headers={"content-type": "text/plain"})
        body = "" if request.method == "HEAD" else route.body
        return httpx.Response(route.status, text=body, headers=route.headers)

    def get_paths(self) -> list[str]:
        """Paths requested with GET, in order."""
        return [r.url.path for r in self.requests if r.method == "GET"]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, follow_redirects=True)


class RecordingExecutor:
    """Executor that records hand-offs instead of scheduling tasks."""

    def __init__(self) -> None:
        self.submitted: list[tuple[str, Any]] = []

    def submit(self, audit_id: str, job: Any = None) -> None:
        self.submitted.append((audit_id, job))

    @property
    def audit_ids(self) -> list[str]:
        return [audit_id for audit_id, _ in self.submitted]


@pytest.fixture(autouse=True, scope="function")
def reset_singletons(tmp_path: Path) -> Generator[None]:
    """Reset all singleton instances for each test."""
    os.environ["AUDIT_DB_PATH"] = str(tmp_path / "audits.db")
    os.environ["CRAWL_DELAY_SECONDS"] = "0"

    reset_config()
    AuditStore.reset_instance()
    CrawlQueue.reset_instance()
    ConcurrencyManager.reset_instance()
    AuditCoordinator.reset_instance()
    WebSocketManager.get_instance().connections.clear()

    yield

    reset_config()
    AuditStore.reset_instance()
    CrawlQueue.reset_instance()
    ConcurrencyManager.reset_instance()
    AuditCoordinator.reset_instance()
    WebSocketManager.get_instance().connections.clear()


@pytest.fixture
def config() -> Config:
    return get_config()


@pytest.fixture
def store() -> AuditStore:
    return AuditStore.get_instance()


@pytest.fixture
def queue() -> CrawlQueue:
    return CrawlQueue.get_instance()


@pytest.fixture
def fake_site() -> FakeSite:
    """
    A small site: homepage, about, blog post, a broken link, a PDF, a
    redirect to an already linked page and a robots-disallowed path.
    """
    site = FakeSite()
    site.add(
        "/",
        html_page(
            "Example Corp - Widgets",
            f"<h1>Widgets</h1><p>{PARAGRAPH}</p><p>{PARAGRAPH}</p>"
            '<a href="/about">About</a> <a href="/blog/widget-guide">Guide</a> '
            '<a href="/missing">Missing</a> <a href="/files/catalogue.pdf">PDF</a> '
            '<a href="/old-about">Old about</a> <a href="/private/admin">Admin</a> '
            '<a href="https://other.org/page">External</a> <a href="mailto:hi@example.com">Mail</a>',
            head='<script type="application/ld+json">'
            '{"@type": "Organization", "name": "Example Corp", "url": "http://example.com", '
            '"logo": "http://example.com/logo.png", "description": "Widgets"}</script>',
        ),
    )
    site.add(
        "/about",
        html_page("About Example Corp", f"<h1>About us</h1><p>{PARAGRAPH}</p><p>{PARAGRAPH}</p>"),
    )
    site.add(
        "/blog/widget-guide",
        html_page(
            "The Widget Guide",
            f"<h1>Widget guide</h1><p>{PARAGRAPH}</p><p>{PARAGRAPH}</p><a href='/'>Home</a>",
        ),
    )
    site.add("/files/catalogue.pdf", "%PDF-1.4", content_type="application/pdf")
    site.redirect("/old-about", "/about")
    site.add(
        "/robots.txt",
        "User-agent: *\nDisallow: /private\nSitemap: http://example.com/sitemap.xml\n",
        content_type="text/plain",
    )
    site.add(
        "/sitemap.xml",
        "<urlset><url><loc>http://example.com/</loc><lastmod>2026-10-01</lastmod></url></urlset>",
        content_type="application/xml",
    )
    site.add("/llms.txt", "# Example Corp", content_type="text/plain")
    return site


@pytest.fixture
def executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest.fixture
def events() -> list[tuple[str, dict[str, Any]]]:
    return []


@pytest.fixture
def coordinator(
    store: AuditStore,
    queue: CrawlQueue,
    config: Config,
    executor: RecordingExecutor,
    fake_site: FakeSite,
    events: list[tuple[str, dict[str, Any]]],
) -> AuditCoordinator:
    """Coordinator wired to the fake site, with batches handed to a recorder."""
    return AuditCoordinator(
        store,
        queue,
        config=config,
        executor=executor,
        transport=fake_site.transport,
        notifier=lambda audit_id, event: events.append((audit_id, event)),
    )
