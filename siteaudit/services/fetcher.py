"""Bounded page fetcher built on httpx."""

from __future__ import annotations

import logging
import ssl
import time
from dataclasses import dataclass
from types import TracebackType

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from siteaudit.config.settings import DEFAULT_USER_AGENT, Config
from siteaudit.errors.exceptions import FetchError
from siteaudit.services.links import (
    extract_metadata,
    is_html_content_type,
    normalize_url,
    parse_html,
    parse_last_modified,
    resource_title,
    resource_type_for,
)

logger = logging.getLogger(__name__)

# Errors worth a second attempt; everything else is recorded immediately
TRANSIENT_ERRORS = (httpx.TimeoutException, httpx.RemoteProtocolError)

_CONTENT_TYPE_RESOURCES = {
    "application/pdf": "pdf",
    "application/zip": "archive",
    "application/gzip": "archive",
    "text/csv": "spreadsheet",
    "text/plain": "document",
}


@dataclass
class FetchResult:
    """Outcome of one GET. Never raised; failures are carried in ``error``."""

    url: str
    final_url: str
    status_code: int | None = None
    html: str | None = None
    content_type: str | None = None
    title: str | None = None
    meta_description: str | None = None
    last_modified: str | None = None
    is_resource: bool = False
    resource_type: str | None = None
    redirect_hops: int = 0
    elapsed_ms: int = 0
    error: str | None = None
    used_relaxed_ssl: bool = False


def _resource_type_from_content_type(content_type: str | None) -> str:
    mime = (content_type or "").split(";")[0].strip().lower()
    if mime.startswith("image/"):
        return "image"
    return _CONTENT_TYPE_RESOURCES.get(mime, "other")


def _is_ssl_error(error: Exception) -> bool:
    if isinstance(error.__cause__, ssl.SSLError) or isinstance(error.__context__, ssl.SSLError):
        return True
    message = str(error).lower()
    return "certificate" in message or "ssl" in message or "tls" in message


class PageFetcher:
    """
    Performs single bounded GET requests for the crawler.

    Only HTML bodies are downloaded (up to ``max_bytes``). Other content
    types are recorded as resources without reading the body. On a
    certificate failure the request is retried once with verification
    disabled and every later fetch keeps using the relaxed client.
    """

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 30.0,
        max_bytes: int = 5 * 1024 * 1024,
        relaxed_ssl: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.user_agent = user_agent
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.relaxed_ssl = relaxed_ssl
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._relaxed_client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        relaxed_ssl: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> PageFetcher:
        return cls(
            user_agent=config.user_agent,
            timeout=config.fetch_timeout,
            max_bytes=config.fetch_max_bytes,
            relaxed_ssl=relaxed_ssl,
            transport=transport,
        )

    def _build_client(self, verify: bool) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"User-Agent": self.user_agent},
            timeout=self.timeout,
            follow_redirects=True,
            verify=verify,
            transport=self._transport,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        """Client for auxiliary requests (robots.txt, site-wide checks)."""
        if self.relaxed_ssl:
            return self._get_relaxed_client()
        if self._client is None:
            self._client = self._build_client(verify=True)
        return self._client

    def _get_relaxed_client(self) -> httpx.AsyncClient:
        if self._relaxed_client is None:
            self._relaxed_client = self._build_client(verify=False)
        return self._relaxed_client

    async def aclose(self) -> None:
        for client in (self._client, self._relaxed_client):
            if client is not None:
                await client.aclose()
        self._client = None
        self._relaxed_client = None

    async def __aenter__(self) -> PageFetcher:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def fetch(self, url: str) -> FetchResult:
        """Fetch ``url``; transport failures come back as an errored result."""
        started = time.perf_counter()
        try:
            try:
                result = await self._get(self.client, url)
            except httpx.ConnectError as e:
                if self.relaxed_ssl or not _is_ssl_error(e):
                    raise
                logger.warning(f"SSL error for {url}, retrying with relaxed verification")
                self.relaxed_ssl = True
                result = await self._get(self._get_relaxed_client(), url)
        except (httpx.HTTPError, FetchError) as e:
            logger.warning(f"Failed to fetch {url}: {e}")
            return FetchResult(
                url=url,
                final_url=url,
                error=str(e) or type(e).__name__,
                elapsed_ms=int((time.perf_counter() - started) * 1000),
                used_relaxed_ssl=self.relaxed_ssl,
            )

        result.elapsed_ms = int((time.perf_counter() - started) * 1000)
        result.used_relaxed_ssl = self.relaxed_ssl
        return result

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        reraise=True,
    )
    async def _get(self, client: httpx.AsyncClient, url: str) -> FetchResult:
        async with client.stream("GET", url) as response:
            final_url = normalize_url(str(response.url))
            content_type = response.headers.get("content-type")
            resource_type = resource_type_for(final_url) or resource_type_for(url)
            result = FetchResult(
                url=url,
                final_url=final_url,
                status_code=response.status_code,
                content_type=content_type,
                last_modified=parse_last_modified(response.headers.get("last-modified")),
                redirect_hops=len(response.history),
            )

            if resource_type is None and is_html_content_type(content_type):
                body = bytearray()
                async for chunk in response.aiter_bytes():
                    body.extend(chunk)
                    if len(body) >= self.max_bytes:
                        logger.warning(f"Truncated {url} at {self.max_bytes} bytes")
                        break
                encoding = response.charset_encoding or "utf-8"
                try:
                    result.html = bytes(body[: self.max_bytes]).decode(encoding, errors="replace")
                except LookupError as e:
                    raise FetchError(f"Unknown charset {encoding!r} for {url}") from e
                result.title, result.meta_description = extract_metadata(parse_html(result.html))
            else:
                result.is_resource = True
                result.resource_type = resource_type or _resource_type_from_content_type(
                    content_type
                )
                result.title = resource_title(final_url)

        return result
