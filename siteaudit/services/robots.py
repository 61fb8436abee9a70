"""robots.txt loading and enforcement."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from urllib.parse import urlparse
from urllib.robotparser import RobotFileParser

import httpx

logger = logging.getLogger(__name__)


def robots_url_for(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}/robots.txt"


@dataclass
class RobotsPolicy:
    """Parsed robots.txt for one origin. A missing file allows everything."""

    user_agent: str
    content: str | None = None
    status_code: int | None = None
    _parser: RobotFileParser | None = field(default=None, repr=False)

    @classmethod
    def from_text(cls, text: str, user_agent: str, status_code: int = 200) -> RobotsPolicy:
        parser = RobotFileParser()
        parser.parse(text.splitlines())
        return cls(user_agent=user_agent, content=text, status_code=status_code, _parser=parser)

    @classmethod
    async def load(cls, client: httpx.AsyncClient, site_url: str, user_agent: str) -> RobotsPolicy:
        """Fetch and parse robots.txt; network failures fall back to allow-all."""
        robots_url = robots_url_for(site_url)
        try:
            response = await client.get(robots_url, timeout=10.0)
        except httpx.HTTPError as e:
            logger.info(f"Could not fetch {robots_url}: {e}")
            return cls(user_agent=user_agent)

        if response.status_code != 200:
            return cls(user_agent=user_agent, status_code=response.status_code)
        return cls.from_text(response.text, user_agent, response.status_code)

    def can_fetch(self, url: str) -> bool:
        if self._parser is None:
            return True
        return self._parser.can_fetch(self.user_agent, url)

    def blocks_agent(self, agent: str, path: str = "/") -> bool:
        """True if ``agent`` may not fetch ``path`` under these rules."""
        if self._parser is None:
            return False
        return not self._parser.can_fetch(agent, path)

    @property
    def sitemaps(self) -> list[str]:
        if self._parser is None:
            return []
        return list(self._parser.site_maps() or [])

    @property
    def crawl_delay(self) -> float | None:
        if self._parser is None:
            return None
        delay = self._parser.crawl_delay(self.user_agent)
        return float(delay) if delay else None
