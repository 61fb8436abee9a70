"""Static registry of check definitions."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from functools import cached_property
from typing import Any, Union

import httpx
from bs4 import BeautifulSoup

from siteaudit.errors.exceptions import CheckRegistrationError
from siteaudit.schemas.common import CheckCategory, CheckPriority, CheckStatus
from siteaudit.services.database import utc_now
from siteaudit.services.links import parse_html
from siteaudit.services.store import Page

# Timeout for auxiliary requests made by site-wide checks
AUX_TIMEOUT = 5.0


@dataclass
class CheckOutcome:
    """What a check returns: a status plus a structured detail payload."""

    status: CheckStatus
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def passed(cls, message: str | None = None, **details: Any) -> CheckOutcome:
        return cls(CheckStatus.PASSED, _details(message, details))

    @classmethod
    def warning(cls, message: str, **details: Any) -> CheckOutcome:
        return cls(CheckStatus.WARNING, _details(message, details))

    @classmethod
    def failed(cls, message: str, **details: Any) -> CheckOutcome:
        return cls(CheckStatus.FAILED, _details(message, details))


def _details(message: str | None, extra: dict[str, Any]) -> dict[str, Any]:
    if message is None:
        return extra
    return {"message": message, **extra}


@dataclass
class CheckContext:
    """
    Input to a check.

    Page checks see the page's URL and HTML. Site-wide checks see the
    homepage and use ``client`` for auxiliary requests. ``all_pages`` holds
    every page recorded so far.
    """

    url: str
    html: str = ""
    all_pages: list[Page] = field(default_factory=list)
    title: str | None = None
    meta_description: str | None = None
    status_code: int | None = None
    client: httpx.AsyncClient | None = None
    now: datetime = field(default_factory=utc_now)

    @cached_property
    def soup(self) -> BeautifulSoup:
        """Parsed HTML shared by the checks of one page. Do not mutate."""
        return parse_html(self.html)

    @property
    def http(self) -> httpx.AsyncClient:
        if self.client is None:
            raise RuntimeError("This check needs an HTTP client in its context")
        return self.client


CheckFn = Callable[[CheckContext], Union[CheckOutcome, Awaitable[CheckOutcome]]]


@dataclass(frozen=True)
class CheckDefinition:
    name: str
    category: CheckCategory
    priority: CheckPriority
    description: str
    run: CheckFn
    site_wide: bool = False
    # Result may change over time for the same input (certificates, freshness)
    time_variant: bool = False


class CheckRegistry:
    """Ordered collection of check definitions, looked up by name."""

    def __init__(self) -> None:
        self._checks: dict[str, CheckDefinition] = {}

    def add(self, definition: CheckDefinition) -> CheckDefinition:
        if not definition.name:
            raise CheckRegistrationError("Check name must be non-empty")
        if definition.name in self._checks:
            raise CheckRegistrationError(f"Check {definition.name!r} is already registered")
        self._checks[definition.name] = definition
        return definition

    def register(
        self,
        name: str,
        *,
        category: CheckCategory,
        priority: CheckPriority,
        description: str,
        site_wide: bool = False,
        time_variant: bool = False,
    ) -> Callable[[CheckFn], CheckFn]:
        """Decorator registering a check function under ``name``."""

        def decorator(fn: CheckFn) -> CheckFn:
            self.add(
                CheckDefinition(
                    name=name,
                    category=category,
                    priority=priority,
                    description=description,
                    run=fn,
                    site_wide=site_wide,
                    time_variant=time_variant,
                )
            )
            return fn

        return decorator

    def get(self, name: str) -> CheckDefinition | None:
        return self._checks.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._checks

    def __iter__(self) -> Iterator[CheckDefinition]:
        return iter(self._checks.values())

    def __len__(self) -> int:
        return len(self._checks)

    def page_checks(self) -> list[CheckDefinition]:
        return [check for check in self if not check.site_wide]

    def site_checks(self) -> list[CheckDefinition]:
        return [check for check in self if check.site_wide]


registry = CheckRegistry()
