"""URL validation utilities."""

from __future__ import annotations

import re
from urllib.parse import urlparse

from siteaudit.errors.exceptions import ValidationError
from siteaudit.services.links import normalize_url

_IPV4 = re.compile(r"^\d{1,3}(\.\d{1,3}){3}$")
_DOMAIN = re.compile(r"^[a-z0-9.-]+\.[a-z]{2,}$")


def validate_url(url: str) -> str:
    """
    Validate and normalize an audit target URL.

    Returns the normalized URL or raises ValidationError.
    """
    if not url or not url.strip():
        raise ValidationError("URL is required and must be a non-empty string")

    url = url.strip()
    if "://" not in url:
        url = f"https://{url}"

    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError as e:
        raise ValidationError(f"Invalid URL format: {e}") from e

    if parsed.scheme not in ("http", "https"):
        raise ValidationError("URL must use http or https protocol")

    hostname = (parsed.hostname or "").lower()
    if not hostname:
        raise ValidationError("URL must include a valid domain")
    if " " in parsed.netloc:
        raise ValidationError("URL domain appears to be invalid")
    if port is not None and not (1 <= port <= 65535):
        raise ValidationError(f"Port {port} is out of valid range (1-65535)")

    # Allow localhost and bare IPs for development
    if hostname != "localhost" and not _IPV4.match(hostname) and not _DOMAIN.match(hostname):
        raise ValidationError("URL domain format appears invalid")

    return normalize_url(url)
