"""Technical checks: transport security and mobile rendering."""

from __future__ import annotations

import asyncio
import re
import socket
import ssl
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime
from urllib.parse import urlparse

from siteaudit.checks.registry import CheckContext, CheckOutcome, registry
from siteaudit.schemas.common import CheckCategory, CheckPriority

CERT_WARNING_DAYS = 30
CERT_TIMEOUT = 10.0

INSECURE_RESOURCE_SELECTORS = (
    ("img[src]", "src", "image"),
    ("script[src]", "src", "script"),
    ("link[href]", "href", "stylesheet"),
    ("iframe[src]", "src", "iframe"),
    ("video[src]", "src", "video"),
    ("audio[src]", "src", "audio"),
    ("source[src]", "src", "media source"),
    ("object[data]", "data", "object"),
    ("embed[src]", "src", "embed"),
)
_STYLE_HTTP_URL = re.compile(r"url\s*\(\s*['\"]?(http://[^'\")]+)['\"]?\s*\)", re.IGNORECASE)


@dataclass
class CertificateInfo:
    not_after: datetime | None = None
    issuer: str | None = None
    error: str | None = None
    self_signed: bool = False


def _issuer_name(cert: dict) -> str | None:
    fields = dict(pair for rdn in cert.get("issuer", ()) for pair in rdn)
    return fields.get("organizationName") or fields.get("commonName")


def fetch_certificate(hostname: str, port: int = 443, timeout: float = CERT_TIMEOUT) -> CertificateInfo:
    """Handshake with full verification and report what the server presented."""
    context = ssl.create_default_context()
    try:
        with socket.create_connection((hostname, port), timeout=timeout) as sock:
            with context.wrap_socket(sock, server_hostname=hostname) as tls:
                cert = tls.getpeercert() or {}
    except ssl.SSLCertVerificationError as e:
        message = e.verify_message or str(e)
        return CertificateInfo(error=message, self_signed="self-signed" in message.lower())
    except (OSError, ssl.SSLError) as e:
        return CertificateInfo(error=str(e) or type(e).__name__)

    not_after = cert.get("notAfter")
    if not not_after:
        return CertificateInfo(error="No certificate returned")
    return CertificateInfo(
        not_after=datetime.fromtimestamp(ssl.cert_time_to_seconds(not_after), UTC),
        issuer=_issuer_name(cert),
    )


@registry.register(
    "invalid_ssl_certificate",
    category=CheckCategory.TECHNICAL,
    priority=CheckPriority.CRITICAL,
    description="SSL certificate is invalid, expired, or expiring soon",
    site_wide=True,
    time_variant=True,
)
async def invalid_ssl_certificate(context: CheckContext) -> CheckOutcome:
    parsed = urlparse(context.url)
    if parsed.scheme != "https":
        return CheckOutcome.passed("Site uses HTTP, SSL check not applicable")

    info = await asyncio.to_thread(fetch_certificate, parsed.hostname or "", parsed.port or 443)

    if info.self_signed:
        return CheckOutcome.failed(
            "SSL certificate is self-signed. Browsers will show security warnings.",
            error=info.error,
        )
    if info.error or info.not_after is None:
        if info.error and "expired" in info.error.lower():
            return CheckOutcome.failed(f"SSL certificate has expired: {info.error}", error=info.error)
        return CheckOutcome.failed(
            f"Unable to verify SSL certificate: {info.error}", error=info.error
        )

    days = (info.not_after - context.now).days
    if days <= 0:
        return CheckOutcome.failed(
            f"SSL certificate expired on {info.not_after.date().isoformat()}.",
            expired_on=info.not_after.isoformat(),
            issuer=info.issuer,
        )
    if days <= CERT_WARNING_DAYS:
        return CheckOutcome.warning(
            f"SSL certificate expires in {days} day{'' if days == 1 else 's'}. Renew it soon.",
            days_until_expiry=days,
            expires_on=info.not_after.isoformat(),
            issuer=info.issuer,
        )
    return CheckOutcome.passed(
        f"Valid certificate from {info.issuer or 'unknown issuer'}, expires in {days} days",
        days_until_expiry=days,
        issuer=info.issuer,
    )


@registry.register(
    "missing_viewport",
    category=CheckCategory.TECHNICAL,
    priority=CheckPriority.RECOMMENDED,
    description="Pages without viewport meta tag for mobile-friendliness",
)
def missing_viewport(context: CheckContext) -> CheckOutcome:
    tag = context.soup.find("meta", attrs={"name": "viewport"})
    viewport = (tag.get("content") or "").strip() if tag else ""
    if not viewport:
        return CheckOutcome.warning(
            'Add <meta name="viewport" content="width=device-width, initial-scale=1"> '
            "to the <head> for proper mobile display."
        )
    return CheckOutcome.passed(viewport)


@registry.register(
    "mixed_content",
    category=CheckCategory.TECHNICAL,
    priority=CheckPriority.RECOMMENDED,
    description="HTTP resources on HTTPS pages cause security warnings",
)
def mixed_content(context: CheckContext) -> CheckOutcome:
    if urlparse(context.url).scheme != "https":
        return CheckOutcome.passed("Page is served over HTTP (mixed content check not applicable)")

    insecure: list[dict[str, str]] = []
    for selector, attr, kind in INSECURE_RESOURCE_SELECTORS:
        for element in context.soup.select(selector):
            value = (element.get(attr) or "").strip()
            if value.lower().startswith("http://"):
                insecure.append({"type": kind, "url": value})

    for element in context.soup.select("[style]"):
        for match in _STYLE_HTTP_URL.findall(element.get("style") or ""):
            insecure.append({"type": "inline style", "url": match})

    if not insecure:
        return CheckOutcome.passed("All resources loaded securely over HTTPS")

    counts = Counter(item["type"] for item in insecure)
    summary = ", ".join(f"{n} {kind}{'' if n == 1 else 's'}" for kind, n in counts.items())
    total = len(insecure)
    return CheckOutcome.failed(
        f"{total} insecure HTTP resource{'' if total == 1 else 's'} on HTTPS page ({summary}). "
        "Update URLs to HTTPS.",
        count=total,
        resources=insecure[:5],
    )
