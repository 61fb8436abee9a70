"""Command line entry point: run a site audit inline and print JSON."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys

from dotenv import load_dotenv

from siteaudit.config.settings import get_config
from siteaudit.core.coordinator import AuditCoordinator
from siteaudit.errors.exceptions import AuditError, ValidationError
from siteaudit.services.crawl_queue import CrawlQueue
from siteaudit.services.store import AuditStore
from siteaudit.services.validators import validate_url


def build_coordinator(max_pages: int | None = None) -> AuditCoordinator:
    """Coordinator for inline runs, optionally with a lower page cap."""
    config = get_config()
    if max_pages is not None:
        if max_pages < 1:
            raise ValidationError("--max-pages must be at least 1")
        config = dataclasses.replace(config, max_pages_per_audit=max_pages)
    return AuditCoordinator(
        AuditStore.get_instance(config.db_path),
        CrawlQueue.get_instance(config.db_path),
        config=config,
        notifier=lambda audit_id, event: None,
    )


def _fail(message: str) -> None:
    print(json.dumps({"status": "failed", "error": message}))
    sys.exit(1)


def main() -> None:
    """Run a site audit to completion and output the snapshot as JSON."""
    parser = argparse.ArgumentParser(description="Site audit CLI tool")
    parser.add_argument("url", nargs="?", help="Site URL to audit")
    parser.add_argument(
        "--validate-only",
        action="store_true",
        help="Validate the URL without running the audit",
    )
    parser.add_argument(
        "--max-pages",
        type=int,
        default=None,
        help="Maximum pages to crawl (default: MAX_PAGES_PER_AUDIT)",
    )

    args = parser.parse_args()

    # Logs go to stderr so stdout stays valid JSON
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        load_dotenv()

        if not args.url:
            raise ValidationError("URL is required")

        if args.validate_only:
            validated_url = validate_url(args.url)
            print(
                json.dumps(
                    {
                        "status": "success",
                        "message": "Validation successful",
                        "validated_url": validated_url,
                    }
                )
            )
            return

        coordinator = build_coordinator(args.max_pages)
        snapshot = asyncio.run(coordinator.run_to_completion(args.url))
        print(snapshot.to_response().model_dump_json(indent=2, exclude_none=True))
        if snapshot.audit.error_message:
            sys.exit(1)

    except ValidationError as e:
        _fail(f"Validation error: {e}")
    except AuditError as e:
        _fail(str(e))
    except Exception as e:
        _fail(f"Unexpected error: {e}")


if __name__ == "__main__":
    main()
