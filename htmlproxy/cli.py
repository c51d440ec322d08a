"""Command-line fetch of a single page.

Usage:
    htmlproxy https://example.com
    htmlproxy https://example.com --wait-for-selector "#content" --timeout-ms 45000
    python -m htmlproxy.cli https://example.com -v

The rendered HTML goes to stdout; logs and errors go to stderr.
"""

import argparse
import asyncio
import logging
import sys

from htmlproxy.config import settings
from htmlproxy.core.exceptions import FetchError
from htmlproxy.core.logging_config import configure_logging
from htmlproxy.schemas.fetch import FetchRequest
from htmlproxy.services.orchestrator import FetchOrchestrator, LifecycleMode


async def _fetch(args) -> int:
    orchestrator = FetchOrchestrator.from_settings(settings, mode=LifecycleMode.EPHEMERAL)
    request = FetchRequest(
        target_url=args.url,
        wait_selector=args.wait_for_selector,
        timeout_ms=args.timeout_ms,
    )
    try:
        result = await orchestrator.submit(request)
    except FetchError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    finally:
        await orchestrator.shutdown()

    if not result.ok:
        print(f"Error: {result.message}", file=sys.stderr)
        return 1

    sys.stdout.write(result.html)
    if not result.html.endswith("\n"):
        sys.stdout.write("\n")
    return 0


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="htmlproxy",
        description="Fetch a URL in a real browser and print the rendered HTML",
    )
    parser.add_argument("url", nargs="?", help="Absolute http(s) URL to fetch")
    parser.add_argument("--wait-for-selector", default=None, help="CSS selector to wait for")
    parser.add_argument(
        "--timeout-ms", type=int, default=None,
        help="Overall timeout in milliseconds (default: per-site setting)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)
    if not args.url:
        print("Error: URL parameter is required", file=sys.stderr)
        sys.exit(1)

    configure_logging(
        log_format="text",
        log_level="DEBUG" if args.verbose else "WARNING",
        stream=sys.stderr,
    )
    logging.getLogger(__name__).debug(f"Fetching {args.url}")

    sys.exit(asyncio.run(_fetch(args)))


if __name__ == "__main__":
    main()
