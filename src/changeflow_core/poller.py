"""
Drive the automation scheduler by calling the sweep endpoint on an interval.

Stands in for an external cron: every N seconds it POSTs to
/automation/sweep with the automation bearer token and logs what happened.

Usage:
    python -m changeflow_core.poller [--interval SECONDS] [--once]

Examples:
    # Single sweep (e.g. from a crontab entry)
    python -m changeflow_core.poller --once

    # Sweep every 30 seconds against a remote API
    python -m changeflow_core.poller --interval 30 --base-url https://changes.example.com/api/v1
"""
import argparse
import logging
import sys
import time
from typing import Optional

import httpx

from .config import get_settings

logger = logging.getLogger("changeflow-core.poller")


def run_sweep(client: httpx.Client) -> Optional[dict]:
    """
    POST one sweep request and log the outcome.

    Args:
        client: httpx client configured with base_url and the bearer header

    Returns:
        Parsed sweep response, or None if the request failed
    """
    try:
        response = client.post("/automation/sweep")
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        logger.error(
            f"Sweep request rejected: {e.response.status_code} {e.response.text}"
        )
        return None
    except httpx.RequestError as e:
        logger.error(f"Sweep request failed ({type(e).__name__}): {e}")
        return None

    body = response.json()
    logger.info(
        f"Sweep done: {body.get('autoStarted', 0)} started, "
        f"{body.get('completionPrompts', 0)} prompt(s), {body.get('skipped', 0)} skipped"
    )
    for error in body.get("errors", []):
        logger.warning(f"  {error}")
    return body


def build_client(base_url: str, token: Optional[str]) -> httpx.Client:
    headers = {}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return httpx.Client(base_url=base_url, timeout=30.0, headers=headers)


def _parse_args(argv=None) -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Trigger automation sweeps against the Changeflow Core API.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=settings.automation_interval_seconds,
        help=f"Seconds between sweeps (default: {settings.automation_interval_seconds}).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit.",
    )
    parser.add_argument(
        "--base-url",
        default=settings.api_base_url,
        help=f"API base URL (default: {settings.api_base_url}).",
    )
    parser.add_argument(
        "--token",
        default=settings.automation_secret,
        help="Automation secret (default: AUTOMATION_SECRET).",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, get_settings().log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )

    if not args.token:
        logger.error("No automation secret configured (set AUTOMATION_SECRET or pass --token)")
        return 2

    if args.interval < 1:
        logger.error("--interval must be at least 1 second")
        return 2

    with build_client(args.base_url, args.token) as client:
        if args.once:
            return 0 if run_sweep(client) is not None else 1

        logger.info(f"Polling {args.base_url}/automation/sweep every {args.interval}s")
        try:
            while True:
                run_sweep(client)
                time.sleep(args.interval)
        except KeyboardInterrupt:
            logger.info("Poller stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
