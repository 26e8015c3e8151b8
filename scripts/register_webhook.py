#!/usr/bin/env python3
"""
Register this receiver's public URL with the remote email API.

Idempotent: an existing registration for the same URL is reused.

Usage
-----
python scripts/register_webhook.py https://hooks.example.com/api/webhooks/inbound
python scripts/register_webhook.py https://... --event email.received --event email.bounced

Environment / .env
------------------
MAIL_API_BASE_URL, MAIL_API_KEY   Remote API location and key (required).
RETRY_MAX_ATTEMPTS, RETRY_BASE_DELAY_SECONDS, RETRY_BACKOFF_MULTIPLIER
"""

import argparse
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from mailhook.services.circuit_breaker import CircuitBreaker, CircuitOpenError
from mailhook.services.mail_api import ApiError, MailApiClient, ensure_webhook_registered
from mailhook.services.retry import RetryExhausted


def main(argv: list[str] | None = None) -> int:
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")
    load_dotenv(project_root / "backend" / ".env")

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    parser = argparse.ArgumentParser(prog="register_webhook.py", description=__doc__.splitlines()[1])
    parser.add_argument("url", help="Public URL of POST /api/webhooks/inbound")
    parser.add_argument("--event", dest="events", action="append", default=None,
                        help="Event type to subscribe to (repeatable; default: email.received)")
    args = parser.parse_args(argv)

    try:
        api = MailApiClient.from_env(breaker=CircuitBreaker("mail-api", failure_threshold=3))
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    try:
        with api:
            hook, created = ensure_webhook_registered(api, args.url, args.events)
    except ApiError as exc:
        print(f"ERROR: remote API rejected the request: {exc}", file=sys.stderr)
        return 1
    except (RetryExhausted, CircuitOpenError) as exc:
        print(f"ERROR: remote API unavailable: {exc}", file=sys.stderr)
        return 1

    print(f"{'Created' if created else 'Existing'} webhook {hook.id} -> {hook.url} ({', '.join(hook.events)})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
