#!/usr/bin/env python3
"""
Dev helper: send a signed test notification to the local Mailhook backend.

Builds an inbound email notification, signs the exact JSON bytes with
HMAC-SHA256, and POSTs them to /api/webhooks/inbound.

Usage
-----
# Basic: one delivery to support@acme.test on localhost:8000
python scripts/send_test_webhook.py

# Send the same delivery three times to watch deduplication
python scripts/send_test_webhook.py --id evt_123 --repeat 3

# Route to a different mailbox
python scripts/send_test_webhook.py --to sales@acme.test

# Print payload and signature without sending
python scripts/send_test_webhook.py --dry-run

Environment / .env
------------------
WEBHOOK_SIGNING_SECRET   Shared HMAC secret (required unless --secret is given).
"""

import argparse
import json
import os
import sys
import textwrap
import uuid
from datetime import datetime, timezone
from pathlib import Path

import httpx
from dotenv import load_dotenv

from mailhook.services.signature import compute_signature


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------

def build_payload(
    delivery_id: str,
    to_address: str,
    from_email: str,
    subject: str,
    with_attachment: bool = False,
) -> dict:
    """Build an inbound email notification body."""
    payload = {
        "id": delivery_id,
        "to": to_address,
        "from": from_email,
        "subject": subject,
        "text": "This is a test message sent by scripts/send_test_webhook.py.",
        "attachments": [],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if with_attachment:
        payload["attachments"].append(
            {
                "filename": "invoice.pdf",
                "content_type": "application/pdf",
                "size": 48213,
                "url": f"https://files.example.test/{delivery_id}/invoice.pdf",
            }
        )
    return payload


# ---------------------------------------------------------------------------
# Pretty printer
# ---------------------------------------------------------------------------

def _print_response(attempt: int, response: httpx.Response) -> None:
    status = response.status_code
    symbol = "OK" if 200 <= status < 300 else "FAIL"
    print(f"\n[{symbol}] attempt {attempt}: HTTP {status}")
    try:
        print(json.dumps(response.json(), indent=2))
    except ValueError:
        print(response.text)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> int:
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")
    load_dotenv(project_root / "backend" / ".env")

    parser = argparse.ArgumentParser(
        prog="send_test_webhook.py",
        description="Send a signed test notification to the Mailhook backend.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python scripts/send_test_webhook.py
              python scripts/send_test_webhook.py --id evt_123 --repeat 3
              python scripts/send_test_webhook.py --to sales@acme.test
        """),
    )
    parser.add_argument("--url", default="http://localhost:8000",
                        help="Backend base URL (default: http://localhost:8000)")
    parser.add_argument("--id", dest="delivery_id", default=None,
                        help="Delivery id (default: a fresh evt_<uuid>)")
    parser.add_argument("--to", dest="to_address", default="support@acme.test",
                        help="Destination address (default: support@acme.test)")
    parser.add_argument("--from", dest="from_email", default="customer@example.com",
                        help="Sender address (default: customer@example.com)")
    parser.add_argument("--subject", default="Test notification",
                        help='Subject (default: "Test notification")')
    parser.add_argument("--attachment", action="store_true",
                        help="Include an attachment descriptor.")
    parser.add_argument("--repeat", type=int, default=1,
                        help="Send the identical delivery N times (default: 1)")
    parser.add_argument("--secret", default=None,
                        help="Override WEBHOOK_SIGNING_SECRET.")
    parser.add_argument("--dry-run", action="store_true",
                        help="Print the payload and signature without sending.")

    args = parser.parse_args(argv)

    secret = args.secret or os.getenv("WEBHOOK_SIGNING_SECRET", "")
    if not secret:
        print(
            "ERROR: No webhook secret found.\n"
            "Set WEBHOOK_SIGNING_SECRET in your environment or .env file, "
            "or pass --secret.",
            file=sys.stderr,
        )
        return 1

    payload = build_payload(
        delivery_id=args.delivery_id or f"evt_{uuid.uuid4().hex}",
        to_address=args.to_address,
        from_email=args.from_email,
        subject=args.subject,
        with_attachment=args.attachment,
    )
    # Sign and send the same bytes; re-encoding would change the signature.
    body = json.dumps(payload).encode()
    signature = compute_signature(body, secret)
    endpoint = f"{args.url.rstrip('/')}/api/webhooks/inbound"

    print(f"Endpoint  : {endpoint}")
    print(f"Delivery  : {payload['id']}")
    print(f"To        : {payload['to']}")
    print(f"Signature : {signature}")

    if args.dry_run:
        print("\n[DRY RUN] Payload:")
        print(json.dumps(payload, indent=2))
        return 0

    headers = {"Content-Type": "application/json", "X-Signature": signature}
    failed = False
    try:
        for attempt in range(1, max(args.repeat, 1) + 1):
            response = httpx.post(endpoint, content=body, headers=headers, timeout=30)
            _print_response(attempt, response)
            failed = failed or not response.is_success
    except httpx.ConnectError:
        print(
            f"\nERROR: Could not connect to {endpoint}\n"
            "Is the backend running? Start it with:\n"
            "  uvicorn mailhook.main:app --reload",
            file=sys.stderr,
        )
        return 1

    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
