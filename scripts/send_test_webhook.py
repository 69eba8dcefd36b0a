#!/usr/bin/env python3
"""
Dev helper: send a test WhatsApp webhook to the local Textsnap backend.

Builds a Twilio-style form-encoded message webhook and POSTs it to
/api/webhook. The backend replies to --from over WhatsApp, so use your own
number (one that has joined the Twilio sandbox) to see the result.

Usage
-----
# Text-only message: the backend answers with the "send an image" prompt
python scripts/send_test_webhook.py --from whatsapp:+15551234567

# Message with media. The URL must be a real Twilio media resource
# (copy it from a webhook the sandbox sent you), since the backend fetches
# it with your account credentials.
python scripts/send_test_webhook.py --from whatsapp:+15551234567 \\
    --media-url https://api.twilio.com/2010-04-01/Accounts/AC.../Messages/MM.../Media/ME...

# Print the form without sending it
python scripts/send_test_webhook.py --media-url ... --dry-run

Environment / .env
------------------
TEST_WHATSAPP_FROM   Default for --from.

The script loads .env from the project root and from backend/.
"""

import argparse
import json
import os
import sys
import textwrap
import uuid
from pathlib import Path

import httpx
from dotenv import load_dotenv


def _build_form(
    from_number: str,
    to_number: str,
    message_sid: str,
    body: str,
    media_url: str | None,
    media_content_type: str,
) -> dict:
    """
    Build a Twilio WhatsApp message webhook form.

    Only the fields the backend reads are included:
      From, To, MessageSid, Body, NumMedia, MediaUrl0, MediaContentType0
    """
    form = {
        "From": _whatsapp(from_number),
        "To": _whatsapp(to_number),
        "MessageSid": message_sid,
        "Body": body,
        "NumMedia": "1" if media_url else "0",
    }
    if media_url:
        form["MediaUrl0"] = media_url
        form["MediaContentType0"] = media_content_type
    return form


def _whatsapp(number: str) -> str:
    return number if number.startswith("whatsapp:") else f"whatsapp:{number}"


def _print_response(response: httpx.Response) -> None:
    status = response.status_code
    symbol = "OK" if status == 200 else "FAIL"
    print(f"\n[{symbol}] HTTP {status}")
    try:
        print(json.dumps(response.json(), indent=2))
    except ValueError:
        print(response.text)


def main() -> int:
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")
    load_dotenv(project_root / "backend" / ".env")

    parser = argparse.ArgumentParser(
        prog="send_test_webhook.py",
        description="Send a test WhatsApp webhook to the Textsnap backend.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python scripts/send_test_webhook.py --from whatsapp:+15551234567
              python scripts/send_test_webhook.py --media-url https://api.twilio.com/...
              python scripts/send_test_webhook.py --url http://localhost:8000 --dry-run
        """),
    )
    parser.add_argument(
        "--url",
        default="http://localhost:8000",
        help="Backend base URL (default: http://localhost:8000)",
    )
    parser.add_argument(
        "--from",
        dest="from_number",
        default=os.getenv("TEST_WHATSAPP_FROM", "whatsapp:+15551234567"),
        help="Sender address the reply goes to (default: $TEST_WHATSAPP_FROM)",
    )
    parser.add_argument(
        "--to",
        dest="to_number",
        default=os.getenv("TWILIO_PHONE_NUMBER", "+14155238886"),
        help="Business number the message was sent to (default: $TWILIO_PHONE_NUMBER)",
    )
    parser.add_argument(
        "--media-url",
        default=None,
        help="Twilio media resource URL. Omit to send a text-only message.",
    )
    parser.add_argument(
        "--content-type",
        default="image/jpeg",
        help="Declared media content type (default: image/jpeg)",
    )
    parser.add_argument(
        "--message-sid",
        default=None,
        help="Message id. A random MM... id is generated if omitted.",
    )
    parser.add_argument("--body", default="", help="Message text (default: empty)")
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Client timeout in seconds (default: 30)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the form without sending it.",
    )

    args = parser.parse_args()

    message_sid = args.message_sid or f"MM{uuid.uuid4().hex}"
    form = _build_form(
        from_number=args.from_number,
        to_number=args.to_number,
        message_sid=message_sid,
        body=args.body,
        media_url=args.media_url,
        media_content_type=args.content_type,
    )
    endpoint = f"{args.url.rstrip('/')}/api/webhook"

    print(f"Endpoint  : {endpoint}")
    print(f"From      : {form['From']}")
    print(f"MessageSid: {message_sid}")
    print(f"Media     : {args.media_url or '(none)'}")

    if args.dry_run:
        print("\n[DRY RUN] Form:")
        print(json.dumps(form, indent=2))
        return 0

    try:
        response = httpx.post(endpoint, data=form, timeout=args.timeout)
    except httpx.ConnectError:
        print(
            f"\nERROR: Could not connect to {endpoint}\n"
            "Is the backend running? Start it with:\n"
            "  cd backend && uvicorn app.main:app --reload",
            file=sys.stderr,
        )
        return 1
    except httpx.HTTPError as exc:
        print(f"\nERROR: {exc}", file=sys.stderr)
        return 1

    _print_response(response)
    return 0 if response.status_code == 200 else 1


if __name__ == "__main__":
    sys.exit(main())
