#!/usr/bin/env python3
"""Check the SMTP configuration used for capsule delivery.

Usage examples:
    # Connect and authenticate only
    python scripts/check_email.py

    # Also send a test email
    python scripts/check_email.py --send-to someone@example.com
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from timecapsule.config import settings
from timecapsule.delivery.email_channel import EmailChannel


async def check(send_to: str | None) -> int:
    channel = EmailChannel()
    errors = channel.validate_config()
    if errors:
        for error in errors:
            print(f"ERROR: {error}", file=sys.stderr)
        return 1

    print(f"Verifying {settings.smtp_host}:{settings.smtp_port} as {settings.smtp_user}...")
    if not await channel.verify():
        print("ERROR: SMTP verification failed (see log above)", file=sys.stderr)
        return 1
    print("SMTP configuration is valid")

    if send_to:
        result = await channel.send_test(send_to)
        if not result.ok:
            print(f"ERROR: test email failed: {result.error}", file=sys.stderr)
            return 1
        print(f"Test email sent to {send_to} (message id {result.message_id})")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Check capsule email delivery configuration")
    parser.add_argument("--send-to", help="Address to send a test email to")
    args = parser.parse_args()

    logging.basicConfig(format="%(levelname)s - %(message)s", level=logging.INFO)
    sys.exit(asyncio.run(check(args.send_to)))


if __name__ == "__main__":
    main()
