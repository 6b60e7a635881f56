"""Sign a checkout-completed event and POST it to the webhook endpoint.

Useful for manual duplicate-delivery testing: `--copies 5` sends the same
signed event concurrently so only one delivery should commit.
"""

import argparse
import asyncio
import hashlib
import hmac
import json
import time
from pathlib import Path
from uuid import uuid4

import httpx


def sign(payload: str, secret: str, timestamp: int | None = None) -> str:
    """Build a `Stripe-Signature` header value for `payload`."""

    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256)
    return f"t={timestamp},v1={digest.hexdigest()}"


def sample_event(email: str, amount: int, checkout_id: str | None = None) -> dict:
    return {
        "id": f"evt_{uuid4().hex[:24]}",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": checkout_id or f"cs_test_{uuid4().hex[:24]}",
                "payment_intent": f"pi_{uuid4().hex[:24]}",
                "amount_total": amount,
                "currency": "usd",
                "customer_details": {"email": email, "name": "Test Donor"},
                "metadata": {"campaign_id": "spring-drive"},
            }
        },
    }


async def deliver(url: str, body: str, secret: str, copies: int) -> list[int]:
    """Send `copies` identical deliveries at once and return status codes."""

    headers = {"content-type": "application/json", "stripe-signature": sign(body, secret)}
    async with httpx.AsyncClient(timeout=10.0) as client:
        responses = await asyncio.gather(
            *(client.post(url, content=body, headers=headers) for _ in range(copies))
        )
    return [resp.status_code for resp in responses]


def main() -> None:
    """Parse CLI args, sign one payload, and deliver it."""

    parser = argparse.ArgumentParser(description="Send a signed test webhook.")
    parser.add_argument("--url", default="http://localhost:8000/webhooks/stripe")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--file", dest="json_file", default=None, help="Path to JSON event; a sample is used if omitted")
    parser.add_argument("--email", default="donor@example.com")
    parser.add_argument("--amount", type=int, default=500)
    parser.add_argument("--checkout-id", default=None)
    parser.add_argument("--copies", type=int, default=1)
    args = parser.parse_args()

    if args.json_file:
        event = json.loads(Path(args.json_file).read_text())
    else:
        event = sample_event(args.email, args.amount, args.checkout_id)
    body = json.dumps(event)

    codes = asyncio.run(deliver(args.url, body, args.secret, args.copies))
    print(f"event_id={event.get('id')} status_codes={codes}")


if __name__ == "__main__":
    main()
