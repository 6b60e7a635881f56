"""Webhook authenticity check.

Runs as a FastAPI dependency so an unsigned or tampered body is rejected
before any parsing, and the coordinator is never reached without it.
"""

import stripe
from fastapi import Header, HTTPException, Request, status

from givepay.common.logging import logger


async def verified_webhook_body(
    request: Request,
    stripe_signature: str | None = Header(default=None),
) -> bytes:
    """Return the raw request body once its `Stripe-Signature` header checks out."""

    config = request.app.state.settings
    if not config.stripe_webhook_secret:
        logger.error("webhook rejected: STRIPE_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="webhook secret not configured")
    if not stripe_signature:
        logger.warning("webhook rejected: missing Stripe-Signature header")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="missing signature")

    body = await request.body()
    try:
        stripe.WebhookSignature.verify_header(
            body.decode("utf-8"),
            stripe_signature,
            config.stripe_webhook_secret,
            tolerance=config.webhook_tolerance_seconds,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
        logger.warning("webhook rejected: signature verification failed error=%s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid signature") from exc
    return body
