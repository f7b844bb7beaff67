"""Handling of incoming subscription webhook events.

Events are acknowledged and logged; no event triggers further side effects.
"""

import hashlib
import hmac
from typing import Optional

from src.logging_utils import get_logger
from src.models import SubscriptionWebhook

logger = get_logger(__name__)

EVENT_LOG_MESSAGES = {
    "subscription.created": "New subscription created",
    "subscription.renewed": "Subscription renewed",
    "subscription.cancelled": "Subscription cancelled",
    "payment.failed": "Payment failed for subscription",
    "payment.succeeded": "Payment succeeded for subscription",
}


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Verify HMAC-SHA256 signature of a webhook body.

    Args:
        payload: Raw webhook payload bytes.
        signature: Hex-encoded HMAC signature from header.
        secret: Shared secret for HMAC.

    Returns:
        True if signature is valid, False otherwise.
    """
    expected_signature = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected_signature, signature)


def handle_subscription_event(
    webhook: SubscriptionWebhook,
    raw_payload: bytes = b"",
    signature: Optional[str] = None,
    secret: str = "",
) -> bool:
    """Log a subscription event.

    Unknown events are accepted and logged as such.

    Returns:
        True if the event is one of the known event types.
    """
    logger.info(
        f"Webhook received: event={webhook.event}, subscription={webhook.subscription_id}, "
        f"user={webhook.user_address}, plan={webhook.plan_id}, cycle={webhook.billing_cycle}, "
        f"amount={webhook.amount}, timestamp={webhook.timestamp}"
    )

    if secret and signature:
        if verify_webhook_signature(raw_payload, signature, secret):
            logger.info(f"Webhook signature verified for event {webhook.event}")
        else:
            logger.warning(f"Webhook signature mismatch for event {webhook.event}")

    message = EVENT_LOG_MESSAGES.get(webhook.event)
    if message is None:
        logger.info(f"Unknown webhook event: {webhook.event}")
        return False

    logger.info(f"{message}: {webhook.subscription_id}")
    return True
