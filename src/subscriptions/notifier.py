"""Outbound subscription event notifications."""

import hashlib
import hmac
import json
from typing import Any, Dict, Optional

import httpx

from src.logging_utils import get_logger, get_request_id
from src.models import isoformat_z, utc_now

logger = get_logger(__name__)


def create_webhook_signature(payload: str, secret: str) -> str:
    """Create HMAC-SHA256 signature for a webhook payload.

    Args:
        payload: The JSON payload string.
        secret: The webhook secret key.

    Returns:
        The hex-encoded HMAC signature.
    """
    if not secret:
        raise ValueError("Webhook secret is required for signing")

    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


class WebhookNotifier:
    """Posts subscription and payment events to the configured webhook URL."""

    def __init__(self, webhook_url: str, secret: str = "", timeout: float = 10.0):
        self.webhook_url = webhook_url
        self.secret = secret
        self.timeout = timeout

    async def notify(
        self,
        event: str,
        subscription_id: Optional[str] = None,
        user_address: Optional[str] = None,
        plan_id: Optional[str] = None,
        billing_cycle: Optional[str] = None,
        amount: Optional[float] = None,
    ) -> bool:
        """Deliver one event. Failures are logged and reported as False.

        Returns:
            True if the receiver acknowledged the event.
        """
        payload: Dict[str, Any] = {
            "event": event,
            "subscriptionId": subscription_id,
            "userAddress": user_address,
            "planId": plan_id,
            "billingCycle": billing_cycle,
            "amount": amount,
            "timestamp": isoformat_z(utc_now()),
        }
        body = json.dumps(payload)

        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Webhook-Signature"] = create_webhook_signature(body, self.secret)
        request_id = get_request_id()
        if request_id:
            headers["X-Request-Id"] = request_id

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, content=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Error delivering {event} webhook to {self.webhook_url}: {e}")
            return False

        if response.status_code in (200, 201, 202):
            logger.info(f"Webhook {event} delivered for subscription {subscription_id}")
            return True

        logger.error(
            f"Webhook {event} rejected: {response.status_code} - {response.text}"
        )
        return False
