"""Subscription gateway: the service of record for subscriptions.

The payment processor only depends on the SubscriptionGateway protocol. The
ledger-backed implementation below keeps records in the local SQLite ledger.
"""

import uuid
from datetime import timedelta
from typing import Optional, Protocol

from src.database import Database
from src.logging_utils import get_logger
from src.models import BillingCycle, PlanId, Subscription, SubscriptionStatus, utc_now
from src.subscriptions.notifier import WebhookNotifier
from src.subscriptions.plans import PERIOD_DAYS

logger = get_logger(__name__)


class SubscriptionGateway(Protocol):
    async def create_subscription(
        self, user_address: str, plan_id: str, billing_cycle: str
    ) -> Subscription: ...

    async def check_subscription(self, user_address: str) -> SubscriptionStatus: ...

    async def cancel_subscription(self, user_address: str) -> bool: ...


class LedgerSubscriptionGateway:
    """Subscription gateway storing records in the local ledger."""

    def __init__(self, database: Database, notifier: Optional[WebhookNotifier] = None):
        self.database = database
        self.notifier = notifier

    async def create_subscription(
        self, user_address: str, plan_id: str, billing_cycle: str
    ) -> Subscription:
        """Start a subscription period for a user.

        Raises:
            ValueError: For an unknown plan or billing cycle.
        """
        cycle = BillingCycle(billing_cycle)
        started_at = utc_now()
        subscription = Subscription(
            id=f"sub_{uuid.uuid4().hex[:16]}",
            user_address=user_address,
            plan_id=PlanId(plan_id),
            billing_cycle=cycle,
            started_at=started_at,
            expires_at=started_at + timedelta(days=PERIOD_DAYS[cycle]),
        )
        await self.database.create_subscription(subscription)

        if self.notifier:
            await self.notifier.notify(
                "subscription.created",
                subscription_id=subscription.id,
                user_address=user_address,
                plan_id=plan_id,
                billing_cycle=billing_cycle,
            )
        return subscription

    async def check_subscription(self, user_address: str) -> SubscriptionStatus:
        subscription = await self.database.get_active_subscription(user_address)
        if subscription is None:
            return SubscriptionStatus(active=False)
        return SubscriptionStatus(
            active=True,
            subscription_id=subscription.id,
            plan_id=subscription.plan_id,
            billing_cycle=subscription.billing_cycle,
            expires_at=subscription.expires_at,
        )

    async def cancel_subscription(self, user_address: str) -> bool:
        """Cancel the user's active subscriptions.

        Returns:
            False if there was nothing to cancel.
        """
        cancelled = await self.database.cancel_active_subscriptions(user_address)
        if cancelled and self.notifier:
            await self.notifier.notify("subscription.cancelled", user_address=user_address)
        return cancelled > 0
