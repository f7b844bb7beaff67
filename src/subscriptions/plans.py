"""Subscription plan table."""

from typing import Mapping, Optional

from src.models import BillingCycle, PlanId, PlanPrice, SubscriptionPlan

# Length of one paid period
PERIOD_DAYS = {
    BillingCycle.MONTHLY: 30,
    BillingCycle.QUARTERLY: 90,
    BillingCycle.ANNUALLY: 365,
}

DEFAULT_PLANS: dict[str, SubscriptionPlan] = {
    PlanId.BASIC.value: SubscriptionPlan(
        id=PlanId.BASIC,
        name="Basic Plan",
        description="Essential features for individuals",
        features=["chat", "basic_analytics", "email_support"],
        pricing={
            BillingCycle.MONTHLY: PlanPrice(price=100, discount=0),
            BillingCycle.QUARTERLY: PlanPrice(price=270, discount=10),
            BillingCycle.ANNUALLY: PlanPrice(price=960, discount=20),
        },
    ),
    PlanId.PRO.value: SubscriptionPlan(
        id=PlanId.PRO,
        name="Pro Plan",
        description="Advanced features for teams",
        features=["chat", "advanced_analytics", "priority_support", "api_access"],
        pricing={
            BillingCycle.MONTHLY: PlanPrice(price=500, discount=0),
            BillingCycle.QUARTERLY: PlanPrice(price=1350, discount=10),
            BillingCycle.ANNUALLY: PlanPrice(price=4800, discount=20),
        },
    ),
    PlanId.ENTERPRISE.value: SubscriptionPlan(
        id=PlanId.ENTERPRISE,
        name="Enterprise Plan",
        description="Custom solutions for large organizations",
        features=["chat", "enterprise_analytics", "dedicated_support", "custom_integrations"],
        pricing={
            BillingCycle.MONTHLY: PlanPrice(price=2000, discount=0),
            BillingCycle.QUARTERLY: PlanPrice(price=5400, discount=10),
            BillingCycle.ANNUALLY: PlanPrice(price=19200, discount=20),
        },
    ),
}


def get_plan(plan_id: str, plans: Mapping[str, SubscriptionPlan] = DEFAULT_PLANS) -> Optional[SubscriptionPlan]:
    return plans.get(plan_id)


def plan_price(
    plan_id: str,
    billing_cycle: str,
    plans: Mapping[str, SubscriptionPlan] = DEFAULT_PLANS,
) -> Optional[float]:
    """Look up the price of a plan for a billing cycle.

    Args:
        plan_id: Plan identifier (basic, pro, enterprise).
        billing_cycle: Billing cycle (monthly, quarterly, annually).
        plans: Plan table to search.

    Returns:
        Price in token units, or None for an unknown plan or cycle.
    """
    plan = plans.get(plan_id)
    if plan is None:
        return None
    try:
        cycle = BillingCycle(billing_cycle)
    except ValueError:
        return None
    return plan.pricing[cycle].price
