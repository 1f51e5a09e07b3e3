"""
Subscription plan catalog and the beta/regular plan correction rule.
"""
from typing import List, Optional

from config.settings import (
    settings,
    MAX_BETA_USERS,
    PLAN_BETA_MONTHLY,
    PLAN_BETA_YEARLY,
    PLAN_REGULAR_MONTHLY,
    PLAN_REGULAR_YEARLY,
)
from models.payment import SubscriptionPlan

_CORE_FEATURES = [
    "Unlimited food analysis",
    "AI meal planning",
    "Glucose tracking",
]

SUBSCRIPTION_PLANS: List[SubscriptionPlan] = [
    SubscriptionPlan(
        id=PLAN_BETA_MONTHLY,
        name="Beta Monthly",
        price=9.99,
        interval="month",
        stripe_price_id=settings.stripe_beta_monthly_price_id,
        features=_CORE_FEATURES + [
            "Priority support",
            "Early access to new features",
            "Locked at $9.99 forever",
        ],
        is_beta=True,
        max_users=MAX_BETA_USERS,
    ),
    SubscriptionPlan(
        id=PLAN_BETA_YEARLY,
        name="Beta Yearly",
        price=95.90,  # 9.99 * 12 with 20% off
        interval="year",
        stripe_price_id=settings.stripe_beta_yearly_price_id,
        features=_CORE_FEATURES + [
            "Priority support",
            "Early access to new features",
            "20% discount on yearly plan",
            "Locked at $9.99 forever",
        ],
        is_beta=True,
        max_users=MAX_BETA_USERS,
    ),
    SubscriptionPlan(
        id=PLAN_REGULAR_MONTHLY,
        name="Regular Monthly",
        price=24.99,
        interval="month",
        stripe_price_id=settings.stripe_regular_monthly_price_id,
        features=_CORE_FEATURES + [
            "Email support",
            "All features included",
        ],
    ),
    SubscriptionPlan(
        id=PLAN_REGULAR_YEARLY,
        name="Regular Yearly",
        price=239.90,  # 24.99 * 12 with 20% off
        interval="year",
        stripe_price_id=settings.stripe_regular_yearly_price_id,
        features=_CORE_FEATURES + [
            "Email support",
            "All features included",
            "20% discount on yearly plan",
        ],
    ),
]

# (is_beta, interval) -> plan id
_PLAN_BY_TIER = {
    (True, "month"): PLAN_BETA_MONTHLY,
    (True, "year"): PLAN_BETA_YEARLY,
    (False, "month"): PLAN_REGULAR_MONTHLY,
    (False, "year"): PLAN_REGULAR_YEARLY,
}


def get_plans() -> List[SubscriptionPlan]:
    return list(SUBSCRIPTION_PLANS)


def get_plan(plan_id: Optional[str]) -> Optional[SubscriptionPlan]:
    if not plan_id:
        return None
    return next((plan for plan in SUBSCRIPTION_PLANS if plan.id == plan_id), None)


def get_plan_by_price_id(price_id: Optional[str]) -> Optional[SubscriptionPlan]:
    if not price_id:
        return None
    return next((plan for plan in SUBSCRIPTION_PLANS if plan.stripe_price_id == price_id), None)


def resolve_effective_plan(requested: SubscriptionPlan, beta_eligible: bool) -> SubscriptionPlan:
    """
    Apply the plan correction rule.

    The requested plan is advisory: an ineligible user asking for a beta plan
    gets the regular plan with the same interval, and an eligible user asking
    for a regular plan gets the beta plan with the same interval.
    """
    if requested.is_beta == beta_eligible:
        return requested
    return get_plan(_PLAN_BY_TIER[(beta_eligible, requested.interval)])
