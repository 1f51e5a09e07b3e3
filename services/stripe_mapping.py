"""
Mapping from Stripe objects to the local subscription shape.

This is the only module that knows Stripe's subscription field names.
Stripe objects and plain dicts (webhook payloads, test fakes) are both
accepted.
"""
from typing import Any, Optional

from config.settings import PLAN_REGULAR_MONTHLY
from services.plans import get_plan, get_plan_by_price_id
from utils.shared_utils import from_unix

# Stripe subscription status -> local status
STATUS_MAP = {
    "trialing": "trial",
    "active": "active",
    "canceled": "canceled",
    "incomplete_expired": "canceled",
    "past_due": "past_due",
    "paused": "past_due",
    "unpaid": "unpaid",
    "incomplete": "unpaid",
}


def field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a Stripe object or dict, returning default when absent or null."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def first_item(subscription: Any) -> Any:
    items = field(field(subscription, "items"), "data", [])
    return items[0] if items else None


def map_status(stripe_status: Optional[str]) -> str:
    return STATUS_MAP.get(stripe_status or "", "unpaid")


def period_bounds(subscription: Any):
    """
    (current_period_start, current_period_end) as aware datetimes.
    Newer API versions only carry the period on subscription items.
    """
    item = first_item(subscription)
    start = field(subscription, "current_period_start") or field(item, "current_period_start")
    end = field(subscription, "current_period_end") or field(item, "current_period_end")
    return from_unix(start), from_unix(end)


def plan_id_for(subscription: Any) -> str:
    """Plan from metadata, else from the first item's price, else regular monthly."""
    plan = get_plan(field(field(subscription, "metadata", {}), "planId"))
    if plan is None:
        price_id = field(field(first_item(subscription), "price"), "id")
        plan = get_plan_by_price_id(price_id)
    return plan.id if plan else PLAN_REGULAR_MONTHLY


def subscription_state(subscription: Any) -> dict:
    """Mutable subscription state carried by updates and webhooks."""
    current_period_start, current_period_end = period_bounds(subscription)
    return {
        "status": map_status(field(subscription, "status")),
        "current_period_start": current_period_start,
        "current_period_end": current_period_end,
        "trial_end": from_unix(field(subscription, "trial_end")),
        "cancel_at_period_end": bool(field(subscription, "cancel_at_period_end", False)),
    }


def subscription_from_stripe(subscription: Any, customer_id: Optional[str] = None) -> dict:
    """
    Full column set for the local projection of a Stripe subscription.

    Args:
        subscription: Stripe Subscription (or equivalent dict)
        customer_id: Customer id to record when the subscription does not carry one
    """
    customer = field(subscription, "customer")
    if not isinstance(customer, str):
        customer = field(customer, "id")

    values = {
        "stripe_subscription_id": field(subscription, "id"),
        "stripe_customer_id": customer or customer_id,
        "plan_id": plan_id_for(subscription),
    }
    values.update(subscription_state(subscription))
    return values


def user_id_from_metadata(obj: Any) -> Optional[str]:
    return field(field(obj, "metadata", {}), "userId")
