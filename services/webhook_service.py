"""
Webhook Service - applies Stripe events to the local subscription projection
"""

import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from crud.subscription import SubscriptionRepository
from services.stripe_mapping import field, subscription_state, user_id_from_metadata

logger = logging.getLogger(__name__)


class WebhookService:
    """
    Routes verified Stripe events to handlers.

    Exceptions propagate to the caller so the delivery is reported as failed
    and Stripe retries it.
    """

    def __init__(self, db: AsyncSession, subscription_repo: Optional[SubscriptionRepository] = None):
        self.db = db
        self.subscription_repo = subscription_repo or SubscriptionRepository(db)
        self._handlers = {
            "customer.subscription.created": self._handle_subscription_created,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_payment_succeeded,
            "invoice.payment_failed": self._handle_payment_failed,
        }

    async def handle_event(self, event: Any) -> None:
        """
        Dispatch one event.

        Args:
            event: Verified Stripe Event (or equivalent dict)
        """
        event_type = field(event, "type")
        obj = field(field(event, "data"), "object")
        logger.info(f"Processing Stripe webhook event: {event_type} ({field(event, 'id')})")

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled event type: {event_type}")
            return
        await handler(obj)

    async def _handle_subscription_created(self, subscription: Any) -> None:
        logger.info(f"Subscription created: {field(subscription, 'id')}")

    async def _handle_subscription_updated(self, subscription: Any) -> bool:
        """Overwrite state on an existing row. Events for unknown users are dropped."""
        logger.info(f"Subscription updated: {field(subscription, 'id')}")
        user_id = user_id_from_metadata(subscription)
        if not user_id:
            return False

        # Fields Stripe left out (e.g. no trial_end) keep their stored value
        updates = {key: value for key, value in subscription_state(subscription).items() if value is not None}

        row = await self.subscription_repo.update_existing(user_id, updates)
        if row is None:
            logger.info(f"No local subscription for user {user_id}; update event dropped")
            return False
        return True

    async def _handle_subscription_deleted(self, subscription: Any) -> None:
        logger.info(f"Subscription deleted: {field(subscription, 'id')}")
        user_id = user_id_from_metadata(subscription)
        if user_id:
            await self.subscription_repo.delete_by_user_id(user_id)

    async def _handle_payment_succeeded(self, invoice: Any) -> None:
        logger.info(f"Payment succeeded for invoice: {field(invoice, 'id')}")

    async def _handle_payment_failed(self, invoice: Any) -> None:
        logger.info(f"Payment failed for invoice: {field(invoice, 'id')}")
