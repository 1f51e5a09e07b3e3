"""
SubscriptionRepository for the persisted subscription projection
"""

from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from database_models import UserSubscription


class SubscriptionRepository:
    """
    Repository class for UserSubscription database operations.
    One row per user; written through by the subscription endpoints and
    by Stripe webhooks.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_user_id(self, user_id: str) -> Optional[UserSubscription]:
        result = await self.db.execute(
            select(UserSubscription).where(UserSubscription.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def upsert(self, user_id: str, values: dict) -> UserSubscription:
        """
        Insert or overwrite the projection row for a user.

        Args:
            user_id: Owning user
            values: Column values (stripe_subscription_id, stripe_customer_id,
                plan_id, status, current_period_start, current_period_end,
                trial_end, cancel_at_period_end)

        Returns:
            The stored UserSubscription
        """
        row = await self.get_by_user_id(user_id)
        if row is None:
            row = UserSubscription(user_id=user_id, **values)
            self.db.add(row)
        else:
            for key, value in values.items():
                if hasattr(row, key):
                    setattr(row, key, value)

        await self.db.flush()
        await self.db.refresh(row)
        return row

    async def update_existing(self, user_id: str, updates: dict) -> Optional[UserSubscription]:
        """Apply updates only if a row already exists. Returns None when there is none."""
        row = await self.get_by_user_id(user_id)
        if row is None:
            return None

        for key, value in updates.items():
            if hasattr(row, key):
                setattr(row, key, value)

        await self.db.flush()
        await self.db.refresh(row)
        return row

    async def delete_by_user_id(self, user_id: str) -> bool:
        """Evict the projection row for a user. Returns False if there was none."""
        row = await self.get_by_user_id(user_id)
        if row is None:
            return False

        await self.db.delete(row)
        await self.db.flush()
        return True
