"""
TrialRepository for database operations on the user_trials table
"""

from datetime import datetime
from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func, true
from database_models import UserTrial


class TrialRepository:
    """
    Repository class for UserTrial database operations.
    Encapsulates all database logic for the user_trials table, including the
    two aggregates the beta program relies on.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db

    async def create_trial(self, trial_data: dict) -> UserTrial:
        """
        Insert a new trial row.

        Args:
            trial_data: Dictionary containing trial data. Must include:
                - user_id: str
                - email: str
                - trial_start_date: datetime
                - trial_end_date: datetime
                Optional:
                - is_beta_user: bool (defaults to False)
                - beta_user_number: int (only for beta users)

        Returns:
            Created UserTrial object
        """
        trial = UserTrial(
            user_id=trial_data["user_id"],
            email=trial_data["email"],
            trial_start_date=trial_data["trial_start_date"],
            trial_end_date=trial_data["trial_end_date"],
            is_active=True,
            is_beta_user=trial_data.get("is_beta_user", False),
            beta_user_number=trial_data.get("beta_user_number"),
        )
        self.db.add(trial)
        await self.db.flush()  # Flush to get defaults without committing
        await self.db.refresh(trial)
        return trial

    async def get_active_trial(self, user_id: str) -> Optional[UserTrial]:
        """
        Retrieve the active trial for a user.

        Returns:
            Most recent active UserTrial if found, None otherwise
        """
        result = await self.db.execute(
            select(UserTrial)
            .where(UserTrial.user_id == user_id, UserTrial.is_active == true())
            .order_by(UserTrial.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def has_beta_grant(self, user_id: str) -> bool:
        """True if any trial row (active or not) for the user was admitted as beta."""
        result = await self.db.execute(
            select(func.count())
            .select_from(UserTrial)
            .where(UserTrial.user_id == user_id, UserTrial.is_beta_user == true())
        )
        return (result.scalar_one() or 0) > 0

    async def count_active_beta_users(self) -> int:
        """Count of rows where is_active AND is_beta_user, computed by the database."""
        result = await self.db.execute(
            select(func.count())
            .select_from(UserTrial)
            .where(UserTrial.is_active == true(), UserTrial.is_beta_user == true())
        )
        return result.scalar_one() or 0

    async def next_beta_user_number(self) -> int:
        """max(beta_user_number) + 1 across all beta rows, 1 when there are none."""
        result = await self.db.execute(
            select(func.coalesce(func.max(UserTrial.beta_user_number), 0) + 1)
            .where(UserTrial.is_beta_user == true())
        )
        return result.scalar_one() or 1

    async def deactivate_for_user(self, user_id: str) -> int:
        """Set is_active=False on every trial row for the user. Returns rows matched."""
        result = await self.db.execute(
            update(UserTrial)
            .where(UserTrial.user_id == user_id)
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        # Loaded rows are stale after a bulk update; the next select refreshes them
        self.db.expire_all()
        return result.rowcount or 0

    async def deactivate_expired(self, now: datetime) -> int:
        """Deactivate active trials whose end date is before now. Returns rows affected."""
        result = await self.db.execute(
            update(UserTrial)
            .where(UserTrial.is_active == true(), UserTrial.trial_end_date < now)
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        self.db.expire_all()
        return result.rowcount or 0

    async def list_active(self) -> List[UserTrial]:
        """All active trials, newest first."""
        result = await self.db.execute(
            select(UserTrial)
            .where(UserTrial.is_active == true())
            .order_by(UserTrial.created_at.desc())
        )
        return list(result.scalars().all())

    async def update_window(self, user_id: str, start: datetime, end: datetime) -> int:
        """Overwrite the trial window for a user and mark the row active."""
        result = await self.db.execute(
            update(UserTrial)
            .where(UserTrial.user_id == user_id)
            .values(trial_start_date=start, trial_end_date=end, is_active=True)
            .execution_options(synchronize_session=False)
        )
        self.db.expire_all()
        return result.rowcount or 0
