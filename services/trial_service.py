"""
Trial Service for managing 14-day trial periods and the capped beta program
"""
import asyncio
import logging
import math
import weakref
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import TRIAL_DURATION_DAYS, MAX_BETA_USERS, SUBSCRIPTION_MIRROR_DAYS
from crud.trial import TrialRepository
from models.trial import Trial, TrialStatus
from utils.errors import PersistenceError
from utils.shared_utils import utcnow, as_utc

logger = logging.getLogger(__name__)

# Arbitrary constant key for pg_advisory_xact_lock around beta admission
BETA_ADMISSION_LOCK_KEY = 7_340_100

_admission_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = weakref.WeakKeyDictionary()


def _admission_lock() -> asyncio.Lock:
    """One admission lock per event loop; beta admission is single-writer per process."""
    loop = asyncio.get_running_loop()
    lock = _admission_locks.get(loop)
    if lock is None:
        lock = _admission_locks[loop] = asyncio.Lock()
    return lock


class TrialService:
    """
    Service for managing user trial periods.
    Handles trial creation, status, termination, the expiry sweep and beta
    eligibility.
    """

    def __init__(
        self,
        db: AsyncSession,
        trial_repo: Optional[TrialRepository] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the trial service.

        Args:
            db: AsyncSession instance for database operations
            trial_repo: TrialRepository (built from db when omitted)
            clock: Returns the current aware UTC time
        """
        self.db = db
        self.trial_repo = trial_repo or TrialRepository(db)
        self.clock = clock

    async def create_trial(self, user_id: str, email: str) -> Trial:
        """
        Create a 14-day trial, admitting the user to the beta program while
        fewer than MAX_BETA_USERS active beta trials exist.

        The quota count, the next beta number and the insert run under one
        admission lock and are committed before the lock is released, so two
        signups cannot both take the last slot or share a number.

        Duplicate trials are the caller's concern (see get_user_trial).

        Raises:
            PersistenceError: if any of the reads or the insert fails
        """
        trial_start = self.clock()
        trial_end = trial_end_for(trial_start)

        async with _admission_lock():
            try:
                await self._lock_beta_admission()

                beta_user_count = await self.trial_repo.count_active_beta_users()
                is_beta_user = beta_user_count < MAX_BETA_USERS
                beta_user_number = await self.trial_repo.next_beta_user_number() if is_beta_user else None

                record = await self.trial_repo.create_trial({
                    "user_id": user_id,
                    "email": email,
                    "trial_start_date": trial_start,
                    "trial_end_date": trial_end,
                    "is_beta_user": is_beta_user,
                    "beta_user_number": beta_user_number,
                })
                trial = Trial.from_record(record)
                await self.db.commit()
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.error(f"Failed to create trial for user {user_id}: {e}", exc_info=True)
                raise PersistenceError("Failed to create trial") from e

        logger.info(
            f"Created trial for user {user_id} "
            f"({'beta #' + str(beta_user_number) if is_beta_user else 'regular'}, "
            f"beta count before admission: {beta_user_count}/{MAX_BETA_USERS}, "
            f"ends {trial_end.isoformat()})"
        )
        return trial

    async def _lock_beta_admission(self) -> None:
        # Cross-process serialization; only Postgres has advisory locks
        if self.db.get_bind().dialect.name == "postgresql":
            await self.db.execute(
                text("SELECT pg_advisory_xact_lock(:key)"),
                {"key": BETA_ADMISSION_LOCK_KEY},
            )

    async def get_user_trial(self, user_id: str) -> Optional[Trial]:
        """Active trial for the user, or None."""
        try:
            record = await self.trial_repo.get_active_trial(user_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load trial for user {user_id}: {e}", exc_info=True)
            raise PersistenceError("Failed to load trial") from e
        return Trial.from_record(record) if record else None

    async def get_trial_status(self, user_id: str) -> Optional[TrialStatus]:
        """
        Compute the trial status for a user relative to the clock.

        Returns None when the user has no active trial (never had one, or it
        already ended); that is a normal outcome, not an error.
        """
        trial = await self.get_user_trial(user_id)
        if trial is None:
            return None

        now = self.clock()
        is_in_trial = trial.is_active and now < trial.trial_end_date
        if is_in_trial:
            remaining = trial.trial_end_date - now
            trial_days_remaining = math.ceil(remaining.total_seconds() / 86400)
        else:
            trial_days_remaining = 0

        return TrialStatus(
            is_in_trial=is_in_trial,
            trial_days_remaining=trial_days_remaining,
            trial_end_date=trial.trial_end_date,
            is_beta_user=trial.is_beta_user,
            beta_user_number=trial.beta_user_number,
            should_show_payment=not is_in_trial,
        )

    async def end_trial(self, user_id: str) -> None:
        """
        Deactivate the user's trial. Idempotent: ending an already ended (or
        missing) trial succeeds.
        """
        try:
            matched = await self.trial_repo.deactivate_for_user(user_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to end trial for user {user_id}: {e}", exc_info=True)
            raise PersistenceError("Failed to end trial") from e

        logger.info(f"Ended trial for user {user_id} ({matched} row(s))")

    async def get_beta_user_count(self) -> int:
        try:
            return await self.trial_repo.count_active_beta_users()
        except SQLAlchemyError as e:
            logger.error(f"Failed to count beta users: {e}", exc_info=True)
            raise PersistenceError("Failed to get beta user count") from e

    async def get_next_beta_user_number(self) -> int:
        try:
            return await self.trial_repo.next_beta_user_number()
        except SQLAlchemyError as e:
            logger.error(f"Failed to compute next beta user number: {e}", exc_info=True)
            raise PersistenceError("Failed to get next beta user number") from e

    async def is_beta_user(self, user_id: str) -> bool:
        """Whether the user was ever admitted as a beta user. Beta status is permanent."""
        try:
            return await self.trial_repo.has_beta_grant(user_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to check beta status for user {user_id}: {e}", exc_info=True)
            raise PersistenceError("Failed to check beta status") from e

    async def can_get_beta_pricing(self, user_id: str) -> bool:
        """
        New users qualify while the quota has room; users who already hold a
        beta grant keep qualifying after the quota fills up.
        """
        if await self.get_beta_user_count() < MAX_BETA_USERS:
            return True
        return await self.is_beta_user(user_id)

    async def get_active_trials(self) -> List[Trial]:
        try:
            records = await self.trial_repo.list_active()
        except SQLAlchemyError as e:
            logger.error(f"Failed to list active trials: {e}", exc_info=True)
            raise PersistenceError("Failed to get active trials") from e
        return [Trial.from_record(record) for record in records]

    async def cleanup_expired_trials(self) -> int:
        """Deactivate every active trial whose end date has passed. Meant to run from cron."""
        try:
            cleaned_count = await self.trial_repo.deactivate_expired(self.clock())
        except SQLAlchemyError as e:
            logger.error(f"Failed to clean up expired trials: {e}", exc_info=True)
            raise PersistenceError("Failed to cleanup expired trials") from e

        logger.info(f"Cleaned up {cleaned_count} expired trials")
        return cleaned_count

    async def mirror_subscription_period(self, user_id: str) -> int:
        """
        Reuse the trial row as a subscription-period mirror: window becomes
        now .. now + 365 days and the row is active again.

        Runs in a savepoint so a failure does not poison the caller's
        transaction.
        """
        start = self.clock()
        end = start + timedelta(days=SUBSCRIPTION_MIRROR_DAYS)
        try:
            async with self.db.begin_nested():
                updated = await self.trial_repo.update_window(user_id, start, end)
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to update trial window") from e

        logger.info(f"Mirrored subscription period onto trial for user {user_id} ({updated} row(s))")
        return updated


def trial_end_for(start: datetime) -> datetime:
    """End of a trial that starts at `start`."""
    return as_utc(start) + timedelta(days=TRIAL_DURATION_DAYS)
