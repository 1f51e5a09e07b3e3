import uuid

from sqlalchemy import Column, Integer, String, Boolean, DateTime

from database import Base
from utils.shared_utils import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class UserTrial(Base):
    """
    One trial row per signup.
    Rows are deactivated, never deleted. is_beta_user and beta_user_number
    are fixed at insert time.
    """
    __tablename__ = "user_trials"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), nullable=False, index=True)
    email = Column(String, nullable=False, index=True)
    trial_start_date = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    trial_end_date = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    is_beta_user = Column(Boolean, nullable=False, default=False, index=True)
    beta_user_number = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class UserSubscription(Base):
    """
    Local projection of a user's Stripe subscription, keyed by user.
    Stripe stays authoritative; this table is written by the subscription
    endpoints and by webhooks.
    """
    __tablename__ = "user_subscriptions"

    user_id = Column(String(36), primary_key=True)
    stripe_subscription_id = Column(String, nullable=True, index=True)
    stripe_customer_id = Column(String, nullable=False)
    plan_id = Column(String, nullable=False)
    status = Column(String, nullable=False)
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
