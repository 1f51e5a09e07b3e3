from datetime import datetime
from typing import Optional

from models.base import CamelModel
from utils.shared_utils import as_utc


class Trial(CamelModel):
    id: str
    user_id: str
    email: str
    trial_start_date: datetime
    trial_end_date: datetime
    is_active: bool
    is_beta_user: bool
    beta_user_number: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record) -> "Trial":
        return cls(
            id=record.id,
            user_id=record.user_id,
            email=record.email,
            trial_start_date=as_utc(record.trial_start_date),
            trial_end_date=as_utc(record.trial_end_date),
            is_active=record.is_active,
            is_beta_user=record.is_beta_user,
            beta_user_number=record.beta_user_number or None,
            created_at=as_utc(record.created_at),
            updated_at=as_utc(record.updated_at),
        )


class TrialStatus(CamelModel):
    is_in_trial: bool
    trial_days_remaining: int
    trial_end_date: datetime
    is_beta_user: bool
    beta_user_number: Optional[int] = None
    should_show_payment: bool
