from datetime import datetime
from typing import List, Literal, Optional

from pydantic import Field

from models.base import CamelModel

SubscriptionStatus = Literal["trial", "active", "canceled", "past_due", "unpaid"]


class SubscriptionPlan(CamelModel):
    id: str
    name: str
    price: float
    interval: Literal["month", "year"]
    stripe_price_id: Optional[str] = None
    features: List[str] = Field(default_factory=list)
    is_beta: bool = False
    max_users: Optional[int] = None


class Subscription(CamelModel):
    id: str
    user_id: str
    stripe_customer_id: str
    stripe_subscription_id: Optional[str] = None
    plan_id: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    created_at: datetime
    updated_at: datetime


class PaymentIntent(CamelModel):
    id: str
    amount: float
    currency: str
    status: str
    client_secret: Optional[str] = None


# Request models
class CreateSubscriptionRequest(CamelModel):
    plan_id: Optional[str] = None
    payment_method_id: Optional[str] = None


class UpdateSubscriptionRequest(CamelModel):
    plan_id: Optional[str] = None
    cancel_at_period_end: Optional[bool] = None


class PaymentIntentRequest(CamelModel):
    amount: Optional[float] = None
    currency: str = "usd"
