"""
Payment Service - Stripe subscription reconciliation with trial conversion
"""

import logging
import math
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, List, Optional

import httpx
import requests
import stripe
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from crud.subscription import SubscriptionRepository
from models.payment import PaymentIntent, Subscription, SubscriptionPlan
from services.plans import get_plan, get_plans, resolve_effective_plan
from services.stripe_mapping import field, first_item, subscription_from_stripe
from services.trial_service import TrialService
from utils.errors import InvalidPlanError, NotFoundError, PersistenceError, UpstreamError, ValidationError
from utils.shared_utils import utcnow, as_utc

logger = logging.getLogger(__name__)

# Initialize Stripe client
if settings.stripe_secret_key:
    stripe.api_key = settings.stripe_secret_key
else:
    logger.warning("STRIPE_SECRET_KEY is not set. Stripe functionality will be unavailable.")


def get_stripe_client():
    """FastAPI dependency returning the Stripe SDK handle (overridden in tests)."""
    return stripe


def to_minor_units(amount: float) -> int:
    """Decimal currency amount to integer cents, rounding half up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _is_timeout(error: BaseException) -> bool:
    cause = error.__cause__ or error.__context__
    return isinstance(cause, (requests.exceptions.Timeout, httpx.TimeoutException, TimeoutError))


class PaymentService:
    """
    Service class for subscription and payment business logic.

    Stripe is authoritative for subscriptions; the user_subscriptions table is
    the local projection, read first and written through on every change.
    """

    def __init__(
        self,
        db: AsyncSession,
        trial_service: TrialService,
        stripe_client: Any = stripe,
        subscription_repo: Optional[SubscriptionRepository] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the payment service.

        Args:
            db: AsyncSession instance for database operations
            trial_service: TrialService sharing the same session
            stripe_client: The stripe module, or a stand-in exposing the same resources
            subscription_repo: SubscriptionRepository (built from db when omitted)
            clock: Returns the current aware UTC time
        """
        self.db = db
        self.trial_service = trial_service
        self.stripe = stripe_client
        self.subscription_repo = subscription_repo or SubscriptionRepository(db)
        self.clock = clock

    def get_plans(self) -> List[SubscriptionPlan]:
        return get_plans()

    def get_plan(self, plan_id: Optional[str]) -> Optional[SubscriptionPlan]:
        return get_plan(plan_id)

    def _stripe_call(self, action: str, func: Callable, *args, **kwargs):
        """Run a Stripe SDK call, translating SDK failures into UpstreamError."""
        try:
            return func(*args, **kwargs)
        except stripe.APIConnectionError as e:
            # The SDK wraps transport timeouts in APIConnectionError
            if _is_timeout(e):
                logger.error(f"Stripe timeout while trying to {action}: {e}")
                raise UpstreamError(f"Failed to {action}: payment provider timed out", status_code=504) from e
            logger.error(f"Stripe connection failure while trying to {action}: {e}")
            raise UpstreamError(f"Failed to {action}: payment provider unreachable", status_code=503) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe error while trying to {action}: {e}", exc_info=True)
            detail = getattr(e, "user_message", None) or str(e)
            raise UpstreamError(f"Failed to {action}: {detail}") from e

    async def create_or_get_customer(self, user_id: str, email: str) -> str:
        """
        Reuse the Stripe customer registered for this email, or create one
        tagged with the user id.

        Returns:
            Stripe customer id
        """
        customers = self._stripe_call("look up customer", self.stripe.Customer.list, email=email, limit=1)
        existing = field(customers, "data", [])
        if existing:
            customer = existing[0]
            if field(field(customer, "metadata", {}), "userId") != user_id:
                # Tag reused customers so the user id lookup can find them
                self._stripe_call(
                    "tag customer",
                    self.stripe.Customer.modify,
                    field(customer, "id"),
                    metadata={"userId": user_id},
                )
            return field(customer, "id")

        customer = self._stripe_call(
            "create customer",
            self.stripe.Customer.create,
            email=email,
            metadata={"userId": user_id},
        )
        logger.info(f"Created Stripe customer {field(customer, 'id')} for user {user_id}")
        return field(customer, "id")

    async def _find_customer_by_user_id(self, user_id: str) -> Optional[Any]:
        escaped = user_id.replace("\\", "\\\\").replace("'", "\\'")
        customers = self._stripe_call(
            "search customers",
            self.stripe.Customer.search,
            query=f"metadata['userId']:'{escaped}'",
            limit=1,
        )
        data = field(customers, "data", [])
        return data[0] if data else None

    async def create_subscription(
        self,
        user_id: str,
        email: str,
        plan_id: str,
        payment_method_id: Optional[str] = None,
    ) -> Subscription:
        """
        Create a subscription, converting the user's trial.

        The requested plan is corrected against beta eligibility first. The
        trial is only ended once Stripe has accepted the subscription, so a
        failed Stripe call leaves the trial in place.

        Raises:
            InvalidPlanError: unknown plan id
            UpstreamError: Stripe rejected or could not be reached
            PersistenceError: the local write failed
        """
        requested_plan = self.get_plan(plan_id)
        if requested_plan is None:
            raise InvalidPlanError(f"Invalid plan: {plan_id}")

        is_beta_eligible = await self.trial_service.can_get_beta_pricing(user_id)
        final_plan = resolve_effective_plan(requested_plan, is_beta_eligible)
        if final_plan.id != requested_plan.id:
            logger.info(
                f"Plan corrected for user {user_id}: requested {requested_plan.id}, "
                f"applying {final_plan.id} (beta eligible: {is_beta_eligible})"
            )

        customer_id = await self.create_or_get_customer(user_id, email)

        stripe_subscription = self._stripe_call(
            "create subscription",
            self.stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": final_plan.stripe_price_id}],
            payment_behavior="default_incomplete",
            payment_settings={"save_default_payment_method": "on_subscription"},
            expand=["latest_invoice.payment_intent"],
            collection_method="charge_automatically",
            metadata={
                "userId": user_id,
                "planId": final_plan.id,
                "isBetaUser": "true" if final_plan.is_beta else "false",
            },
        )

        await self.trial_service.end_trial(user_id)

        now = self.clock()
        values = subscription_from_stripe(stripe_subscription, customer_id)
        values.update({
            "stripe_customer_id": customer_id,
            "plan_id": final_plan.id,
            "status": "active",
            "current_period_start": values["current_period_start"] or now,
            "current_period_end": values["current_period_end"] or now,
            "trial_end": None,
            "cancel_at_period_end": False,
        })
        try:
            row = await self.subscription_repo.upsert(user_id, values)
            subscription = self._to_model(row)
        except SQLAlchemyError as e:
            logger.error(f"Failed to store subscription for user {user_id}: {e}", exc_info=True)
            raise PersistenceError("Failed to store subscription") from e

        try:
            await self.trial_service.mirror_subscription_period(user_id)
        except PersistenceError as e:
            # Best effort; the subscription itself already exists
            logger.warning(f"Could not mirror subscription period onto trial for user {user_id}: {e.__cause__}")

        logger.info(f"Created subscription {subscription.id} for user {user_id} with {final_plan.id} plan (trial converted)")
        return subscription

    async def get_user_subscription(self, user_id: str) -> Optional[Subscription]:
        """
        Table first; on a miss, look the user up in Stripe, store what is found
        and return it. None when Stripe has no customer or subscription.
        """
        try:
            row = await self.subscription_repo.get_by_user_id(user_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to read subscription for user {user_id}: {e}", exc_info=True)
            raise PersistenceError("Failed to get subscription") from e
        if row is not None:
            return self._to_model(row)

        customer = await self._find_customer_by_user_id(user_id)
        if customer is None:
            return None

        customer_id = field(customer, "id")
        subscriptions = self._stripe_call(
            "list subscriptions",
            self.stripe.Subscription.list,
            customer=customer_id,
            limit=1,
            status="all",
        )
        data = field(subscriptions, "data", [])
        if not data:
            return None

        return await self._store(user_id, data[0], customer_id)

    async def _store(self, user_id: str, stripe_subscription: Any, customer_id: Optional[str] = None) -> Subscription:
        """Upsert the local projection of a Stripe subscription."""
        now = self.clock()
        values = subscription_from_stripe(stripe_subscription, customer_id)
        values["current_period_start"] = values["current_period_start"] or now
        values["current_period_end"] = values["current_period_end"] or now
        created = field(stripe_subscription, "created")
        if created:
            values["created_at"] = datetime.fromtimestamp(int(created), tz=now.tzinfo)

        try:
            row = await self.subscription_repo.upsert(user_id, values)
        except SQLAlchemyError as e:
            logger.error(f"Failed to store subscription for user {user_id}: {e}", exc_info=True)
            raise PersistenceError("Failed to store subscription") from e
        return self._to_model(row)

    async def update_subscription(
        self,
        user_id: str,
        plan_id: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
    ) -> Subscription:
        """
        Push cancel_at_period_end and/or a plan swap to Stripe, then re-read
        the subscription from Stripe and store it.

        The target plan goes through the same beta correction as on creation.

        Raises:
            NotFoundError: the user has no subscription
            InvalidPlanError: unknown target plan
        """
        subscription = await self.get_user_subscription(user_id)
        if subscription is None or not subscription.stripe_subscription_id:
            raise NotFoundError("No subscription found")

        new_plan = None
        if plan_id:
            requested_plan = self.get_plan(plan_id)
            if requested_plan is None:
                raise InvalidPlanError(f"Invalid plan: {plan_id}")
            is_beta_eligible = await self.trial_service.can_get_beta_pricing(user_id)
            target_plan = resolve_effective_plan(requested_plan, is_beta_eligible)
            if target_plan.id != subscription.plan_id:
                new_plan = target_plan

        stripe_subscription_id = subscription.stripe_subscription_id

        if cancel_at_period_end is not None:
            self._stripe_call(
                "update subscription",
                self.stripe.Subscription.modify,
                stripe_subscription_id,
                cancel_at_period_end=cancel_at_period_end,
            )

        if new_plan is not None:
            stripe_subscription = self._stripe_call(
                "retrieve subscription", self.stripe.Subscription.retrieve, stripe_subscription_id
            )
            item = first_item(stripe_subscription)
            if item is not None:
                self._stripe_call(
                    "change subscription plan",
                    self.stripe.Subscription.modify,
                    stripe_subscription_id,
                    items=[{"id": field(item, "id"), "price": new_plan.stripe_price_id}],
                    metadata={"planId": new_plan.id, "isBetaUser": "true" if new_plan.is_beta else "false"},
                )
                logger.info(f"Switched user {user_id} from {subscription.plan_id} to {new_plan.id}")

        refreshed = self._stripe_call(
            "retrieve subscription", self.stripe.Subscription.retrieve, stripe_subscription_id
        )
        return await self._store(user_id, refreshed, subscription.stripe_customer_id)

    async def cancel_subscription(self, user_id: str) -> None:
        """
        Cancel immediately at Stripe and evict the local projection.

        Raises:
            NotFoundError: the user has no subscription
        """
        subscription = await self.get_user_subscription(user_id)
        if subscription is None or not subscription.stripe_subscription_id:
            raise NotFoundError("No subscription found")

        self._stripe_call("cancel subscription", self.stripe.Subscription.cancel, subscription.stripe_subscription_id)
        await self._evict(user_id)
        logger.info(f"Cancelled subscription {subscription.stripe_subscription_id} for user {user_id}")

    async def create_payment_intent(self, amount: float, currency: str = "usd") -> PaymentIntent:
        """Create a one-time PaymentIntent. `amount` is in major units."""
        if not math.isfinite(amount) or amount <= 0:
            raise ValidationError("Valid amount is required")
        intent = self._stripe_call(
            "create payment intent",
            self.stripe.PaymentIntent.create,
            amount=to_minor_units(amount),
            currency=currency,
            automatic_payment_methods={"enabled": True},
        )
        return PaymentIntent(
            id=field(intent, "id"),
            amount=field(intent, "amount", 0) / 100,
            currency=field(intent, "currency", currency),
            status=field(intent, "status", ""),
            client_secret=field(intent, "client_secret"),
        )

    async def _evict(self, user_id: str) -> None:
        try:
            await self.subscription_repo.delete_by_user_id(user_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to evict subscription for user {user_id}: {e}", exc_info=True)
            raise PersistenceError("Failed to update local subscription") from e

    @staticmethod
    def _to_model(row) -> Subscription:
        return Subscription(
            id=row.stripe_subscription_id or row.user_id,
            user_id=row.user_id,
            stripe_customer_id=row.stripe_customer_id,
            stripe_subscription_id=row.stripe_subscription_id,
            plan_id=row.plan_id,
            status=row.status,
            current_period_start=as_utc(row.current_period_start),
            current_period_end=as_utc(row.current_period_end),
            trial_end=as_utc(row.trial_end),
            cancel_at_period_end=row.cancel_at_period_end,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )
