"""
Payment Router - API endpoints for plans, subscriptions and Stripe webhooks
Webhook is defined FIRST to avoid middleware conflicts
"""

import logging
import math

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
import stripe

from auth import get_current_user
from config.settings import settings, MAX_BETA_USERS
from database import get_db
from models.payment import CreateSubscriptionRequest, PaymentIntentRequest, UpdateSubscriptionRequest
from routers.trial_router import get_trial_service
from services.payment_service import PaymentService, get_stripe_client
from services.trial_service import TrialService
from services.webhook_service import WebhookService
from utils.errors import AppError, AuthenticationError, ValidationError
from utils.responses import success_response, error_response
from utils.shared_utils import log_endpoint_event

logger = logging.getLogger(__name__)

# Create payment router
payment_router = APIRouter(prefix="/api/payment", tags=["payment"])


def get_payment_service(
    db: AsyncSession = Depends(get_db),
    trial_service: TrialService = Depends(get_trial_service),
    stripe_client=Depends(get_stripe_client),
) -> PaymentService:
    return PaymentService(db, trial_service, stripe_client=stripe_client)


# WEBHOOK ENDPOINT - MUST BE DEFINED FIRST TO AVOID MIDDLEWARE CONFLICTS
@payment_router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    stripe_client=Depends(get_stripe_client),
):
    """
    Handle Stripe webhook events with signature verification.

    Verification failures answer 400. A failure while applying a verified
    event answers 500 so Stripe retries the delivery.
    """
    webhook_secret = settings.stripe_webhook_secret
    stripe_signature = request.headers.get("stripe-signature")
    if not stripe_signature or not webhook_secret:
        logger.error("Webhook rejected: missing Stripe-Signature header or STRIPE_WEBHOOK_SECRET")
        return error_response("Missing signature or webhook secret", status=400)

    # Raw request body is required for signature verification
    payload = await request.body()
    try:
        event = stripe_client.Webhook.construct_event(payload, stripe_signature, webhook_secret)
    except stripe.SignatureVerificationError as e:
        logger.error(f"Stripe webhook signature verification failed: {e}")
        return error_response("Invalid webhook signature", status=400)
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        return error_response("Invalid payload format", status=400)

    try:
        await WebhookService(db).handle_event(event)
    except Exception as e:
        logger.error(f"Webhook processing failed: {e}", exc_info=True)
        await db.rollback()
        return error_response("Webhook processing failed", status=500)

    return success_response(message="Webhook processed successfully")


@payment_router.get("/health")
async def payment_health():
    """Public: whether Stripe is configured"""
    return success_response({
        "stripeConfigured": bool(settings.stripe_secret_key),
        "webhookConfigured": bool(settings.stripe_webhook_secret),
    })


@payment_router.get("/plans")
async def get_plans(
    payment_service: PaymentService = Depends(get_payment_service),
    trial_service: TrialService = Depends(get_trial_service),
):
    """Public: plan catalog with the current beta count"""
    beta_user_count = await trial_service.get_beta_user_count()
    return success_response({
        "plans": payment_service.get_plans(),
        "betaUserCount": beta_user_count,
        "maxBetaUsers": MAX_BETA_USERS,
    })


@payment_router.get("/subscription")
async def get_user_subscription(
    current_user: dict = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
    trial_service: TrialService = Depends(get_trial_service),
):
    """Current user's subscription (null when none) and beta status"""
    user_id = current_user["id"]
    try:
        subscription = await payment_service.get_user_subscription(user_id)
        is_beta_user = await trial_service.is_beta_user(user_id)
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error getting user subscription: {e}", exc_info=True)
        return error_response("Failed to get subscription", status=500)

    return success_response({
        "subscription": subscription,
        "isBetaUser": is_beta_user,
    })


@payment_router.get("/beta-status")
async def get_beta_status(
    current_user: dict = Depends(get_current_user),
    trial_service: TrialService = Depends(get_trial_service),
):
    """Beta grant and quota for the current user"""
    user_id = current_user["id"]
    is_beta_user = await trial_service.is_beta_user(user_id)
    beta_user_count = await trial_service.get_beta_user_count()
    can_get_beta_pricing = await trial_service.can_get_beta_pricing(user_id)
    return success_response({
        "isBetaUser": is_beta_user,
        "betaUserCount": beta_user_count,
        "maxBetaUsers": MAX_BETA_USERS,
        "canGetBetaPricing": can_get_beta_pricing,
    })


@payment_router.post("/subscription")
async def create_subscription(
    body: CreateSubscriptionRequest,
    current_user: dict = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
):
    """Create a subscription; the response carries the plan actually applied"""
    user_id = current_user["id"]
    email = current_user["email"]
    if not email:
        raise AuthenticationError("User authentication required")
    if not body.plan_id or not body.payment_method_id:
        raise ValidationError("Plan ID and payment method ID are required")

    try:
        subscription = await payment_service.create_subscription(
            user_id, email, body.plan_id, body.payment_method_id
        )
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error creating subscription: {e}", exc_info=True)
        return error_response("Failed to create subscription", status=500)

    log_endpoint_event("/api/payment/subscription", user_id, "created", {
        "requested_plan": body.plan_id,
        "applied_plan": subscription.plan_id,
    })
    return success_response(subscription, message="Subscription created")


@payment_router.put("/subscription")
async def update_subscription(
    body: UpdateSubscriptionRequest,
    current_user: dict = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
):
    """Change plan and/or cancel-at-period-end"""
    try:
        subscription = await payment_service.update_subscription(
            current_user["id"],
            plan_id=body.plan_id,
            cancel_at_period_end=body.cancel_at_period_end,
        )
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error updating subscription: {e}", exc_info=True)
        return error_response("Failed to update subscription", status=500)

    return success_response(subscription, message="Subscription updated")


@payment_router.delete("/subscription")
async def cancel_subscription(
    current_user: dict = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
):
    """Cancel immediately"""
    try:
        await payment_service.cancel_subscription(current_user["id"])
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error canceling subscription: {e}", exc_info=True)
        return error_response("Failed to cancel subscription", status=500)

    return success_response(message="Subscription canceled successfully")


@payment_router.post("/payment-intent")
async def create_payment_intent(
    body: PaymentIntentRequest,
    current_user: dict = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
):
    """One-time payment intent; amount in major currency units"""
    if body.amount is None or not math.isfinite(body.amount) or body.amount <= 0:
        raise ValidationError("Valid amount is required")

    payment_intent = await payment_service.create_payment_intent(body.amount, body.currency or "usd")
    return success_response(payment_intent)
