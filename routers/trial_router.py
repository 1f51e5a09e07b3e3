"""
Trial Router - API endpoints for trial status and the beta program
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from config.settings import MAX_BETA_USERS
from database import get_db
from services.trial_service import TrialService
from utils.errors import AppError, AuthenticationError, ValidationError
from utils.responses import success_response, error_response
from utils.shared_utils import log_endpoint_event

logger = logging.getLogger(__name__)

# Create router
trial_router = APIRouter(prefix="/api/trial", tags=["trial"])


def get_trial_service(db: AsyncSession = Depends(get_db)) -> TrialService:
    return TrialService(db)


@trial_router.get("/status")
async def get_trial_status(
    current_user: dict = Depends(get_current_user),
    trial_service: TrialService = Depends(get_trial_service),
):
    """Trial status for the current user; 404 when there is no active trial"""
    try:
        trial_status = await trial_service.get_trial_status(current_user["id"])
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error getting trial status: {e}", exc_info=True)
        return error_response("Failed to get trial status", status=500)

    if trial_status is None:
        return error_response("No trial found for user", status=404)
    return success_response(trial_status)


@trial_router.post("/create")
async def create_trial(
    current_user: dict = Depends(get_current_user),
    trial_service: TrialService = Depends(get_trial_service),
):
    """Create a trial for the current user (called during signup)"""
    user_id = current_user["id"]
    email = current_user["email"]
    if not email:
        raise AuthenticationError("User authentication required")

    try:
        existing_trial = await trial_service.get_user_trial(user_id)
        if existing_trial:
            raise ValidationError("User already has an active trial")

        trial = await trial_service.create_trial(user_id, email)
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error creating trial: {e}", exc_info=True)
        return error_response("Failed to create trial", status=500)

    log_endpoint_event("/api/trial/create", user_id, "success", {"is_beta_user": trial.is_beta_user})
    return success_response(trial, message="Trial created")


@trial_router.post("/end")
async def end_trial(
    current_user: dict = Depends(get_current_user),
    trial_service: TrialService = Depends(get_trial_service),
):
    """End the current user's trial"""
    try:
        await trial_service.end_trial(current_user["id"])
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error ending trial: {e}", exc_info=True)
        return error_response("Failed to end trial", status=500)

    return success_response(message="Trial ended successfully")


@trial_router.get("/beta-count")
async def get_beta_user_count(trial_service: TrialService = Depends(get_trial_service)):
    """Public: number of active beta users and the ceiling"""
    beta_user_count = await trial_service.get_beta_user_count()
    return success_response({
        "betaUserCount": beta_user_count,
        "maxBetaUsers": MAX_BETA_USERS,
    })


@trial_router.get("/beta-eligibility")
async def get_beta_eligibility(
    current_user: dict = Depends(get_current_user),
    trial_service: TrialService = Depends(get_trial_service),
):
    """Whether the current user can get beta pricing"""
    can_get_beta_pricing = await trial_service.can_get_beta_pricing(current_user["id"])
    beta_user_count = await trial_service.get_beta_user_count()
    return success_response({
        "canGetBetaPricing": can_get_beta_pricing,
        "betaUserCount": beta_user_count,
        "maxBetaUsers": MAX_BETA_USERS,
    })


# TODO: gate /active and /cleanup on an admin role claim once the identity provider issues one
@trial_router.get("/active")
async def get_active_trials(
    current_user: dict = Depends(get_current_user),
    trial_service: TrialService = Depends(get_trial_service),
):
    """All active trials, newest first"""
    active_trials = await trial_service.get_active_trials()
    return success_response(active_trials)


@trial_router.post("/cleanup")
async def cleanup_expired_trials(
    current_user: dict = Depends(get_current_user),
    trial_service: TrialService = Depends(get_trial_service),
):
    """Deactivate expired trials"""
    cleaned_count = await trial_service.cleanup_expired_trials()
    log_endpoint_event("/api/trial/cleanup", current_user["id"], "success", {"cleaned_count": cleaned_count})
    return success_response(
        {"cleanedCount": cleaned_count},
        message=f"Cleaned up {cleaned_count} expired trials",
    )
