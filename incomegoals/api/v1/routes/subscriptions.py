import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from incomegoals.core.config import settings
from incomegoals.core.database import get_db
from incomegoals.core.middleware import get_current_user
from incomegoals.models.user import PlanTypeName
from incomegoals.services.billing_service import BillingError, BillingService, get_billing_service
from incomegoals.services.profile_service import ProfileService, get_profile_service
from incomegoals.services.subscription_service import SubscriptionService, get_subscription_service

router = APIRouter()
logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {
    'Cache-Control': 'no-store, no-cache, must-revalidate, private',
    'Pragma': 'no-cache',
    'Expires': '0',
}


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_type: PlanTypeName = Field(alias='planType')


class VerifySessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias='sessionId', min_length=1)


def _billing_error(message: str, code: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": message, "code": code},
    )


@router.get("/plans")
async def get_plans(billing_service: BillingService = Depends(get_billing_service)):
    """
    Get all available pricing plans.
    Public endpoint - no authentication required.
    """
    logger.info("get_plans: Entry")
    plans = billing_service.get_plans()
    logger.info(f"get_plans: Success - {len(plans)} plans")
    return {"success": True, "plans": plans}


@router.post("/checkout")
async def create_checkout(
    request: CheckoutRequest,
    current_user: dict = Depends(get_current_user),
    billing_service: BillingService = Depends(get_billing_service),
):
    """Checkout for a signed-in user; returns to the app after upgrade"""
    user_id = current_user['uid']
    logger.info(f"create_checkout: Entry - user: {user_id}, plan: {request.plan_type}")

    try:
        session = await asyncio.to_thread(
            billing_service.create_checkout_session,
            request.plan_type,
            f"{settings.base_url}/app?upgrade_success=1&session_id={{CHECKOUT_SESSION_ID}}",
            f"{settings.base_url}/pricing?canceled=1",
            user_id,
            current_user.get('email'),
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": str(e), "code": "INVALID_PLAN"},
        )
    except BillingError as e:
        logger.error(f"create_checkout: Failure - {e}")
        raise _billing_error("Failed to create checkout session", "CHECKOUT_ERROR")

    logger.info(f"create_checkout: Success - {session['session_id']}")
    return {"success": True, "checkoutUrl": session['url'], "sessionId": session['session_id']}


@router.post("/guest-checkout")
async def create_guest_checkout(
    request: CheckoutRequest,
    billing_service: BillingService = Depends(get_billing_service),
):
    """
    Checkout without an account. The session is tagged as a guest and the
    buyer registers afterwards with the session id.
    """
    logger.info(f"create_guest_checkout: Entry - plan: {request.plan_type}")

    try:
        session = await asyncio.to_thread(
            billing_service.create_checkout_session,
            request.plan_type,
            f"{settings.base_url}/register-success?session_id={{CHECKOUT_SESSION_ID}}&plan={request.plan_type}",
            f"{settings.base_url}/pricing?canceled=1",
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": str(e), "code": "INVALID_PLAN"},
        )
    except BillingError as e:
        logger.error(f"create_guest_checkout: Failure - {e}")
        raise _billing_error("Failed to create checkout session", "CHECKOUT_ERROR")

    logger.info(f"create_guest_checkout: Success - {session['session_id']}")
    return {"success": True, "checkoutUrl": session['url'], "sessionId": session['session_id']}


@router.get("/status")
async def get_subscription_status(
    response: Response,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
):
    """Current plan for feature gating. Degrades instead of failing when Stripe is down."""
    user_id = current_user['uid']
    logger.info(f"get_subscription_status: Entry - user: {user_id}")

    subscription = await subscription_service.get_subscription_status(db, user_id)

    response.headers.update(NO_STORE_HEADERS)
    logger.info(f"get_subscription_status: Success - user: {user_id}, status: {subscription['status']}")
    return {"success": True, "subscription": subscription}


@router.post("/billing-portal")
async def create_billing_portal(
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    billing_service: BillingService = Depends(get_billing_service),
    profile_service: ProfileService = Depends(get_profile_service),
):
    user_id = current_user['uid']
    logger.info(f"create_billing_portal: Entry - user: {user_id}")

    profile = profile_service.get_profile(db, user_id)
    customer_id = profile.stripe_customer_id if profile else None

    try:
        session = await asyncio.to_thread(
            billing_service.create_billing_portal_session,
            customer_id,
            f"{settings.base_url}/profile",
        )
    except ValueError as e:
        logger.warning(f"create_billing_portal: Refused - user: {user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "No billing portal available for this account type", "code": "NO_BILLING_ACCOUNT"},
        )
    except BillingError as e:
        logger.error(f"create_billing_portal: Failure - {e}")
        raise _billing_error("Failed to create billing portal session", "PORTAL_ERROR")

    logger.info(f"create_billing_portal: Success - user: {user_id}")
    return {"success": True, "portalUrl": session['url']}


async def _set_cancel_flag(
    db: Session,
    user_id: str,
    cancel: bool,
    billing_service: BillingService,
    subscription_service: SubscriptionService,
) -> dict:
    current = subscription_service.find_current_subscription(db, user_id)
    if current is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "No active subscription found", "code": "NO_SUBSCRIPTION"},
        )
    try:
        return await asyncio.to_thread(
            billing_service.set_cancel_at_period_end, current.stripe_subscription_id, cancel
        )
    except BillingError as e:
        logger.error(f"_set_cancel_flag: Failure - {e}")
        if cancel:
            raise _billing_error("Failed to cancel subscription", "CANCEL_ERROR")
        raise _billing_error("Failed to reactivate subscription", "REACTIVATE_ERROR")


@router.post("/cancel")
async def cancel_subscription(
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    billing_service: BillingService = Depends(get_billing_service),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
):
    """Cancel at period end; access is kept until then"""
    user_id = current_user['uid']
    logger.info(f"cancel_subscription: Entry - user: {user_id}")

    subscription = await _set_cancel_flag(db, user_id, True, billing_service, subscription_service)

    logger.info(f"cancel_subscription: Success - user: {user_id}")
    return {
        "success": True,
        "message": "Subscription will be canceled at the end of the current billing period",
        "current_period_end": subscription.get('current_period_end'),
    }


@router.post("/reactivate")
async def reactivate_subscription(
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    billing_service: BillingService = Depends(get_billing_service),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
):
    user_id = current_user['uid']
    logger.info(f"reactivate_subscription: Entry - user: {user_id}")

    await _set_cancel_flag(db, user_id, False, billing_service, subscription_service)

    logger.info(f"reactivate_subscription: Success - user: {user_id}")
    return {"success": True, "message": "Subscription reactivated successfully"}


@router.post("/verify-session")
async def verify_session(
    request: VerifySessionRequest,
    billing_service: BillingService = Depends(get_billing_service),
):
    """Look up a checkout session after redirect. Public, used before registration."""
    logger.info(f"verify_session: Entry - {request.session_id}")

    try:
        session = await asyncio.to_thread(billing_service.retrieve_checkout_session, request.session_id)
    except BillingError as e:
        logger.error(f"verify_session: Failure - {e}")
        raise _billing_error("Failed to verify session", "VERIFY_ERROR")

    logger.info(f"verify_session: Success - {request.session_id}: {session['payment_status']}")
    return {"success": True, "session": session}
