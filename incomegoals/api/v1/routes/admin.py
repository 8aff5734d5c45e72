import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from incomegoals.core.database import get_db
from incomegoals.core.middleware import require_admin
from incomegoals.models.subscription_event import SubscriptionEvent
from incomegoals.models.user import SubscriptionStatus
from incomegoals.services.profile_service import ProfileService, get_profile_service
from incomegoals.services.subscription_service import SubscriptionService, get_subscription_service

router = APIRouter()
logger = logging.getLogger(__name__)

RECENT_EVENTS_LIMIT = 20


class FixSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subscription_status: SubscriptionStatus = Field(alias='subscriptionStatus')
    stripe_customer_id: Optional[str] = Field(default=None, alias='stripeCustomerId')


@router.get("/users/{email}")
async def get_user(
    email: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_admin),
    profile_service: ProfileService = Depends(get_profile_service),
):
    """Profile plus the most recent subscription events for support lookups"""
    logger.info(f"get_user: Entry - {email}, admin: {current_user.get('email')}")

    profile = profile_service.get_profile_by_email(db, email)
    if not profile:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": f"User not found: {email}", "code": "USER_NOT_FOUND"},
        )

    events = (
        db.query(SubscriptionEvent)
        .filter(SubscriptionEvent.user_id == profile.id)
        .order_by(SubscriptionEvent.created_at.desc(), SubscriptionEvent.id.desc())
        .limit(RECENT_EVENTS_LIMIT)
        .all()
    )

    logger.info(f"get_user: Success - {email}")
    return {"user": profile.to_dict(), "events": [event.to_dict() for event in events]}


@router.post("/fix-subscription/{email}")
async def fix_subscription(
    email: str,
    request: FixSubscriptionRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_admin),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Force a user's subscription status.
    The change is audited as a manual_fix event and pushed to the CRM.
    """
    logger.info(f"fix_subscription: Entry - {email} -> {request.subscription_status.value}")

    try:
        result = await subscription_service.apply_manual_fix(
            db,
            email,
            request.subscription_status.value,
            stripe_customer_id=request.stripe_customer_id,
            fixed_by=current_user.get('email') or 'admin',
        )
    except ValueError as e:
        logger.error(f"fix_subscription: ValueError - {e}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": str(e), "code": "USER_NOT_FOUND"},
        )

    logger.info(f"fix_subscription: Success - {email}")
    return {"success": True, "result": result.model_dump()}
