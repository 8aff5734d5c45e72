import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.orm import Session

from incomegoals.core.database import get_db
from incomegoals.core.middleware import get_current_user, is_admin, require_admin
from incomegoals.services.highlevel_service import (
    ALL_SUBSCRIPTION_TAGS,
    SUBSCRIPTION_TAGS,
    HighLevelError,
    HighLevelService,
    get_highlevel_service,
)
from incomegoals.services.profile_service import ProfileService, get_profile_service
from incomegoals.services.subscription_service import resolve_status

router = APIRouter()
logger = logging.getLogger(__name__)


class TrackSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    plan_type: str = Field(alias='planType', min_length=1)
    status: str = Field(min_length=1)


class ContactNoteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    note_text: str = Field(alias='noteText', min_length=1)


def _crm_error(message: str, code: str = "CRM_ERROR") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"error": message, "code": code},
    )


def _require_self_or_admin(current_user: dict, email: str):
    """Users may only look at their own contact; admins may look at any"""
    if (current_user.get('email') or '').lower() == email.lower() or is_admin(current_user):
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"error": "Not allowed to access this contact", "code": "FORBIDDEN"},
    )


async def _find_contact(highlevel_service: HighLevelService, email: str) -> dict:
    try:
        contact = await highlevel_service.find_contact_by_email(email)
    except HighLevelError as e:
        logger.error(f"_find_contact: Failure - {e}")
        raise _crm_error("Failed to search for contact")
    if not contact:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Contact not found", "code": "CONTACT_NOT_FOUND"},
        )
    return contact


@router.get("/test")
async def test_connection(
    current_user: dict = Depends(require_admin),
    highlevel_service: HighLevelService = Depends(get_highlevel_service),
):
    logger.info("test_connection: Entry")
    result = await highlevel_service.test_connection()
    return {
        "success": result['success'],
        "message": "HighLevel API connection successful" if result['success'] else "HighLevel API connection failed",
    }


@router.post("/sync-user")
async def sync_user(
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    highlevel_service: HighLevelService = Depends(get_highlevel_service),
    profile_service: ProfileService = Depends(get_profile_service),
):
    """Push the caller's profile and subscription tag to the CRM"""
    user_id = current_user['uid']
    logger.info(f"sync_user: Entry - {user_id}")

    profile = profile_service.get_profile(db, user_id)
    if not profile:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "User not found", "code": "USER_NOT_FOUND"},
        )

    try:
        result = await highlevel_service.sync_profile(profile.to_dict())
    except HighLevelError as e:
        logger.error(f"sync_user: Failure - {e}")
        raise _crm_error("Failed to sync user to HighLevel")

    logger.info(f"sync_user: Success - {user_id} -> {result['contact_id']}")
    return {
        "success": True,
        "message": "User synced to HighLevel successfully",
        "contact": result['contact'],
    }


@router.get("/contacts/{email}")
async def get_contact(
    email: str,
    current_user: dict = Depends(get_current_user),
    highlevel_service: HighLevelService = Depends(get_highlevel_service),
):
    _require_self_or_admin(current_user, email)
    logger.info(f"get_contact: Entry - {email}")
    contact = await _find_contact(highlevel_service, email)
    return {"success": True, "contact": contact}


@router.get("/contact-tags/{email}")
async def get_contact_tags(
    email: str,
    current_user: dict = Depends(get_current_user),
    highlevel_service: HighLevelService = Depends(get_highlevel_service),
):
    _require_self_or_admin(current_user, email)
    logger.info(f"get_contact_tags: Entry - {email}")

    contact = await _find_contact(highlevel_service, email)
    try:
        tags = await highlevel_service.get_contact_tags(contact['id'])
    except HighLevelError as e:
        logger.error(f"get_contact_tags: Failure - {e}")
        raise _crm_error("Failed to get contact tags")

    subscription_tags = [tag for tag in tags if tag in ALL_SUBSCRIPTION_TAGS]
    return {
        "success": True,
        "email": contact.get('email'),
        "contactId": contact['id'],
        "allTags": tags,
        "subscriptionTags": subscription_tags,
        "availableSubscriptionTags": SUBSCRIPTION_TAGS,
        "hasIGCTags": len(subscription_tags) > 0,
    }


@router.post("/track-subscription")
async def track_subscription(
    request: TrackSubscriptionRequest,
    current_user: dict = Depends(get_current_user),
    highlevel_service: HighLevelService = Depends(get_highlevel_service),
):
    """Record a plan change on a contact: subscription fields plus tag convergence"""
    _require_self_or_admin(current_user, request.email)
    logger.info(f"track_subscription: Entry - {request.email}, plan: {request.plan_type}, status: {request.status}")

    subscription_status = resolve_status(request.plan_type, request.status)
    try:
        result = await highlevel_service.track_subscription_event(
            request.email,
            subscription_status,
            plan_type=request.plan_type,
            billing_status=request.status,
        )
    except HighLevelError as e:
        logger.error(f"track_subscription: Failure - {e}")
        raise _crm_error("Failed to track subscription event")

    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Contact not found", "code": "CONTACT_NOT_FOUND"},
        )

    logger.info(f"track_subscription: Success - {request.email} -> {subscription_status}")
    return {
        "success": True,
        "message": "Subscription event tracked successfully",
        "contact": result,
    }


@router.post("/contacts/{contact_id}/notes")
async def add_contact_note(
    contact_id: str,
    request: ContactNoteRequest,
    current_user: dict = Depends(require_admin),
    highlevel_service: HighLevelService = Depends(get_highlevel_service),
):
    logger.info(f"add_contact_note: Entry - {contact_id}")

    try:
        note = await highlevel_service.add_note(contact_id, request.note_text)
    except HighLevelError as e:
        logger.error(f"add_contact_note: Failure - {e}")
        raise _crm_error("Failed to create note")

    logger.info(f"add_contact_note: Success - {contact_id}")
    return {"success": True, "note": note}
