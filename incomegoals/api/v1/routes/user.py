import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from incomegoals.core.database import get_db
from incomegoals.core.firebase_service import AuthError
from incomegoals.core.middleware import get_current_user
from incomegoals.services.auth_service import AuthService, get_auth_service
from incomegoals.services.export_service import ExportService, export_filename, get_export_service

router = APIRouter()
logger = logging.getLogger(__name__)

EXPORT_MEDIA_TYPES = {
    'csv': 'text/csv',
    'json': 'application/json',
}


@router.get("/export")
async def export_data(
    format: Literal["csv", "json"] = Query(default="csv"),
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    export_service: ExportService = Depends(get_export_service),
):
    """Download the user's profile, goals and activities as an attachment"""
    user_id = current_user['uid']
    logger.info(f"export_data: Entry - user: {user_id}, format: {format}")

    try:
        if format == 'json':
            content = export_service.export_json(db, user_id)
        else:
            content = export_service.export_csv(db, user_id)
    except Exception as e:
        logger.error(f"export_data: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Failed to export data. Please try again.", "code": "EXPORT_ERROR"},
        )

    logger.info(f"export_data: Success - user: {user_id}")
    return Response(
        content=content,
        media_type=EXPORT_MEDIA_TYPES[format],
        headers={'Content-Disposition': f'attachment; filename="{export_filename(format)}"'},
    )


@router.post("/resend-verification")
async def resend_verification(
    current_user: dict = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
):
    user_id = current_user['uid']
    logger.info(f"resend_verification: Entry - {user_id}")

    if current_user['claims'].get('email_verified'):
        return {"success": True, "message": "Email is already verified.", "already_verified": True}

    try:
        await auth_service.resend_verification(current_user['token'])
    except AuthError as e:
        logger.warning(f"resend_verification: Rejected - {e.code}")
        if e.code == 'TOO_MANY_ATTEMPTS':
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "error": "Please wait before requesting another verification email.",
                    "code": "RATE_LIMIT_EXCEEDED",
                },
            )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Failed to send verification email. Please try again later.", "code": e.code},
        )

    logger.info(f"resend_verification: Success - {user_id}")
    return {"success": True, "message": "Verification email sent! Please check your inbox and spam folder."}
