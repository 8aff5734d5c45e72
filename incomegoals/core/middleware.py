from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from incomegoals.core.config import settings
from incomegoals.core.firebase_service import verify_firebase_token, AuthError
import logging

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> dict:
    """
    Dependency to get current authenticated user from Firebase token.
    Protects routes that require authentication.

    Expired tokens answer 401 with code TOKEN_EXPIRED so clients know to
    refresh; every other failure answers 401 with code UNAUTHORIZED.
    """
    logger.info("get_current_user: Entry")

    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Access token required", "code": "UNAUTHORIZED"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        decoded_token = verify_firebase_token(credentials.credentials)
    except AuthError as e:
        logger.warning(f"get_current_user: Failure - {e.code}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": e.message, "code": e.code},
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = decoded_token.get('uid')
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Invalid authentication credentials", "code": "UNAUTHORIZED"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    logger.info(f"get_current_user: Success - {user_id}")
    return {
        'uid': user_id,
        'email': decoded_token.get('email'),
        'token': credentials.credentials,
        'claims': decoded_token,
    }


def is_admin(current_user: dict) -> bool:
    """Admins are the accounts listed in ADMIN_EMAILS"""
    email = (current_user.get('email') or '').lower()
    return bool(email) and email in [admin.lower() for admin in settings.admin_emails]


async def require_admin(current_user: dict = Depends(get_current_user)) -> dict:
    if not is_admin(current_user):
        logger.warning(f"require_admin: Unauthorized - user: {current_user.get('email')}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "Admin access required", "code": "FORBIDDEN"},
        )
    return current_user
