import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.orm import Session

from incomegoals.core.config import settings
from incomegoals.core.database import get_db
from incomegoals.core.firebase_service import AuthError
from incomegoals.core.middleware import get_current_user
from incomegoals.core.security import SESSION_COOKIE_NAME, decrypt_session_token, encrypt_session_token
from incomegoals.models.user import PlanTypeName, UserTypeName
from incomegoals.services.auth_service import AuthService, get_auth_service
from incomegoals.services.profile_service import ProfileService, get_profile_service

router = APIRouter()
logger = logging.getLogger(__name__)

SESSION_COOKIE_MAX_AGE = 30 * 24 * 60 * 60

# AuthError codes that are not plain 400s
AUTH_ERROR_STATUS = {
    'EMAIL_EXISTS': status.HTTP_409_CONFLICT,
    'INVALID_CREDENTIALS': status.HTTP_401_UNAUTHORIZED,
    'USER_DISABLED': status.HTTP_401_UNAUTHORIZED,
    'TOKEN_EXPIRED': status.HTTP_401_UNAUTHORIZED,
    'INVALID_REFRESH_TOKEN': status.HTTP_401_UNAUTHORIZED,
    'TOO_MANY_ATTEMPTS': status.HTTP_429_TOO_MANY_REQUESTS,
    'AUTH_UNAVAILABLE': status.HTTP_503_SERVICE_UNAVAILABLE,
    'AUTH_NOT_CONFIGURED': status.HTTP_503_SERVICE_UNAVAILABLE,
    'REGISTRATION_FAILED': status.HTTP_500_INTERNAL_SERVER_ERROR,
    'PROFILE_ERROR': status.HTTP_500_INTERNAL_SERVER_ERROR,
    'SIGNIN_ERROR': status.HTTP_500_INTERNAL_SERVER_ERROR,
    'SESSION_ALREADY_USED': status.HTTP_409_CONFLICT,
}


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    password: str = Field(min_length=8)
    first_name: str = Field(alias='firstName', min_length=1)
    last_name: str = Field(alias='lastName', min_length=1)
    user_type: UserTypeName = Field(alias='userType')


class RegisterAfterPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    password: str = Field(min_length=6)
    first_name: str = Field(alias='firstName', min_length=1)
    last_name: str = Field(alias='lastName', min_length=1)
    user_type: UserTypeName = Field(alias='userType')
    session_id: str = Field(alias='sessionId', min_length=1)
    plan_type: Optional[PlanTypeName] = Field(default=None, alias='planType')


class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    password: str = Field(min_length=1)
    remember_me: bool = Field(default=False, alias='rememberMe')


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = None


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    oob_code: str = Field(min_length=1)
    new_password: str = Field(min_length=8)


class UpdateProfileRequest(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)


class UpdateActivityRoleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    default_activity_role: UserTypeName = Field(alias='defaultActivityRole')


def _auth_http_error(e: AuthError) -> HTTPException:
    return HTTPException(
        status_code=AUTH_ERROR_STATUS.get(e.code, status.HTTP_400_BAD_REQUEST),
        detail={"error": e.message, "code": e.code},
    )


def _server_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": message, "code": "SERVER_ERROR"},
    )


def _set_session_cookie(response: Response, refresh_token: Optional[str], remember_me: bool = True):
    if not refresh_token:
        return
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=encrypt_session_token(refresh_token),
        max_age=SESSION_COOKIE_MAX_AGE if remember_me else None,
        httponly=True,
        secure=settings.is_production,
        samesite='lax',
    )


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    db: Session = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
):
    logger.info(f"register: Entry - {request.email}")

    try:
        user = await auth_service.register(
            db,
            email=request.email,
            password=request.password,
            first_name=request.first_name,
            last_name=request.last_name,
            user_type=request.user_type,
        )
        logger.info(f"register: Success - {user['id']}")
        return {
            "message": "Registration successful. Please check your email to verify your account.",
            "user": user,
        }
    except AuthError as e:
        logger.warning(f"register: Rejected - {e.code}")
        raise _auth_http_error(e)
    except Exception as e:
        logger.error(f"register: Failure - {e}")
        raise _server_error("Internal server error during registration")


@router.post("/register-after-payment")
async def register_after_payment(
    request: RegisterAfterPaymentRequest,
    response: Response,
    db: Session = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
):
    """Create the account for a completed guest checkout and sign it in"""
    logger.info(f"register_after_payment: Entry - {request.email}")

    try:
        result = await auth_service.register_after_payment(
            db,
            email=request.email,
            password=request.password,
            first_name=request.first_name,
            last_name=request.last_name,
            user_type=request.user_type,
            session_id=request.session_id,
            plan_type=request.plan_type,
        )
    except AuthError as e:
        logger.warning(f"register_after_payment: Rejected - {e.code}")
        raise _auth_http_error(e)
    except Exception as e:
        logger.error(f"register_after_payment: Failure - {e}")
        raise _server_error("Internal server error during registration")

    _set_session_cookie(response, result['session'].get('refresh_token'))
    logger.info(f"register_after_payment: Success - {result['user']['id']}")
    return {
        "success": True,
        "message": "Account created successfully",
        "token": result['session'].get('access_token'),
        "user": result['user'],
    }


@router.post("/login")
async def login(
    request: LoginRequest,
    response: Response,
    db: Session = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
):
    logger.info(f"login: Entry - {request.email}")

    try:
        result = await auth_service.login(db, request.email, request.password)
    except AuthError as e:
        logger.warning(f"login: Rejected - {e.code}")
        raise _auth_http_error(e)
    except Exception as e:
        logger.error(f"login: Failure - {e}")
        raise _server_error("Internal server error during login")

    session = result['session']
    _set_session_cookie(response, session.get('refresh_token'), remember_me=request.remember_me)
    logger.info(f"login: Success - {result['user']['id']}")
    return {
        "message": "Login successful",
        "user": result['user'],
        "session": {
            "access_token": session.get('access_token'),
            "refresh_token": session.get('refresh_token'),
            "expires_in": session.get('expires_in'),
        },
    }


@router.post("/logout")
async def logout(
    response: Response,
    current_user: dict = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
):
    """Revoke all refresh tokens for the user and clear the session cookie"""
    user_id = current_user['uid']
    logger.info(f"logout: Entry - {user_id}")

    try:
        await auth_service.logout(user_id)
    except Exception as e:
        # The cookie is cleared regardless
        logger.error(f"logout: Revocation failed - {e}")

    response.delete_cookie(SESSION_COOKIE_NAME)
    logger.info(f"logout: Success - {user_id}")
    return {"message": "Logout successful"}


@router.post("/refresh")
async def refresh(
    http_request: Request,
    response: Response,
    request: Optional[RefreshRequest] = None,
    auth_service: AuthService = Depends(get_auth_service),
):
    """Exchange a refresh token (body or session cookie) for a new token pair"""
    logger.info("refresh: Entry")

    refresh_token = request.refresh_token if request else None
    if not refresh_token:
        cookie = http_request.cookies.get(SESSION_COOKIE_NAME)
        refresh_token = decrypt_session_token(cookie) if cookie else None

    if not refresh_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Refresh token required", "code": "UNAUTHORIZED"},
        )

    try:
        session = await auth_service.refresh(refresh_token)
    except AuthError as e:
        logger.warning(f"refresh: Rejected - {e.code}")
        raise _auth_http_error(e)

    _set_session_cookie(response, session.get('refresh_token'))
    logger.info(f"refresh: Success - {session.get('uid')}")
    return {
        "session": {
            "access_token": session.get('access_token'),
            "refresh_token": session.get('refresh_token'),
            "expires_in": session.get('expires_in'),
        }
    }


@router.post("/forgot-password")
async def forgot_password(
    request: ForgotPasswordRequest,
    auth_service: AuthService = Depends(get_auth_service),
):
    logger.info("forgot_password: Entry")
    await auth_service.forgot_password(request.email)
    return {"message": "If an account with this email exists, a password reset link has been sent."}


@router.post("/reset-password")
async def reset_password(
    request: ResetPasswordRequest,
    auth_service: AuthService = Depends(get_auth_service),
):
    logger.info("reset_password: Entry")

    try:
        await auth_service.reset_password(request.oob_code, request.new_password)
    except AuthError as e:
        logger.warning(f"reset_password: Rejected - {e.code}")
        raise _auth_http_error(e)

    logger.info("reset_password: Success")
    return {"message": "Password updated successfully"}


@router.get("/profile")
async def get_profile(
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    profile_service: ProfileService = Depends(get_profile_service),
):
    user_id = current_user['uid']
    logger.info(f"get_profile: Entry - {user_id}")

    try:
        profile = profile_service.get_profile(db, user_id)
    except Exception as e:
        logger.error(f"get_profile: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Failed to fetch profile", "code": "PROFILE_ERROR"},
        )

    logger.info(f"get_profile: Success - {user_id}")
    return {
        "user": {
            "id": user_id,
            "email": current_user.get('email'),
            "profile": profile.to_dict() if profile else None,
        }
    }


@router.put("/profile")
async def update_profile(
    request: UpdateProfileRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    profile_service: ProfileService = Depends(get_profile_service),
):
    user_id = current_user['uid']
    logger.info(f"update_profile: Entry - {user_id}")

    try:
        profile = profile_service.update_names(
            db, user_id, request.first_name.strip(), request.last_name.strip()
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": str(e), "code": "PROFILE_NOT_FOUND"},
        )
    except Exception as e:
        logger.error(f"update_profile: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Failed to update profile", "code": "UPDATE_ERROR"},
        )

    logger.info(f"update_profile: Success - {user_id}")
    return {"message": "Profile updated successfully", "profile": profile.to_dict()}


@router.post("/update-activity-role")
async def update_activity_role(
    request: UpdateActivityRoleRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    profile_service: ProfileService = Depends(get_profile_service),
):
    user_id = current_user['uid']
    logger.info(f"update_activity_role: Entry - {user_id}")

    try:
        profile_service.update_activity_role(db, user_id, request.default_activity_role)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": str(e), "code": "PROFILE_NOT_FOUND"},
        )
    except Exception as e:
        logger.error(f"update_activity_role: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Failed to update activity role preference", "code": "UPDATE_ERROR"},
        )

    logger.info(f"update_activity_role: Success - {user_id}")
    return {
        "message": "Activity role preference updated successfully",
        "defaultActivityRole": request.default_activity_role,
    }
