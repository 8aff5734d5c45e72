"""
Firebase service with dependency injection for better testability.

Token verification and account administration go through the Admin SDK;
password sign-in, token refresh and out-of-band e-mails go through the
Identity Toolkit REST API, which the Admin SDK does not cover.
"""

from typing import Protocol, Optional
import firebase_admin
from firebase_admin import credentials, auth, firestore
from firebase_admin.auth import EmailAlreadyExistsError, ExpiredIdTokenError, InvalidIdTokenError
import httpx
from incomegoals.core.config import settings
import logging

logger = logging.getLogger(__name__)

IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1"
SECURE_TOKEN_URL = "https://securetoken.googleapis.com/v1/token"


class AuthError(Exception):
    """Auth collaborator rejected a request. `code` is an API-facing error code."""

    def __init__(self, message: str, code: str = "AUTH_ERROR"):
        super().__init__(message)
        self.message = message
        self.code = code


class TokenExpiredError(AuthError):
    def __init__(self, message: str = "Token expired"):
        super().__init__(message, code="TOKEN_EXPIRED")


class InvalidTokenError(AuthError):
    def __init__(self, message: str = "Invalid token"):
        super().__init__(message, code="UNAUTHORIZED")


# Identity Toolkit error messages mapped to user-facing messages and codes
_REST_ERRORS = {
    'EMAIL_NOT_FOUND': ("Invalid email or password", "INVALID_CREDENTIALS"),
    'INVALID_PASSWORD': ("Invalid email or password", "INVALID_CREDENTIALS"),
    'INVALID_LOGIN_CREDENTIALS': ("Invalid email or password", "INVALID_CREDENTIALS"),
    'USER_DISABLED': ("This account has been disabled", "USER_DISABLED"),
    'TOO_MANY_ATTEMPTS_TRY_LATER': ("Too many attempts, please try again later", "TOO_MANY_ATTEMPTS"),
    'TOKEN_EXPIRED': ("Session expired, please sign in again", "TOKEN_EXPIRED"),
    'INVALID_REFRESH_TOKEN': ("Invalid refresh token", "INVALID_REFRESH_TOKEN"),
    'EXPIRED_OOB_CODE': ("Reset link has expired", "INVALID_RESET_CODE"),
    'INVALID_OOB_CODE': ("Reset link is invalid", "INVALID_RESET_CODE"),
}


class FirebaseAuthProvider(Protocol):
    """Protocol for Firebase authentication operations"""

    def verify_id_token(self, token: str, check_revoked: bool = False) -> dict:
        """Verify Firebase ID token"""
        ...

    def create_user(self, **kwargs):
        ...

    def revoke_refresh_tokens(self, uid: str):
        ...


class FirebaseFirestoreProvider(Protocol):
    """Protocol for Firestore operations"""

    def client(self):
        """Get Firestore client"""
        ...


class FirebaseService:
    """Firebase service with dependency injection support"""

    def __init__(
        self,
        auth_provider: Optional[FirebaseAuthProvider] = None,
        firestore_provider: Optional[FirebaseFirestoreProvider] = None,
        web_api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.auth_provider = auth_provider or auth
        self.firestore_provider = firestore_provider or firestore
        self.web_api_key = web_api_key or settings.firebase_web_api_key
        self.transport = transport
        self.logger = logging.getLogger(__name__)

    def verify_token(self, token: str) -> dict:
        """
        Verify Firebase JWT token and return decoded token.

        Raises TokenExpiredError when the client should refresh and retry,
        InvalidTokenError for anything else (revoked, malformed, wrong project).
        """
        self.logger.info("verify_token: Entry")

        try:
            decoded_token = self.auth_provider.verify_id_token(token, check_revoked=True)
            self.logger.info(f"verify_token: Success - {decoded_token.get('uid')}")
            return decoded_token
        except ExpiredIdTokenError as e:
            self.logger.warning(f"verify_token: Expired - {e}")
            raise TokenExpiredError()
        except InvalidIdTokenError as e:
            self.logger.warning(f"verify_token: Invalid - {e}")
            raise InvalidTokenError()
        except Exception as e:
            self.logger.error(f"verify_token: Failure - {e}")
            raise InvalidTokenError()

    def create_user(self, email: str, password: str, display_name: Optional[str] = None) -> str:
        """Create an account in Firebase Auth and return its uid"""
        self.logger.info(f"create_user: Entry - {email}")

        try:
            kwargs = {'email': email, 'password': password}
            if display_name:
                kwargs['display_name'] = display_name
            user_record = self.auth_provider.create_user(**kwargs)
            self.logger.info(f"create_user: Success - {user_record.uid}")
            return user_record.uid
        except EmailAlreadyExistsError:
            self.logger.warning(f"create_user: Email already exists - {email}")
            raise AuthError("An account with this email already exists", code="EMAIL_EXISTS")
        except Exception as e:
            self.logger.error(f"create_user: Failure - {e}")
            raise AuthError(str(e), code="REGISTRATION_FAILED")

    def revoke_refresh_tokens(self, uid: str):
        """Sign the user out everywhere by revoking their refresh tokens"""
        self.logger.info(f"revoke_refresh_tokens: Entry - {uid}")

        try:
            self.auth_provider.revoke_refresh_tokens(uid)
            self.logger.info(f"revoke_refresh_tokens: Success - {uid}")
        except Exception as e:
            self.logger.error(f"revoke_refresh_tokens: Failure - {e}")
            raise

    async def sign_in_with_password(self, email: str, password: str) -> dict:
        """Exchange email/password for an ID token and refresh token"""
        self.logger.info(f"sign_in_with_password: Entry - {email}")

        data = await self._post_identity_toolkit(
            "accounts:signInWithPassword",
            {'email': email, 'password': password, 'returnSecureToken': True},
        )
        self.logger.info(f"sign_in_with_password: Success - {data.get('localId')}")
        return {
            'uid': data.get('localId'),
            'email': data.get('email', email),
            'access_token': data.get('idToken'),
            'refresh_token': data.get('refreshToken'),
            'expires_in': int(data.get('expiresIn', 3600)),
        }

    async def refresh_session(self, refresh_token: str) -> dict:
        """Exchange a refresh token for a new token pair"""
        self.logger.info("refresh_session: Entry")

        if not self.web_api_key:
            raise AuthError("Firebase web API key not configured", code="AUTH_NOT_CONFIGURED")

        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await client.post(
                    SECURE_TOKEN_URL,
                    params={'key': self.web_api_key},
                    data={'grant_type': 'refresh_token', 'refresh_token': refresh_token},
                    timeout=10.0,
                )
        except httpx.HTTPError as e:
            self.logger.error(f"refresh_session: Failure - {e}")
            raise AuthError("Authentication service unavailable", code="AUTH_UNAVAILABLE")

        if response.status_code != 200:
            raise self._rest_error("refresh_session", response)

        data = response.json()
        self.logger.info(f"refresh_session: Success - {data.get('user_id')}")
        return {
            'uid': data.get('user_id'),
            'access_token': data.get('id_token'),
            'refresh_token': data.get('refresh_token'),
            'expires_in': int(data.get('expires_in', 3600)),
        }

    async def send_password_reset_email(self, email: str):
        self.logger.info(f"send_password_reset_email: Entry - {email}")
        await self._post_identity_toolkit(
            "accounts:sendOobCode",
            {'requestType': 'PASSWORD_RESET', 'email': email},
        )
        self.logger.info(f"send_password_reset_email: Success - {email}")

    async def send_email_verification(self, id_token: str):
        self.logger.info("send_email_verification: Entry")
        await self._post_identity_toolkit(
            "accounts:sendOobCode",
            {'requestType': 'VERIFY_EMAIL', 'idToken': id_token},
        )
        self.logger.info("send_email_verification: Success")

    async def confirm_password_reset(self, oob_code: str, new_password: str) -> dict:
        self.logger.info("confirm_password_reset: Entry")
        data = await self._post_identity_toolkit(
            "accounts:resetPassword",
            {'oobCode': oob_code, 'newPassword': new_password},
        )
        self.logger.info("confirm_password_reset: Success")
        return {'email': data.get('email')}

    async def _post_identity_toolkit(self, method: str, payload: dict) -> dict:
        if not self.web_api_key:
            raise AuthError("Firebase web API key not configured", code="AUTH_NOT_CONFIGURED")

        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await client.post(
                    f"{IDENTITY_TOOLKIT_URL}/{method}",
                    params={'key': self.web_api_key},
                    json=payload,
                    timeout=10.0,
                )
        except httpx.HTTPError as e:
            self.logger.error(f"{method}: Failure - {e}")
            raise AuthError("Authentication service unavailable", code="AUTH_UNAVAILABLE")

        if response.status_code != 200:
            raise self._rest_error(method, response)
        return response.json()

    def _rest_error(self, method: str, response: httpx.Response) -> AuthError:
        try:
            error = response.json().get('error', {})
            raw_message = error.get('message', '') if isinstance(error, dict) else str(error)
        except ValueError:
            raw_message = response.text
        # Messages look like "WEAK_PASSWORD : Password should be at least 6 characters"
        key = raw_message.split(' ')[0] if raw_message else ''
        message, code = _REST_ERRORS.get(key, (raw_message or "Authentication failed", "AUTH_ERROR"))
        self.logger.warning(f"{method}: Rejected - {response.status_code} {raw_message}")
        return AuthError(message, code=code)

    def get_firestore_client(self):
        """Get Firestore client instance"""
        return self.firestore_provider.client()


# Global Firebase service instance
_firebase_service: Optional[FirebaseService] = None


def init_firebase():
    """Initialize Firebase Admin SDK"""
    logger.info("init_firebase: Entry")

    try:
        if not firebase_admin._apps:
            cred = credentials.Certificate(settings.firebase_credentials_path)
            firebase_admin.initialize_app(cred, {
                'projectId': settings.firebase_project_id,
            })
            logger.info("init_firebase: Success")
        else:
            logger.info("init_firebase: Already initialized")
    except Exception as e:
        logger.error(f"init_firebase: Failure - {e}")
        raise


def get_firebase_service() -> FirebaseService:
    """Get Firebase service instance (singleton)"""
    global _firebase_service
    if _firebase_service is None:
        _firebase_service = FirebaseService()
    return _firebase_service


def set_firebase_service(service: Optional[FirebaseService]):
    """Set Firebase service instance (for testing)"""
    global _firebase_service
    _firebase_service = service


def verify_firebase_token(token: str) -> dict:
    """Verify Firebase JWT token and return decoded token."""
    service = get_firebase_service()
    return service.verify_token(token)


def get_firestore_client():
    """Get Firestore client instance"""
    service = get_firebase_service()
    return service.get_firestore_client()
