from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
from incomegoals.core.config import settings
from incomegoals.core.firebase_service import verify_firebase_token
from incomegoals.core.database import SessionLocal
from incomegoals.core.redis_cache import get_cache
from incomegoals.models.user import UserProfile, SubscriptionStatus
from datetime import datetime, timedelta
import logging
import time

logger = logging.getLogger(__name__)

# Rate limit configuration per plan
RATE_LIMITS = {
    'free': {
        'per_minute': 60,
        'per_hour': 1000,
    },
    'paid': {
        'per_minute': 120,
        'per_hour': 5000,
    }
}

# Unauthenticated requests (IP-based)
IP_LIMIT = 100
IP_WINDOW_SECONDS = 15 * 60

# Failed attempts against credential endpoints (IP-based, successes are not counted)
AUTH_FAILURE_LIMIT = 5
AUTH_WINDOW_SECONDS = 15 * 60

EXEMPT_PATHS = {'/health', '/docs', '/openapi.json', '/redoc'}
AUTH_PATHS = {
    'login',
    'register',
    'register-after-payment',
    'forgot-password',
    'reset-password',
}


def plan_bucket(subscription_status: str) -> str:
    """Every paid canonical status shares the paid limits"""
    return 'free' if subscription_status in (None, SubscriptionStatus.FREE.value) else 'paid'


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Middleware to apply rate limiting based on user plan or IP address.
    Credential endpoints get an additional failed-attempt limit per IP.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.cache = get_cache()

    async def dispatch(self, request: Request, call_next):
        if not settings.rate_limit_enabled:
            return await call_next(request)

        path = request.url.path
        if path in EXEMPT_PATHS:
            return await call_next(request)

        # Stripe webhooks are authenticated by signature
        if path.startswith(f"{settings.api_v1_str}/webhooks"):
            return await call_next(request)

        client_ip = self._get_client_ip(request)

        if self._is_auth_path(path):
            if not self._check_auth_failures(client_ip):
                return self._too_many(
                    "Too many authentication attempts, please try again later.",
                    AUTH_WINDOW_SECONDS,
                    AUTH_FAILURE_LIMIT,
                )
            response = await call_next(request)
            if response.status_code >= 400:
                self._record_auth_failure(client_ip)
            return response

        user_id, user_plan = self._resolve_user(request)

        if user_id:
            if not self._check_user_rate_limit(user_id, user_plan):
                limits = RATE_LIMITS[plan_bucket(user_plan)]
                return self._too_many(
                    f"Rate limit exceeded. Your plan allows {limits['per_minute']} requests per minute. Please try again later.",
                    60,
                    limits['per_minute'],
                )
        elif not self._check_ip_rate_limit(client_ip):
            return self._too_many(
                "Too many requests from this IP, please try again later.",
                IP_WINDOW_SECONDS,
                IP_LIMIT,
            )

        response = await call_next(request)

        if user_id:
            limits = RATE_LIMITS[plan_bucket(user_plan)]
            remaining = self._get_remaining_requests(user_id, user_plan)
            response.headers["X-RateLimit-Limit"] = str(limits['per_minute'])
            response.headers["X-RateLimit-Remaining"] = str(remaining)
            response.headers["X-RateLimit-Reset"] = str(int((datetime.utcnow() + timedelta(minutes=1)).timestamp()))

        return response

    def _is_auth_path(self, path: str) -> bool:
        prefix = f"{settings.api_v1_str}/auth/"
        return path.startswith(prefix) and path[len(prefix):].strip('/') in AUTH_PATHS

    def _resolve_user(self, request: Request):
        """Identify the caller from the bearer token, if any. Failures are left to the auth dependency."""
        auth_header = request.headers.get('Authorization')
        if not auth_header or not auth_header.startswith('Bearer '):
            return None, None

        try:
            token = auth_header.split(' ', 1)[1]
            decoded_token = verify_firebase_token(token)
            user_id = decoded_token.get('uid')
            if not user_id:
                return None, None

            db = SessionLocal()
            try:
                profile = db.query(UserProfile).filter(UserProfile.id == user_id).first()
                user_plan = profile.subscription_status if profile else SubscriptionStatus.FREE.value
            finally:
                db.close()

            request.state.user_id = user_id
            request.state.user_plan = user_plan
            return user_id, user_plan
        except Exception as e:
            logger.debug(f"Rate limit middleware: Could not identify user: {e}")
            return None, None

    def _too_many(self, message: str, retry_after: int, limit: int) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "detail": {"error": message, "code": "RATE_LIMITED"},
                "retry_after": retry_after,
            },
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
            }
        )

    def _get_client_ip(self, request: Request) -> str:
        """Extract client IP address from request"""
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

        if request.client:
            return request.client.host

        return "unknown"

    def _window(self, seconds: int) -> int:
        return int(time.time() // seconds)

    def _check_user_rate_limit(self, user_id: str, user_plan: str) -> bool:
        """Check if user is within rate limits for their plan"""
        limits = RATE_LIMITS[plan_bucket(user_plan)]

        current_minute = datetime.utcnow().replace(second=0, microsecond=0)
        minute_key = f"rate_limit:user:{user_id}:minute:{current_minute.isoformat()}"
        minute_count = self.cache.get_int(minute_key) or 0

        if minute_count >= limits['per_minute']:
            logger.warning(f"Rate limit exceeded (per minute) - user: {user_id}, plan: {user_plan}")
            return False

        current_hour = datetime.utcnow().replace(minute=0, second=0, microsecond=0)
        hour_key = f"rate_limit:user:{user_id}:hour:{current_hour.isoformat()}"
        hour_count = self.cache.get_int(hour_key) or 0

        if hour_count >= limits['per_hour']:
            logger.warning(f"Rate limit exceeded (per hour) - user: {user_id}, plan: {user_plan}")
            return False

        self.cache.set(hour_key, hour_count + 1, ttl_minutes=60)
        self.cache.set(minute_key, minute_count + 1, ttl_minutes=1)
        return True

    def _check_ip_rate_limit(self, client_ip: str) -> bool:
        """Check if IP address is within the anonymous request window"""
        key = f"rate_limit:ip:{client_ip}:{self._window(IP_WINDOW_SECONDS)}"
        count = self.cache.incr(key, ttl_seconds=IP_WINDOW_SECONDS)
        if count is not None and count > IP_LIMIT:
            logger.warning(f"Rate limit exceeded - IP: {client_ip}")
            return False
        return True

    def _auth_failure_key(self, client_ip: str) -> str:
        return f"rate_limit:auth:{client_ip}:{self._window(AUTH_WINDOW_SECONDS)}"

    def _check_auth_failures(self, client_ip: str) -> bool:
        failures = self.cache.get_int(self._auth_failure_key(client_ip)) or 0
        if failures >= AUTH_FAILURE_LIMIT:
            logger.warning(f"Auth rate limit exceeded - IP: {client_ip}")
            return False
        return True

    def _record_auth_failure(self, client_ip: str):
        self.cache.incr(self._auth_failure_key(client_ip), ttl_seconds=AUTH_WINDOW_SECONDS)

    def _get_remaining_requests(self, user_id: str, user_plan: str) -> int:
        """Get remaining requests for the current minute"""
        limits = RATE_LIMITS[plan_bucket(user_plan)]
        current_minute = datetime.utcnow().replace(second=0, microsecond=0)
        minute_key = f"rate_limit:user:{user_id}:minute:{current_minute.isoformat()}"
        minute_count = self.cache.get_int(minute_key) or 0
        return max(0, limits['per_minute'] - minute_count)
