import logging
from typing import Optional
import redis
from redis.exceptions import RedisError
from incomegoals.core.config import settings

logger = logging.getLogger(__name__)


class RedisCache:
    """Redis-backed counters for rate limiting. Every operation degrades to a no-op when Redis is down."""

    def __init__(self, client: Optional[redis.Redis] = None):
        """Initialize Redis cache (lazy connection unless a client is injected)"""
        self._client: Optional[redis.Redis] = client
        self._connected = client is not None

    def _connect(self):
        """Connect to Redis server"""
        try:
            client_kwargs = {
                'decode_responses': False,
                'socket_connect_timeout': 2,
                'socket_timeout': 2,
                'retry_on_timeout': False,
                'health_check_interval': 0,
            }
            # settings.redis_password takes precedence over a password in the URL
            if settings.redis_password:
                client_kwargs['password'] = settings.redis_password

            self._client = redis.from_url(settings.redis_url, **client_kwargs)
            self._client.ping()
            self._connected = True
            logger.info("RedisCache: Connected to Redis")
        except RedisError as e:
            error_msg = str(e)
            if 'auth' in error_msg.lower() or 'password' in error_msg.lower():
                logger.error(f"RedisCache: Authentication failed - {error_msg}. Ensure REDIS_PASSWORD is set correctly or included in REDIS_URL.")
            else:
                logger.warning(f"RedisCache: Connection failed - {error_msg}")
            self._connected = False
            self._client = None
        except ValueError as e:
            logger.error(f"RedisCache: Invalid REDIS_URL - {e}")
            self._connected = False
            self._client = None

    def _get_client(self) -> Optional[redis.Redis]:
        if not self._connected or self._client is None:
            self._connect()
        return self._client

    def get_int(self, key: str) -> Optional[int]:
        """Get a counter value, None when missing or Redis is unavailable"""
        client = self._get_client()
        if client is None:
            logger.warning(f"RedisCache: Cannot get key {key} - Redis not available")
            return None

        try:
            data = client.get(key)
            if data is None:
                return None
            try:
                return int(data.decode('utf-8'))
            except (ValueError, UnicodeDecodeError) as e:
                logger.warning(f"RedisCache: Failed to decode integer for key {key}: {e}")
                client.delete(key)
                return None
        except RedisError as e:
            logger.error(f"RedisCache: Error getting key {key}: {e}")
            self._connected = False
            return None

    def set(self, key: str, value: int, ttl_minutes: int):
        """Set a counter value with TTL in minutes"""
        client = self._get_client()
        if client is None:
            logger.warning(f"RedisCache: Cannot set key {key} - Redis not available")
            return

        try:
            client.setex(key, ttl_minutes * 60, str(value).encode('utf-8'))
            logger.debug(f"Cache set: {key}, TTL: {ttl_minutes} minutes")
        except RedisError as e:
            logger.error(f"RedisCache: Error setting key {key}: {e}")
            self._connected = False

    def incr(self, key: str, ttl_seconds: int, amount: int = 1) -> Optional[int]:
        """
        Atomically increment a counter, starting its expiry window on first use.

        Returns:
            The new value after increment, or None if Redis unavailable
        """
        client = self._get_client()
        if client is None:
            logger.warning(f"RedisCache: Cannot increment key {key} - Redis not available")
            return None

        try:
            new_value = client.incrby(key, amount)
            if new_value == amount:
                client.expire(key, ttl_seconds)
            logger.debug(f"RedisCache: Incremented {key} by {amount} to {new_value}")
            return new_value
        except RedisError as e:
            logger.error(f"RedisCache: Error incrementing key {key}: {e}")
            self._connected = False
            return None

    def delete(self, key: str):
        client = self._get_client()
        if client is None:
            return

        try:
            client.delete(key)
        except RedisError as e:
            logger.error(f"RedisCache: Error deleting key {key}: {e}")
            self._connected = False

    def ping(self) -> bool:
        """Check if Redis connection is alive"""
        client = self._get_client()
        if client is None:
            return False
        try:
            client.ping()
            return True
        except RedisError:
            self._connected = False
            return False


# Global cache instance
_cache_instance: Optional[RedisCache] = None


def get_cache() -> RedisCache:
    """Get global Redis cache instance"""
    global _cache_instance
    if _cache_instance is None:
        _cache_instance = RedisCache()
    return _cache_instance
