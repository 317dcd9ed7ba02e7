"""
Redis access: menu/table caching, rate limiting and the event channel.

Every method degrades to a no-op when Redis is unreachable; the API keeps
working straight from the database.
"""
import os
import json
import logging
import redis
from typing import Optional, List, Dict, Any, Tuple
from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)

TABLES_KEY = "tables:all"
PRODUCTS_KEY = "products:all"


class RedisClient:
    """Thin wrapper over redis-py with graceful degradation."""

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None):
        self.redis_host = os.getenv("REDIS_HOST", "redis") if host is None else host
        redis_port_env = os.getenv("REDIS_SERVICE_PORT") or os.getenv("REDIS_PORT") or "6379"
        self.redis_port = port or int(str(redis_port_env).split(":")[-1])
        self.client = None

        if not self.redis_host:
            logger.info("REDIS_HOST is empty, Redis features are disabled")
            return

        try:
            self.client = redis.Redis(
                host=self.redis_host,
                port=self.redis_port,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            )
            self.client.ping()
        except Exception as e:
            logger.warning(f"Could not connect to Redis: {e}")
            self.client = None

    def is_available(self) -> bool:
        if not self.client:
            return False
        try:
            self.client.ping()
            return True
        except redis.RedisError:
            return False

    # ========== Generic JSON cache ==========

    def _cache_set(self, key: str, value: Any, ttl: int) -> bool:
        if not self.is_available():
            return False
        try:
            self.client.setex(key, ttl, json.dumps(value, default=str))
            return True
        except redis.RedisError as e:
            logger.warning(f"Error caching {key}: {e}")
            return False

    def _cache_get(self, key: str) -> Optional[Any]:
        if not self.is_available():
            return None
        try:
            cached = self.client.get(key)
            if cached:
                return json.loads(cached)
        except redis.RedisError as e:
            logger.warning(f"Error reading {key} from cache: {e}")
        return None

    def _cache_delete(self, *keys: str) -> bool:
        if not self.is_available():
            return False
        try:
            self.client.delete(*keys)
            return True
        except redis.RedisError as e:
            logger.warning(f"Error invalidating {keys}: {e}")
            return False

    # ========== Tables ==========

    def cache_tables(self, tables: List[Dict], ttl: int = 60) -> bool:
        return self._cache_set(TABLES_KEY, tables, ttl)

    def get_cached_tables(self) -> Optional[List[Dict]]:
        return self._cache_get(TABLES_KEY)

    def invalidate_tables_cache(self) -> bool:
        return self._cache_delete(TABLES_KEY)

    # ========== Menu ==========

    def cache_products(self, products: List[Dict], ttl: int = 300) -> bool:
        return self._cache_set(PRODUCTS_KEY, products, ttl)

    def get_cached_products(self) -> Optional[List[Dict]]:
        return self._cache_get(PRODUCTS_KEY)

    def invalidate_products_cache(self) -> bool:
        return self._cache_delete(PRODUCTS_KEY)

    # ========== Rate Limiting ==========

    def check_rate_limit(self, key: str, max_requests: int = 10, window: int = 60) -> Tuple[bool, int]:
        """Returns (allowed, remaining requests in the window)."""
        if not self.is_available():
            return True, max_requests

        try:
            current = self.client.incr(key)
            if current == 1:
                self.client.expire(key, window)

            remaining = max(0, max_requests - current)
            return current <= max_requests, remaining
        except redis.RedisError as e:
            logger.warning(f"Rate limit check failed: {e}")
            return True, max_requests

    # ========== Pub/Sub ==========

    def publish(self, channel: str, message: Dict) -> bool:
        if not self.is_available():
            return False
        try:
            self.client.publish(channel, json.dumps(message, default=str))
            return True
        except redis.RedisError as e:
            logger.warning(f"Error publishing to {channel}: {e}")
            return False

    def pubsub(self):
        if not self.client:
            return None
        return self.client.pubsub(ignore_subscribe_messages=True)

    # ========== Utilities ==========

    def get_cache_info(self) -> Dict[str, Any]:
        if not self.is_available():
            return {"status": "unavailable"}

        try:
            return {
                "status": "available",
                "tables_cached": bool(self.client.exists(TABLES_KEY)),
                "products_cached": bool(self.client.exists(PRODUCTS_KEY)),
                "rate_limit_keys_count": len(self.client.keys("rate_limit:*")),
            }
        except redis.RedisError as e:
            return {"status": "error", "error": str(e)}


redis_client = RedisClient()


def rate_limit(max_requests: int = 10, window: int = 60, key_prefix: str = "rate_limit"):
    """
    FastAPI dependency limiting requests per client address.
    max_requests: requests allowed per window
    window: window length in seconds
    """
    def dependency(request: Request):
        client_host = request.client.host if request.client else "unknown"
        rate_key = f"{key_prefix}:{request.url.path}:{client_host}"

        allowed, remaining = redis_client.check_rate_limit(rate_key, max_requests, window)
        if not allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=f"Rate limit exceeded. Try again in {window} seconds."
            )
        return remaining

    return dependency
