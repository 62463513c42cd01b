"""
Redis client wrapper with connection pooling, retry logic, and error handling.
"""
import redis
import time
import random
import logging
from typing import Optional, Any, Callable, List
from redis.exceptions import (
    ConnectionError,
    TimeoutError,
    RedisError,
    AuthenticationError
)

from shopcore.config import Config
from shopcore.exceptions import RedisConnectionError

logger = logging.getLogger(__name__)


class RedisClient:
    """Redis client with connection pooling and retry logic"""

    def __init__(self, client: Optional[redis.Redis] = None):
        self.pool: Optional[redis.ConnectionPool] = None
        self.client: Optional[redis.Redis] = client
        # An injected client is owned by the caller and never rebuilt
        self._owns_connection = client is None
        if self._owns_connection:
            self._connect()

    def _connect(self):
        """Initialize Redis connection pool"""
        try:
            options = dict(
                max_connections=Config.REDIS_MAX_CONNECTIONS,
                socket_connect_timeout=Config.REDIS_SOCKET_CONNECT_TIMEOUT,
                socket_timeout=Config.REDIS_SOCKET_TIMEOUT,
                retry_on_timeout=Config.REDIS_RETRY_ON_TIMEOUT,
                decode_responses=True,
            )
            if Config.REDIS_SSL:
                # ElastiCache uses self-signed certs
                options["ssl_cert_reqs"] = None

            self.pool = redis.ConnectionPool.from_url(Config.redis_url(), **options)
            self.client = redis.Redis(connection_pool=self.pool)

            # Test connection
            self.client.ping()

        except (ConnectionError, AuthenticationError) as e:
            raise RedisConnectionError(f"Failed to connect to Redis: {e}")

    def _retry_with_backoff(
        self,
        func: Callable,
        max_retries: int = 3,
        initial_backoff: float = 0.1,
        max_backoff: float = 2.0
    ) -> Any:
        """
        Execute function with exponential backoff retry.

        Args:
            func: Function to execute
            max_retries: Maximum number of retry attempts
            initial_backoff: Initial backoff delay in seconds
            max_backoff: Maximum backoff delay in seconds

        Returns:
            Result of function execution

        Raises:
            RedisConnectionError: If all retries fail
        """
        backoff = initial_backoff

        for attempt in range(max_retries):
            try:
                return func()
            except (ConnectionError, TimeoutError) as e:
                if attempt == max_retries - 1:
                    raise RedisConnectionError(f"Redis operation failed after {max_retries} retries: {e}")

                # Exponential backoff with jitter
                jitter = random.uniform(0, backoff * 0.1)
                time.sleep(backoff + jitter)
                backoff = min(backoff * 2, max_backoff)

                if self._owns_connection:
                    try:
                        self._connect()
                    except RedisConnectionError as reconnect_error:
                        logger.warning(f"Reconnect attempt {attempt + 1} failed: {reconnect_error}")

            except RedisError as e:
                # Non-retryable errors
                raise RedisConnectionError(f"Redis error: {e}")

    def get(self, key: str) -> Optional[str]:
        """Get value from Redis"""
        return self._retry_with_backoff(lambda: self.client.get(key))

    def mget(self, keys: List[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return self._retry_with_backoff(lambda: self.client.mget(keys))

    def delete(self, *keys: str) -> int:
        """Delete one or more keys"""
        return self._retry_with_backoff(lambda: self.client.delete(*keys))

    def hget(self, key: str, field: str) -> Optional[str]:
        """Get field from hash"""
        return self._retry_with_backoff(lambda: self.client.hget(key, field))

    def hset(self, key: str, field: Optional[str] = None, value: Any = None, mapping: Optional[dict] = None) -> int:
        """Set field(s) in hash"""
        return self._retry_with_backoff(lambda: self.client.hset(key, field, value, mapping=mapping))

    def hgetall(self, key: str) -> dict:
        """Get all fields from hash"""
        return self._retry_with_backoff(lambda: self.client.hgetall(key))

    def zrange(self, key: str, start: int, end: int, desc: bool = False, withscores: bool = False) -> list:
        return self._retry_with_backoff(
            lambda: self.client.zrange(key, start, end, desc=desc, withscores=withscores)
        )

    def zrangebyscore(self, key: str, min_score: Any, max_score: Any) -> list:
        return self._retry_with_backoff(lambda: self.client.zrangebyscore(key, min_score, max_score))

    def zcard(self, key: str) -> int:
        return self._retry_with_backoff(lambda: self.client.zcard(key))

    def lrange(self, key: str, start: int, end: int) -> list:
        return self._retry_with_backoff(lambda: self.client.lrange(key, start, end))

    def sadd(self, key: str, *members: str) -> int:
        return self._retry_with_backoff(lambda: self.client.sadd(key, *members))

    def srem(self, key: str, *members: str) -> int:
        return self._retry_with_backoff(lambda: self.client.srem(key, *members))

    def smembers(self, key: str) -> set:
        return self._retry_with_backoff(lambda: self.client.smembers(key))

    def publish(self, channel: str, message: str) -> int:
        return self._retry_with_backoff(lambda: self.client.publish(channel, message), max_retries=1)

    def eval(self, script: str, num_keys: int, *keys_and_args) -> Any:
        """Execute Lua script"""
        return self._retry_with_backoff(lambda: self.client.eval(script, num_keys, *keys_and_args))

    def transaction(self, build: Callable[[Any], None]) -> list:
        """
        Queue commands on a MULTI/EXEC pipeline and execute them atomically.

        Args:
            build: Callable receiving the pipeline and queueing commands on it

        Returns:
            List of command results in queue order
        """
        def _execute():
            pipe = self.client.pipeline(transaction=True)
            build(pipe)
            return pipe.execute()
        return self._retry_with_backoff(_execute)

    def ping(self) -> bool:
        """Test Redis connection"""
        try:
            return self.client.ping()
        except RedisError:
            return False

    def close(self):
        """Close connection pool"""
        if self.pool:
            self.pool.disconnect()


# Global Redis client instance
_redis_client: Optional[RedisClient] = None

def get_redis_client() -> RedisClient:
    """Get or create Redis client instance (singleton)"""
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client
