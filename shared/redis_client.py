"""
Async Redis Client Wrapper for the Meeting STT pipeline

Provides connection pooling, helper functions, and singleton pattern for
the transcript store's Redis connectivity.

Configuration is read from environment variables (no load_dotenv() calls):
- MEETING_STT_REDIS_HOST: Redis server host (default: localhost)
- MEETING_STT_REDIS_PORT: Redis server port (default: 6379)
- MEETING_STT_REDIS_DB: Redis database number (default: 0)
- MEETING_STT_REDIS_PASSWORD: Redis password (optional, default: None)
- MEETING_STT_REDIS_SSL: Use TLS (default: false)
- MEETING_STT_REDIS_MAX_CONNECTIONS: Connection pool size (default: 50)
- MEETING_STT_REDIS_SOCKET_TIMEOUT: Socket timeout in seconds (default: 10.0)
- MEETING_STT_REDIS_SOCKET_CONNECT_TIMEOUT: Connect timeout in seconds (default: 10.0)
- MEETING_STT_REDIS_URL / REDIS_URL: Connection string (overrides individual settings)

Usage:
    from shared.redis_client import get_redis_client, close_redis_client

    redis = await get_redis_client()
    await redis.set("key", "value", ex=3600)
    value = await redis.get("key")
    await close_redis_client()
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional, Dict, Any

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError

# Module-level logger
logger = logging.getLogger(__name__)

# Singleton instances
_redis_client: Optional[redis.Redis] = None
_redis_pool: Optional[redis.ConnectionPool] = None
_lock = asyncio.Lock()


@dataclass
class RedisConfig:
    """Redis configuration dataclass"""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    ssl: bool = False
    max_connections: int = 50
    socket_timeout: float = 10.0
    socket_connect_timeout: float = 10.0
    connect_retries: int = 3

    @staticmethod
    def from_env() -> 'RedisConfig':
        """Load configuration from environment variables"""
        return RedisConfig(
            host=os.getenv("MEETING_STT_REDIS_HOST", "localhost"),
            port=int(os.getenv("MEETING_STT_REDIS_PORT", "6379")),
            db=int(os.getenv("MEETING_STT_REDIS_DB", "0")),
            password=os.getenv("MEETING_STT_REDIS_PASSWORD") or None,
            ssl=os.getenv("MEETING_STT_REDIS_SSL", "false").lower() == "true",
            max_connections=int(os.getenv("MEETING_STT_REDIS_MAX_CONNECTIONS", "50")),
            socket_timeout=float(os.getenv("MEETING_STT_REDIS_SOCKET_TIMEOUT", "10.0")),
            socket_connect_timeout=float(os.getenv("MEETING_STT_REDIS_SOCKET_CONNECT_TIMEOUT", "10.0")),
            connect_retries=int(os.getenv("MEETING_STT_REDIS_CONNECT_RETRIES", "3")),
        )

    def get_redis_url(self) -> str:
        """Generate Redis connection URL"""
        # Check for explicit URL first
        env_url = os.getenv("MEETING_STT_REDIS_URL") or os.getenv("REDIS_URL")
        if env_url:
            return env_url

        scheme = "rediss" if self.ssl else "redis"
        auth = f":{self.password}@" if self.password else ""
        return f"{scheme}://{auth}{self.host}:{self.port}/{self.db}"

    def summary(self) -> str:
        """Config summary safe for logs (no password)."""
        return f"{self.host}:{self.port}/{self.db} (ssl={self.ssl}, max_connections={self.max_connections})"


async def get_redis_pool() -> redis.ConnectionPool:
    """
    Get or create Redis connection pool.

    Uses singleton pattern to reuse pool across calls.

    Returns:
        redis.ConnectionPool: Connection pool instance
    """
    global _redis_pool

    if _redis_pool is None:
        config = RedisConfig.from_env()

        logger.info(f"Creating Redis connection pool: {config.summary()}")

        # decode_responses=True: every stored record is a JSON string
        _redis_pool = redis.ConnectionPool.from_url(
            config.get_redis_url(),
            max_connections=config.max_connections,
            socket_timeout=config.socket_timeout,
            socket_connect_timeout=config.socket_connect_timeout,
            decode_responses=True,
        )

    return _redis_pool


async def get_redis_client() -> redis.Redis:
    """
    Get or create async Redis client instance.

    Uses singleton pattern to reuse connection across calls.

    Returns:
        redis.Redis: Async Redis client instance

    Raises:
        RedisConnectionError: If connection fails after retries
    """
    global _redis_client

    async with _lock:
        if _redis_client is None:
            config = RedisConfig.from_env()
            pool = await get_redis_pool()
            client = redis.Redis(connection_pool=pool)

            # Exponential backoff between connection attempts
            max_retries = max(1, config.connect_retries)
            for attempt in range(max_retries):
                try:
                    await client.ping()
                    logger.info(" Redis client connected successfully")
                    break
                except RedisConnectionError as e:
                    if attempt < max_retries - 1:
                        delay = 2.0 ** attempt
                        logger.warning(
                            f"Redis connection attempt {attempt + 1}/{max_retries} failed: {e}. "
                            f"Retrying in {delay}s..."
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(f" Redis connection failed after {max_retries} attempts: {e}")
                        raise

            _redis_client = client

        return _redis_client


async def ping_redis(client: Optional[redis.Redis] = None) -> bool:
    """
    Test Redis connectivity with simple PING command.

    Args:
        client: Redis client instance (optional, uses singleton if not provided)

    Returns:
        bool: True if PING successful, False otherwise
    """
    try:
        if client is None:
            client = await get_redis_client()

        result = await client.ping()
        return result is True
    except Exception as e:
        logger.error(f"Redis PING failed: {e}")
        return False


async def get_redis_info(client: Optional[redis.Redis] = None) -> Dict[str, Any]:
    """
    Get Redis server information for the health endpoint.

    Returns:
        dict: Redis server info (version, uptime, memory, clients)
    """
    try:
        if client is None:
            client = await get_redis_client()

        info = await client.info()

        return {
            "redis_version": info.get("redis_version", "unknown"),
            "uptime_seconds": info.get("uptime_in_seconds", 0),
            "connected_clients": info.get("connected_clients", 0),
            "used_memory_human": info.get("used_memory_human", "unknown"),
        }
    except Exception as e:
        logger.error(f"Failed to get Redis info: {e}")
        return {"error": str(e)}


async def close_redis_client():
    """
    Gracefully close Redis client and connection pool.

    Should be called during application shutdown to ensure proper cleanup.
    """
    global _redis_client, _redis_pool

    async with _lock:
        if _redis_client is not None:
            try:
                await _redis_client.aclose()
                logger.info("Redis client closed")
            except Exception as e:
                logger.error(f"Error closing Redis client: {e}")
            finally:
                _redis_client = None

        if _redis_pool is not None:
            try:
                await _redis_pool.disconnect()
                logger.info("Redis connection pool disconnected")
            except Exception as e:
                logger.error(f"Error disconnecting Redis pool: {e}")
            finally:
                _redis_pool = None
