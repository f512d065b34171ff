"""
Redis utility module for centralized Redis configuration and connection logic.

Provides secure Redis connection management with production validation.
"""

import logging
from typing import Optional

import redis.asyncio as redis

from ladder.config import Config

logger = logging.getLogger(__name__)


class RedisUtils:
    """Centralized Redis configuration and connection utilities."""
    
    @staticmethod
    def get_secure_redis_url() -> Optional[str]:
        """Get Redis URL with security validation for production deployments."""
        redis_url = Config.REDIS_URL
        if redis_url:
            if RedisUtils._validate_redis_security(redis_url):
                return redis_url
            logger.error("REDIS_URL contains insecure configuration")
            return None
        
        if not Config.DEBUG:
            # Production mode - no insecure defaults allowed
            logger.error("Production deployment requires REDIS_URL with rediss:// protocol and authentication.")
            return None
        
        # Development mode - allow localhost for testing
        logger.warning("Development mode: using insecure localhost Redis. Do not use in production!")
        return 'redis://localhost:6379'
    
    @staticmethod
    def _validate_redis_security(redis_url: str) -> bool:
        """Validate that Redis URL meets security requirements."""
        if not redis_url:
            return False
            
        if not Config.DEBUG:
            # Production mode - enforce strict security
            if not redis_url.startswith('rediss://'):
                logger.error("Production Redis must use rediss:// (TLS) protocol")
                return False
            if '@' not in redis_url:
                logger.error("Production Redis must include authentication credentials")
                return False
            return True
        
        # Development mode - allow localhost and TLS connections
        if redis_url.startswith(('redis://localhost', 'redis://127.0.0.1', 'rediss://')):
            return True
        logger.warning(f"Potentially insecure Redis URL in development: {redis_url}")
        return True
    
    @staticmethod
    async def create_redis_client() -> Optional[redis.Redis]:
        """Create a Redis client with secure configuration."""
        redis_url = RedisUtils.get_secure_redis_url()
        if not redis_url:
            return None
            
        try:
            client = redis.from_url(redis_url)
            # Test connection
            await client.ping()
            logger.info("Successfully connected to Redis")
            return client
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            return None
