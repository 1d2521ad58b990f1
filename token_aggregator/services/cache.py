"""
Redis cache service for Token Aggregator.
Namespaced JSON key-value store with per-entry TTL. The cache is advisory:
every failure is logged and degrades to a miss or a no-op, never an error.
"""

import json
import asyncio
from typing import Any, Dict, List, Optional
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from ..core.config import Settings, settings as default_settings
from ..core.logging_config import create_logger

logger = create_logger(__name__)


class CacheService:
    """Redis cache service with advisory semantics."""
    
    def __init__(self, settings: Optional[Settings] = None, client: Optional[redis.Redis] = None):
        self.settings = settings or default_settings
        self.prefix = self.settings.cache_prefix
        self.default_ttl = self.settings.cache_ttl
        self._pool: Optional[ConnectionPool] = None
        self._redis: Optional[redis.Redis] = client
        self._connection_lock = asyncio.Lock()
    
    async def connect(self) -> None:
        """Initialize Redis connection pool. A failed connection leaves the cache disabled."""
        async with self._connection_lock:
            if self._redis is not None:
                return
            try:
                self._pool = ConnectionPool.from_url(
                    self.settings.get_redis_url(),
                    max_connections=20,
                    retry_on_timeout=True,
                    socket_keepalive=True,
                    health_check_interval=30
                )
                client = redis.Redis(connection_pool=self._pool)
                
                # Test connection
                await client.ping()
                self._redis = client
                logger.info("Successfully connected to Redis", extra={
                    "redis_host": self.settings.redis_host,
                    "redis_port": self.settings.redis_port,
                    "redis_db": self.settings.redis_db
                })
                
            except Exception as e:
                logger.error("Failed to connect to Redis, caching disabled", extra={
                    "error": str(e),
                    "redis_host": self.settings.redis_host,
                    "redis_port": self.settings.redis_port
                })
                if self._pool:
                    await self._pool.disconnect()
                    self._pool = None
    
    async def disconnect(self) -> None:
        """Close Redis connection."""
        async with self._connection_lock:
            if self._redis:
                await self._redis.aclose()
                self._redis = None
            if self._pool:
                await self._pool.disconnect()
                self._pool = None
            logger.info("Disconnected from Redis")
    
    async def health_check(self) -> bool:
        """Check Redis connection health."""
        try:
            if not self._redis:
                return False
            await self._redis.ping()
            return True
        except Exception as e:
            logger.warning("Redis health check failed", extra={"error": str(e)})
            return False
    
    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"
    
    # Single key operations
    
    async def get(self, key: str) -> Optional[Any]:
        """Get a cached value, or None on miss or any failure."""
        if not self._redis:
            return None
        try:
            value = await self._redis.get(self._key(key))
            if value is None:
                return None
            return json.loads(value)
            
        except Exception as e:
            logger.error("Failed to get cache key", extra={"key": key, "error": str(e)})
            return None
    
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store a JSON-serializable value with TTL in seconds."""
        if not self._redis:
            return
        try:
            ttl = ttl or self.default_ttl
            await self._redis.setex(self._key(key), ttl, json.dumps(value, default=str))
            logger.debug("Cache set", extra={"key": key, "ttl": ttl})
            
        except Exception as e:
            logger.error("Failed to set cache key", extra={"key": key, "error": str(e)})
    
    async def delete(self, key: str) -> None:
        """Delete a cache key."""
        if not self._redis:
            return
        try:
            await self._redis.delete(self._key(key))
            logger.debug("Cache deleted", extra={"key": key})
            
        except Exception as e:
            logger.error("Failed to delete cache key", extra={"key": key, "error": str(e)})
    
    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern inside the namespace."""
        if not self._redis:
            return 0
        try:
            keys = [key async for key in self._redis.scan_iter(match=self._key(pattern), count=500)]
            if keys:
                await self._redis.delete(*keys)
            logger.debug("Cache pattern deleted", extra={"pattern": pattern, "count": len(keys)})
            return len(keys)
            
        except Exception as e:
            logger.error("Failed to delete cache pattern", extra={"pattern": pattern, "error": str(e)})
            return 0
    
    async def exists(self, key: str) -> bool:
        """Check whether a key exists."""
        if not self._redis:
            return False
        try:
            return await self._redis.exists(self._key(key)) == 1
        except Exception as e:
            logger.error("Failed to check cache key", extra={"key": key, "error": str(e)})
            return False
    
    # Multi key operations
    
    async def mget(self, keys: List[str]) -> List[Optional[Any]]:
        """Get several keys at once; misses and undecodable values are None."""
        if not keys:
            return []
        if not self._redis:
            return [None] * len(keys)
        try:
            values = await self._redis.mget([self._key(key) for key in keys])
        except Exception as e:
            logger.error("Failed to get multiple cache keys", extra={"keys": keys, "error": str(e)})
            return [None] * len(keys)
        
        results: List[Optional[Any]] = []
        for key, value in zip(keys, values):
            if value is None:
                results.append(None)
                continue
            try:
                results.append(json.loads(value))
            except ValueError as e:
                logger.warning("Failed to deserialize cache value", extra={"key": key, "error": str(e)})
                results.append(None)
        return results
    
    async def mset(self, items: Dict[str, Any], ttl: Optional[int] = None) -> None:
        """Store several values with the same TTL in one pipeline."""
        if not items or not self._redis:
            return
        try:
            ttl = ttl or self.default_ttl
            pipe = self._redis.pipeline()
            for key, value in items.items():
                pipe.setex(self._key(key), ttl, json.dumps(value, default=str))
            await pipe.execute()
            
            logger.debug("Cache mset", extra={"count": len(items), "ttl": ttl})
            
        except Exception as e:
            logger.error("Failed to set multiple cache keys", extra={
                "keys": list(items.keys()),
                "error": str(e)
            })
    
    async def increment(self, key: str, ttl: Optional[int] = None) -> int:
        """Atomically increment a counter, starting its TTL on the first increment."""
        if not self._redis:
            return 0
        try:
            prefixed = self._key(key)
            value = await self._redis.incr(prefixed)
            if value == 1 and ttl:
                await self._redis.expire(prefixed, ttl)
            return value
            
        except Exception as e:
            logger.error("Failed to increment cache key", extra={"key": key, "error": str(e)})
            return 0
