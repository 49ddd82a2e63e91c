from dishka import Provider, Scope, provide, FromComponent
from typing import Annotated, Any, AsyncIterable
from core.environment.config import Settings
from redis.asyncio import Redis
import json


class RedisProvider(Provider):
    """
    Provider for Redis client.
    """

    scope = Scope.APP
    component = "redis"

    @provide(scope=Scope.APP)
    async def provide_redis_client(
        self,
        settings: Annotated[Settings, FromComponent("environment")]
    ) -> AsyncIterable[Redis]:
        """
        Create Redis client for the application.

        The connection itself is verified by ``IndexStore.connect`` so that
        an unreachable store surfaces during indexer initialization.

        Parameters
        ----------
        settings : Settings
            Application settings

        Yields
        ------
        Redis
            Redis client instance
        """
        redis_client = Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.redis_db,
            password=settings.redis_password if settings.redis_password else None,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )

        try:
            yield redis_client
        finally:
            await redis_client.aclose()


class CacheService:
    """
    Best-effort JSON cache on top of Redis.

    Read and write failures are reported as cache misses.

    Parameters
    ----------
    redis_client : Redis
        Redis client instance
    prefix : str
        Key prefix for cache entries
    """

    def __init__(self, redis_client: Redis, prefix: str = "cache"):
        self.redis = redis_client
        self.prefix = prefix

    async def get(self, key: str) -> Any | None:
        """
        Get cached value.

        Parameters
        ----------
        key : str
            Cache key

        Returns
        -------
        Any | None
            Cached value or None
        """
        try:
            value = await self.redis.get(f"{self.prefix}:{key}")
            if value:
                return json.loads(value)
        except Exception:
            pass
        return None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        """
        Set cached value.

        Parameters
        ----------
        key : str
            Cache key
        value : Any
            JSON-serializable value to cache
        ttl : int
            Time to live in seconds

        Returns
        -------
        bool
            Success status
        """
        try:
            await self.redis.setex(
                f"{self.prefix}:{key}",
                ttl,
                json.dumps(value)
            )
            return True
        except Exception:
            return False


class CacheProvider(Provider):
    """
    Provider for cache service.
    """

    component = "cache"
    scope = Scope.APP

    @provide(scope=Scope.APP)
    def provide_cache_service(
        self,
        redis_client: Annotated[Redis, FromComponent("redis")],
        settings: Annotated[Settings, FromComponent("environment")]
    ) -> CacheService:
        """
        Provide cache service.

        Parameters
        ----------
        redis_client : Redis
            Redis client instance
        settings : Settings
            Application settings

        Returns
        -------
        CacheService
            Cache service instance
        """
        return CacheService(redis_client, prefix=f"{settings.store_prefix}:cache")
