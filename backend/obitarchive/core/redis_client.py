"""Redis client wrapper used for cross-instance coordination."""

from typing import Optional

import redis.asyncio as redis

from obitarchive.core.config import settings
from obitarchive.core.logging import logger


class RedisClient:
    """Lazily connected async Redis client."""

    def __init__(
        self,
        host: str = settings.REDIS_HOST,
        port: int = settings.REDIS_PORT,
        db: int = settings.REDIS_DB,
        password: Optional[str] = settings.REDIS_PASSWORD,
    ):
        """Store connection parameters; the connection opens on first use."""
        self._host = host
        self._port = port
        self._db = db
        self._password = password
        self._client: Optional[redis.Redis] = None

    @property
    def client(self) -> redis.Redis:
        """Return the underlying client, creating it on first access."""
        if self._client is None:
            self._client = redis.Redis(
                host=self._host,
                port=self._port,
                db=self._db,
                password=self._password,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
            logger.debug(f"Redis client created for {self._host}:{self._port}/{self._db}")
        return self._client

    async def close(self) -> None:
        """Close the connection pool if one was opened."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


redis_client = RedisClient()
