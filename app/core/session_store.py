"""
Redis session store.

Sessions are JSON documents addressed by an opaque random id that travels
in the session cookie. The store knows nothing about the document shape;
app.services.signup.SessionState owns (de)serialization.
"""
import json
import logging
import secrets
from typing import Any, Dict, Optional

import redis.asyncio as redis

import config
from app.core.exceptions import DependencyUnavailableError

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


class RedisSessionStore:
    def __init__(
        self,
        redis_client: Optional[redis.Redis],
        prefix: str = f"session:{config.APP_ENV}",
        ttl_seconds: int = config.SESSION_TTL_SECONDS,
    ):
        self.redis_client = redis_client
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    def _key(self, session_id: str) -> str:
        return f"{self.prefix}:{session_id}"

    def _client(self) -> redis.Redis:
        if self.redis_client is None:
            raise DependencyUnavailableError("session store: Redis is not configured")
        return self.redis_client

    async def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        raw = await self._client().get(self._key(session_id))
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("SESSION_CORRUPT session dropped")
            await self.delete(session_id)
            return None
        return data if isinstance(data, dict) else None

    async def save(self, session_id: str, data: Dict[str, Any]) -> None:
        """Write the session and refresh its TTL."""
        await self._client().set(self._key(session_id), json.dumps(data), ex=self.ttl_seconds)

    async def delete(self, session_id: str) -> None:
        await self._client().delete(self._key(session_id))
