"""
Ephemeral session cache.

Holds in-flight sessions between "push accepted" and "result known" so a
callback that races the durable write can still be correlated. Entries may be
stale, missing after a restart, or out of step with the store: every reader
falls back to the store before concluding a session does not exist.

Two backends:
1. Process-local dict with TTL (default)
2. Redis, for deployments that want entries shared across workers
"""
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Dict, Optional, Tuple

import redis.asyncio as aioredis
import structlog

from stk_reconciliation.config import Settings, get_settings
from stk_reconciliation.core.models import Transaction

logger = structlog.get_logger(__name__)


class SessionCache(ABC):
    """Best-effort map from session id to an in-flight transaction."""

    @abstractmethod
    async def put(self, transaction: Transaction) -> None:
        """Store or replace the entry for ``transaction.session_id``."""

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Transaction]:
        """Cached copy of a session, or None."""

    @abstractmethod
    async def get_by_checkout_ref(self, checkout_ref: str) -> Optional[Transaction]:
        """Cached copy of the session owning ``checkout_ref``, or None."""

    @abstractmethod
    async def evict(self, session_id: str) -> None:
        """Drop a session from the cache."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemorySessionCache(SessionCache):
    """
    Process-local TTL cache.

    Bounded by ``max_entries``; the oldest entry is dropped first.
    """

    def __init__(self, ttl_seconds: float = 3600, max_entries: int = 10_000):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, Tuple[Transaction, float]]" = OrderedDict()
        self._by_checkout: Dict[str, str] = {}

    def _expired(self, expires_at: float) -> bool:
        return time.monotonic() >= expires_at

    async def put(self, transaction: Transaction) -> None:
        session_id = transaction.session_id
        self._entries.pop(session_id, None)
        self._entries[session_id] = (transaction, time.monotonic() + self.ttl_seconds)
        if transaction.checkout_ref:
            self._by_checkout[transaction.checkout_ref] = session_id

        while len(self._entries) > self.max_entries:
            dropped_id, (dropped, _) = self._entries.popitem(last=False)
            if dropped.checkout_ref:
                self._by_checkout.pop(dropped.checkout_ref, None)

    async def get(self, session_id: str) -> Optional[Transaction]:
        entry = self._entries.get(session_id)
        if entry is None:
            return None
        transaction, expires_at = entry
        if self._expired(expires_at):
            await self.evict(session_id)
            return None
        return transaction

    async def get_by_checkout_ref(self, checkout_ref: str) -> Optional[Transaction]:
        session_id = self._by_checkout.get(checkout_ref)
        if session_id is None:
            return None
        return await self.get(session_id)

    async def evict(self, session_id: str) -> None:
        entry = self._entries.pop(session_id, None)
        if entry is not None and entry[0].checkout_ref:
            self._by_checkout.pop(entry[0].checkout_ref, None)

    def __len__(self) -> int:
        return len(self._entries)


class RedisSessionCache(SessionCache):
    """
    Redis-backed cache.

    Redis errors are logged and reported as cache misses.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        ttl_seconds: int = 3600,
        redis_url: Optional[str] = None,
    ):
        """
        Initialize Redis session cache.

        Args:
            redis_client: Optional Redis client (creates one if not provided)
            ttl_seconds: Lifetime of each entry
            redis_url: URL used when a client has to be created
        """
        self.redis_client = redis_client
        self.redis_url = redis_url or get_settings().redis_url
        self.ttl_seconds = ttl_seconds
        self._redis_initialized = redis_client is not None

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None or not self._redis_initialized:
            self.redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._redis_initialized = True
        return self.redis_client

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"stk:session:{session_id}"

    @staticmethod
    def _checkout_key(checkout_ref: str) -> str:
        return f"stk:checkout:{checkout_ref}"

    async def put(self, transaction: Transaction) -> None:
        try:
            redis = await self._ensure_redis()
            async with redis.pipeline(transaction=True) as pipe:
                pipe.setex(
                    self._session_key(transaction.session_id),
                    self.ttl_seconds,
                    transaction.model_dump_json(),
                )
                if transaction.checkout_ref:
                    pipe.setex(
                        self._checkout_key(transaction.checkout_ref),
                        self.ttl_seconds,
                        transaction.session_id,
                    )
                await pipe.execute()
        except Exception as e:
            logger.warning(
                "session_cache_put_error",
                error=str(e),
                session_id=transaction.session_id,
            )

    async def get(self, session_id: str) -> Optional[Transaction]:
        try:
            redis = await self._ensure_redis()
            cached = await redis.get(self._session_key(session_id))
        except Exception as e:
            logger.warning("session_cache_get_error", error=str(e), session_id=session_id)
            return None
        if not cached:
            return None
        return Transaction.model_validate_json(cached)

    async def get_by_checkout_ref(self, checkout_ref: str) -> Optional[Transaction]:
        try:
            redis = await self._ensure_redis()
            session_id = await redis.get(self._checkout_key(checkout_ref))
        except Exception as e:
            logger.warning(
                "session_cache_get_error", error=str(e), checkout_ref=checkout_ref
            )
            return None
        if not session_id:
            return None
        return await self.get(session_id)

    async def evict(self, session_id: str) -> None:
        try:
            redis = await self._ensure_redis()
            await redis.delete(self._session_key(session_id))
        except Exception as e:
            logger.warning("session_cache_evict_error", error=str(e), session_id=session_id)

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None and self._redis_initialized:
            await self.redis_client.aclose()


def build_session_cache(settings: Optional[Settings] = None) -> SessionCache:
    """Create the cache backend named in settings."""
    settings = settings or get_settings()
    if settings.session_cache_backend == "redis":
        return RedisSessionCache(
            ttl_seconds=settings.session_cache_ttl, redis_url=settings.redis_url
        )
    return InMemorySessionCache(ttl_seconds=settings.session_cache_ttl)
