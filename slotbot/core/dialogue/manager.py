"""Redis-based dialogue session storage with per-session serialization."""

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import LockError, RedisError

from slotbot.config import settings
from slotbot.core.dialogue.models import DialogueSession
from slotbot.core.dialogue.state import DialogueState, is_terminal_state
from slotbot.core.scheduling.errors import StorageError
from slotbot.infra.redis import APP_PREFIX, RedisClient, get_redis


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)

logger = logging.getLogger(__name__)

# Session key prefix (extends existing APP_PREFIX)
SESSION_PREFIX = f"{APP_PREFIX}dialogue:session:"
LOCK_PREFIX = f"{APP_PREFIX}dialogue:lock:"


class SessionManager:
    """
    Keyed store for dialogue sessions.

    Key pattern: slotbot:v1:dialogue:session:{business_id}:{customer_id}

    Sessions expire passively: an expired session is marked ABANDONED and
    dropped the next time it is loaded, or by ``expire_sessions()``.
    Gracefully handles Redis unavailability with in-memory fallback.
    """

    def __init__(
        self,
        backend: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
        lock_timeout_seconds: Optional[float] = None,
        redis_getter: Optional[Callable[[], Awaitable[Optional[Redis]]]] = None,
    ):
        """Initialize session manager."""
        self._backend = backend or settings.session_backend
        self._ttl = timeout_seconds or settings.session_timeout_seconds
        self._clock = clock or _utcnow
        self._lock_timeout = lock_timeout_seconds or settings.session_lock_timeout_seconds
        self._get_redis = redis_getter or get_redis
        # JSON, so callers never share a mutable session object
        self._in_memory_fallback: dict[tuple[str, str], str] = {}
        # Entries vanish once no task holds or waits on the lock
        self._local_locks: "weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    @property
    def timeout_seconds(self) -> int:
        return self._ttl

    def _key(self, business_id: str, customer_id: str) -> str:
        """Generate Redis key."""
        return f"{SESSION_PREFIX}{business_id}:{customer_id}"

    def _lock_key(self, business_id: str, customer_id: str) -> str:
        return f"{LOCK_PREFIX}{business_id}:{customer_id}"

    async def _redis(self) -> Optional[Redis]:
        if self._backend == "memory":
            return None
        return await self._get_redis()

    def _storage_error(self, action: str, error: RedisError) -> StorageError:
        logger.error(f"Redis failure while trying to {action}: {error}", exc_info=True)
        RedisClient.mark_unavailable()
        return StorageError(f"session {action} failed", transient=True)

    def new_session(self, business_id: str, customer_id: str, language: Optional[str] = None) -> DialogueSession:
        """Create an unsaved IDLE session."""
        now = self._clock()
        return DialogueSession(
            business_id=business_id,
            customer_id=customer_id,
            language=language or settings.default_language,
            created_at=now,
            last_activity_at=now,
        )

    async def load(self, business_id: str, customer_id: str) -> Optional[DialogueSession]:
        """
        Get the live session for a customer.

        Returns:
            DialogueSession, or None if there is none or it has expired

        Raises:
            StorageError: If Redis fails mid-operation
        """
        raw = await self._read(business_id, customer_id)
        if raw is None:
            return None

        session = DialogueSession.from_json(raw)
        if session.is_expired(self._clock(), self._ttl):
            await self._abandon(session)
            return None
        return session

    async def save(self, session: DialogueSession) -> None:
        """Persist a session. Terminal sessions are deleted instead."""
        if is_terminal_state(session.state):
            await self.delete(session.business_id, session.customer_id)
            return

        key = self._key(session.business_id, session.customer_id)
        redis = await self._redis()
        if redis:
            try:
                await redis.setex(key, self._ttl, session.to_json())
            except RedisError as e:
                raise self._storage_error("save", e) from e
            logger.debug(f"Session saved: {session.business_id}/{session.customer_id}")
        else:
            self._in_memory_fallback[session.key] = session.to_json()

    async def delete(self, business_id: str, customer_id: str) -> bool:
        """Delete a session. Returns True if one existed."""
        redis = await self._redis()
        if redis:
            try:
                deleted = await redis.delete(self._key(business_id, customer_id))
            except RedisError as e:
                raise self._storage_error("delete", e) from e
            if deleted:
                logger.debug(f"Session deleted: {business_id}/{customer_id}")
            return bool(deleted)

        return self._in_memory_fallback.pop((business_id, customer_id), None) is not None

    @asynccontextmanager
    async def lock(self, business_id: str, customer_id: str) -> AsyncIterator[None]:
        """
        Serialize event handling for one (business, customer) pair.

        Uses a Redis lock when Redis is available so that several workers
        agree; otherwise a process-local asyncio.Lock.
        """
        redis = await self._redis()
        if redis is None:
            local = self._local_locks.setdefault((business_id, customer_id), asyncio.Lock())
            async with local:
                yield
            return

        redis_lock = redis.lock(
            self._lock_key(business_id, customer_id),
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_timeout,
        )
        try:
            acquired = await redis_lock.acquire()
        except RedisError as e:
            raise self._storage_error("lock", e) from e
        if not acquired:
            raise StorageError(f"session {business_id}/{customer_id} is busy", transient=True)

        try:
            yield
        finally:
            try:
                await redis_lock.release()
            except LockError as e:
                # Held past its timeout; another worker may already own it
                logger.warning(f"Session lock for {business_id}/{customer_id} lost: {e}")

    async def expire_sessions(self) -> int:
        """
        Abandon every session past the inactivity window.

        Returns:
            Number of sessions abandoned
        """
        now = self._clock()
        abandoned = 0

        redis = await self._redis()
        if redis:
            try:
                keys = [key async for key in redis.scan_iter(match=f"{SESSION_PREFIX}*")]
                for key in keys:
                    raw = await redis.get(key)
                    if raw is None:
                        continue
                    session = DialogueSession.from_json(raw)
                    if session.is_expired(now, self._ttl):
                        await self._abandon(session)
                        abandoned += 1
            except RedisError as e:
                raise self._storage_error("expire", e) from e
        else:
            for raw in list(self._in_memory_fallback.values()):
                session = DialogueSession.from_json(raw)
                if session.is_expired(now, self._ttl):
                    await self._abandon(session)
                    abandoned += 1

        if abandoned:
            logger.info(f"Abandoned {abandoned} inactive session(s)")
        return abandoned

    async def _read(self, business_id: str, customer_id: str) -> Optional[str]:
        redis = await self._redis()
        if redis:
            try:
                return await redis.get(self._key(business_id, customer_id))
            except RedisError as e:
                raise self._storage_error("load", e) from e
        return self._in_memory_fallback.get((business_id, customer_id))

    async def _abandon(self, session: DialogueSession) -> None:
        session.transition_to(DialogueState.ABANDONED)
        logger.info(
            f"Session {session.business_id}/{session.customer_id} abandoned "
            f"after inactivity (was {session.previous_state.value})"
        )
        await self.delete(session.business_id, session.customer_id)


# Singleton
_manager: Optional[SessionManager] = None


async def get_session_manager() -> SessionManager:
    """Get singleton SessionManager."""
    global _manager
    if _manager is None:
        _manager = SessionManager()
    return _manager
