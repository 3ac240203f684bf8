"""
Per-coach write lock serializing slot-taking booking mutations.

Redis ``SET NX EX`` is the primary mechanism so several API workers share one
lock. When Redis cannot be reached the lock degrades to a process-local mutex
per coach, which still serializes requests handled by the same worker.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
import time
from typing import Iterator, Optional
from uuid import uuid4
import weakref

from redis import Redis

from coachline.core.config import settings
from coachline.core.exceptions import ConflictException
from coachline.monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

_SYNC_REDIS: Optional[Redis] = None
_SYNC_REDIS_LOCK = threading.Lock()
_REDIS_RETRY_AFTER = 0.0
_REDIS_RETRY_INTERVAL_S = 30.0


class _LocalLock:
    """Registry value; the entry disappears once no caller holds it."""

    __slots__ = ("lock", "__weakref__")

    def __init__(self) -> None:
        self.lock = threading.Lock()


_LOCAL_LOCKS: "weakref.WeakValueDictionary[str, _LocalLock]" = weakref.WeakValueDictionary()
_LOCAL_LOCKS_GUARD = threading.Lock()

_POLL_INTERVAL_S = 0.05


def _lock_key(coach_id: str) -> str:
    return f"coachline:lock:coach:{coach_id}:slots"


def _get_sync_redis() -> Optional[Redis]:
    global _SYNC_REDIS, _REDIS_RETRY_AFTER
    if _SYNC_REDIS is not None:
        return _SYNC_REDIS
    with _SYNC_REDIS_LOCK:
        if _SYNC_REDIS is not None:
            return _SYNC_REDIS
        if time.monotonic() < _REDIS_RETRY_AFTER:
            return None
        try:
            client = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=0.5,
            )
            client.ping()
        except Exception as exc:
            _REDIS_RETRY_AFTER = time.monotonic() + _REDIS_RETRY_INTERVAL_S
            logger.warning("slot_lock_redis_unavailable: %s", exc)
            return None
        _SYNC_REDIS = client
        return _SYNC_REDIS


def _local_lock_for(coach_id: str) -> _LocalLock:
    with _LOCAL_LOCKS_GUARD:
        holder = _LOCAL_LOCKS.get(coach_id)
        if holder is None:
            holder = _LocalLock()
            _LOCAL_LOCKS[coach_id] = holder
        return holder


@contextmanager
def local_slot_lock(coach_id: str, *, wait_s: Optional[float] = None) -> Iterator[None]:
    """Process-local per-coach mutex."""
    wait = settings.slot_lock_wait_seconds if wait_s is None else wait_s
    holder = _local_lock_for(coach_id)
    if not holder.lock.acquire(timeout=wait):
        prometheus_metrics.record_slot_lock("acquire", "blocked")
        raise ConflictException(
            "Another booking for this coach is being processed, please retry",
            code="SLOT_LOCK_TIMEOUT",
            details={"coach_id": coach_id},
        )
    prometheus_metrics.record_slot_lock("acquire", "local")
    try:
        yield
    finally:
        holder.lock.release()


def acquire_coach_lock_sync(
    client: Redis, coach_id: str, token: str, *, ttl_s: int, wait_s: float
) -> bool:
    deadline = time.monotonic() + wait_s
    key = _lock_key(coach_id)
    while True:
        if client.set(key, token, nx=True, ex=ttl_s):
            prometheus_metrics.record_slot_lock("acquire", "success")
            return True
        if time.monotonic() >= deadline:
            prometheus_metrics.record_slot_lock("acquire", "blocked")
            return False
        time.sleep(_POLL_INTERVAL_S)


def release_coach_lock_sync(client: Redis, coach_id: str, token: str) -> None:
    key = _lock_key(coach_id)
    try:
        if client.get(key) == token:
            client.delete(key)
            prometheus_metrics.record_slot_lock("release", "success")
        else:
            # Expired and possibly re-acquired by someone else
            prometheus_metrics.record_slot_lock("release", "not_owner")
    except Exception as exc:
        prometheus_metrics.record_slot_lock("release", "error")
        logger.warning(
            "slot_lock_release_failed",
            extra={
                "coach_id": coach_id,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )


@contextmanager
def coach_slot_lock(
    coach_id: str,
    *,
    ttl_s: Optional[int] = None,
    wait_s: Optional[float] = None,
    client: Optional[Redis] = None,
) -> Iterator[None]:
    """
    Hold the per-coach slot lock for the duration of the block.

    Raises:
        ConflictException: if the lock is not acquired within ``wait_s``
    """
    ttl = ttl_s or settings.slot_lock_ttl_seconds
    wait = settings.slot_lock_wait_seconds if wait_s is None else wait_s
    redis_client = client if client is not None else _get_sync_redis()

    if redis_client is None:
        prometheus_metrics.record_slot_lock("acquire", "redis_unavailable")
        with local_slot_lock(coach_id, wait_s=wait):
            yield
        return

    token = uuid4().hex
    try:
        acquired = acquire_coach_lock_sync(redis_client, coach_id, token, ttl_s=ttl, wait_s=wait)
    except Exception as exc:
        prometheus_metrics.record_slot_lock("acquire", "error")
        logger.warning(
            "slot_lock_acquire_failed",
            extra={
                "coach_id": coach_id,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )
        with local_slot_lock(coach_id, wait_s=wait):
            yield
        return

    if not acquired:
        raise ConflictException(
            "Another booking for this coach is being processed, please retry",
            code="SLOT_LOCK_TIMEOUT",
            details={"coach_id": coach_id},
        )
    try:
        yield
    finally:
        release_coach_lock_sync(redis_client, coach_id, token)
