"""
Cross-process lock around credit consumption for one member and benefit type.

Only active when ``REDIS_URL`` is configured. Row locks and conditional
updates in the credit repository still apply underneath.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
import time
from typing import Iterator, Optional

from redis import Redis
from redis.exceptions import RedisError

from ..monitoring.prometheus_metrics import prometheus_metrics
from .config import settings

logger = logging.getLogger(__name__)

_SYNC_REDIS: Optional[Redis] = None
_SYNC_REDIS_LOCK = threading.Lock()


def _lock_key(member_id: str, benefit_type: str) -> str:
    return f"{settings.redis_namespace}:lock:credits:{member_id}:{benefit_type}"


def _get_sync_redis() -> Optional[Redis]:
    global _SYNC_REDIS
    if not settings.redis_url:
        return None
    if _SYNC_REDIS is not None:
        return _SYNC_REDIS
    with _SYNC_REDIS_LOCK:
        if _SYNC_REDIS is not None:
            return _SYNC_REDIS
        try:
            client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            client.ping()
        except RedisError as exc:
            logger.warning("credit_lock_redis_unavailable: %s", exc)
            return None
        _SYNC_REDIS = client
        return _SYNC_REDIS


def acquire_credit_lock(member_id: str, benefit_type: str, ttl_s: Optional[int] = None) -> bool:
    """
    Try to take the lock. Returns True when taken or when Redis is unavailable.
    """
    client = _get_sync_redis()
    if client is None:
        if settings.redis_url:
            prometheus_metrics.inc_credit_lock("unavailable")
        return True
    try:
        acquired = bool(
            client.set(
                _lock_key(member_id, benefit_type),
                str(time.time()),
                nx=True,
                ex=ttl_s or settings.credit_lock_ttl_seconds,
            )
        )
    except RedisError as exc:
        prometheus_metrics.inc_credit_lock("unavailable")
        logger.warning(
            "credit_lock_acquire_failed",
            extra={
                "member_id": member_id,
                "benefit_type": benefit_type,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )
        return True
    prometheus_metrics.inc_credit_lock("acquired" if acquired else "contended")
    return acquired


def release_credit_lock(member_id: str, benefit_type: str) -> None:
    client = _get_sync_redis()
    if client is None:
        return
    try:
        client.delete(_lock_key(member_id, benefit_type))
    except RedisError as exc:
        # The TTL frees the key eventually
        logger.warning(
            "credit_lock_release_failed",
            extra={"member_id": member_id, "benefit_type": benefit_type, "error": str(exc)},
        )


@contextmanager
def credit_lock(member_id: str, benefit_type: str, ttl_s: Optional[int] = None) -> Iterator[bool]:
    acquired = acquire_credit_lock(member_id, benefit_type, ttl_s=ttl_s)
    try:
        yield acquired
    finally:
        if acquired:
            release_credit_lock(member_id, benefit_type)
