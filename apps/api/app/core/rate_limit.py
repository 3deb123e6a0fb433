"""Rate limits for the unauthenticated routes (webhook start, magic-link tasks)."""

import logging
import os

import redis
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.config import settings

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")
MEMORY_STORAGE = "memory://"


def _limit(per_minute: int) -> str:
    # slowapi needs a positive rate; 0 disables the limit
    return f"{per_minute if per_minute > 0 else 1_000_000}/minute"


def _storage_uri() -> str:
    """Redis when reachable so limits hold across API workers, else in-process memory."""
    if IS_TESTING:
        return MEMORY_STORAGE
    try:
        redis.from_url(REDIS_URL, socket_connect_timeout=1).ping()
    except (redis.RedisError, OSError) as e:
        logger.warning("Redis unavailable for rate limiting, using in-memory: %s", e)
        return MEMORY_STORAGE
    return REDIS_URL


DEFAULT_LIMITS = [] if IS_TESTING or settings.RATE_LIMIT_API <= 0 else [_limit(settings.RATE_LIMIT_API)]
WEBHOOK_START_LIMIT = _limit(0 if IS_TESTING else settings.RATE_LIMIT_WEBHOOK)
PUBLIC_TASK_LIMIT = _limit(0 if IS_TESTING else settings.RATE_LIMIT_PUBLIC_TASK)

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=_storage_uri(),
    default_limits=DEFAULT_LIMITS,
)
