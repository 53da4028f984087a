"""Redis client factory and health checks."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional, Tuple

from redis import Redis

from src.core.config import get_settings


REGEN_KEY_TEMPLATE = "snapstage:ratelimit:regen:{user_id}"


@lru_cache(maxsize=1)
def get_client() -> Redis:
    settings = get_settings()
    return Redis.from_url(settings.redis_url, decode_responses=True)


def regen_counter_key(user_id: str) -> str:
    return REGEN_KEY_TEMPLATE.format(user_id=user_id)


def test_connection() -> Tuple[bool, Optional[str]]:
    try:
        get_client().ping()
        return True, None
    except Exception as exc:
        return False, str(exc)
