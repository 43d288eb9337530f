"""Redis client wrapper for table and hand-state persistence."""

from __future__ import annotations

import json
import os
from typing import Any, Optional

import redis.asyncio as redis

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Tables expire after this many seconds without a write
TABLE_TTL = int(os.getenv("TABLE_TTL", "86400"))

_pool: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    global _pool
    if _pool is None:
        _pool = redis.from_url(REDIS_URL, decode_responses=True)
    return _pool


def _table_key(code: str) -> str:
    return f"table:{code}"


def _state_key(code: str) -> str:
    return f"table:{code}:state"


async def store_table(code: str, data: dict[str, Any]) -> None:
    r = await get_redis()
    await r.set(_table_key(code), json.dumps(data), ex=TABLE_TTL)


async def load_table(code: str) -> Optional[dict[str, Any]]:
    r = await get_redis()
    raw = await r.get(_table_key(code))
    if raw is None:
        return None
    return json.loads(raw)


async def store_state(code: str, data: dict[str, Any]) -> None:
    """Persist a full (privileged) GameState snapshot."""
    r = await get_redis()
    await r.set(_state_key(code), json.dumps(data), ex=TABLE_TTL)


async def load_state(code: str) -> Optional[dict[str, Any]]:
    r = await get_redis()
    raw = await r.get(_state_key(code))
    if raw is None:
        return None
    return json.loads(raw)


async def close() -> None:
    global _pool
    if _pool is not None:
        await _pool.aclose()
        _pool = None
