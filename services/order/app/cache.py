"""
Order Service — ページキャッシュ

ページ単位のレスポンスを Redis に page:<path> で保存する。
コマンドが書き込みに成功したら revalidate_path で該当ページを捨て、
cache_invalidation チャネルにパスを発行して他プロセスにも知らせる。
"""

import json
import logging
from collections.abc import Awaitable, Callable

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

INVALIDATION_CHANNEL = "cache_invalidation"


def page_key(path: str) -> str:
    return f"page:{path}"


async def cached_page(
    redis: aioredis.Redis,
    path: str,
    loader: Callable[[], Awaitable[object]],
    ttl: int = 60,
):
    """キャッシュがあれば返し、無ければ loader で作って保存する。"""
    cached = await redis.get(page_key(path))
    if cached is not None:
        return json.loads(cached)
    value = await loader()
    if value is not None:
        await redis.set(page_key(path), json.dumps(value, default=str), ex=ttl)
    return value


async def revalidate_path(redis: aioredis.Redis, path: str) -> None:
    await redis.delete(page_key(path))
    await redis.publish(INVALIDATION_CHANNEL, path)
    logger.info("Revalidated %s", path)
