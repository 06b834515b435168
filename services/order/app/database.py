"""
Order Service — 接続リソース

エンジン・セッションファクトリ・Redis・ID プロバイダクライアントを
Resources にまとめ、プロセス起動時に一度だけ構築する。
モジュールレベルのグローバル接続は持たず、app.state 経由で参照する。
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import document_store
from .config import Settings
from .errors import ConfigurationError
from .identity import IdentityClient


class Resources:
    def __init__(
        self,
        engine: AsyncEngine | None,
        redis: aioredis.Redis,
        identity: IdentityClient,
        page_cache_ttl: int = 60,
    ) -> None:
        self.engine = engine
        self.page_cache_ttl = page_cache_ttl
        self.redis = redis
        self.identity = identity
        self._session_factory = (
            sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            if engine is not None
            else None
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Resources":
        engine = (
            create_async_engine(settings.database_url, echo=False)
            if settings.database_url
            else None
        )
        return cls(
            engine,
            aioredis.from_url(settings.redis_url, decode_responses=True),
            IdentityClient(settings.identity_service_url),
            page_cache_ttl=settings.page_cache_ttl,
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """DB セッションを開く。DATABASE_URL 未設定なら ConfigurationError。"""
        if self._session_factory is None:
            raise ConfigurationError("DATABASE_URL is not set; cannot open a database session")
        async with self._session_factory() as session:
            yield session

    async def create_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await document_store.create_schema(conn)

    async def aclose(self) -> None:
        await self.identity.aclose()
        await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()
