"""
Order Service — 設定

環境変数をプロセス起動時に一度だけ読み込み、Settings として保持する。
DATABASE_URL が無い場合でも起動はできるが、DB アクセス時に
ConfigurationError になる。
"""

import os

from pydantic import BaseModel


class Settings(BaseModel):
    database_url: str | None = None
    redis_url: str = "redis://localhost:6379"
    identity_service_url: str = "http://localhost:9099"
    page_cache_ttl: int = 60

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ.get("DATABASE_URL") or None,
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            identity_service_url=os.environ.get(
                "IDENTITY_SERVICE_URL", "http://localhost:9099"
            ),
            page_cache_ttl=int(os.environ.get("PAGE_CACHE_TTL", "60")),
        )
