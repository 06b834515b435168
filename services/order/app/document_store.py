"""
Order Service — ドキュメントストア

キー → JSON ドキュメントの対応を 1 つの documents テーブルで表現する。
パスはスラッシュ区切りで、コレクションとドキュメント ID が交互に並ぶ:

    purchaseOrders/{orderId}
    purchaseOrders/{orderId}/events/{eventId}

サブコレクションは親ドキュメントとは独立しており、親を削除しても残る。
書き込みはセッションに積むだけで、commit は呼び出し側が行う。
"""

import json
import logging
from datetime import date, datetime, timezone
from uuid import uuid4

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from .errors import DocumentNotFound

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS documents (
        path VARCHAR(512) PRIMARY KEY,
        collection VARCHAR(512) NOT NULL,
        doc_id VARCHAR(128) NOT NULL,
        data TEXT NOT NULL,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL,
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_documents_collection ON documents (collection, created_at)",
)


async def create_schema(conn: AsyncConnection) -> None:
    for statement in SCHEMA:
        await conn.execute(text(statement))


def new_document_id() -> str:
    return uuid4().hex


def split_path(path: str) -> tuple[str, str]:
    """ドキュメントパスを (コレクションパス, ドキュメント ID) に分ける。"""
    parts = [p for p in path.split("/") if p]
    if not parts or len(parts) % 2 != 0:
        raise ValueError(f"Not a document path: {path!r}")
    return "/".join(parts[:-1]), parts[-1]


def _write(sql: str):
    """:now を tz 付き DateTime としてバインドする文を作る。"""
    return text(sql).bindparams(bindparam("now", type_=DateTime(timezone=True)))


def _encode(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(data: dict) -> str:
    return json.dumps(data, default=_encode, allow_nan=False)


def _loads(raw) -> dict:
    return json.loads(raw) if isinstance(raw, str) else raw


async def server_timestamp(session: AsyncSession) -> datetime:
    """DB サーバーの時計で現在時刻を取得する（クライアント時計ではない）。"""
    value = (await session.execute(text("SELECT CURRENT_TIMESTAMP"))).scalar_one()
    if isinstance(value, str):
        # SQLite は 'YYYY-MM-DD HH:MM:SS' (UTC) を返す
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


async def get_document(session: AsyncSession, path: str) -> dict | None:
    split_path(path)
    result = await session.execute(
        text("SELECT data FROM documents WHERE path = :path"),
        {"path": path},
    )
    row = result.first()
    if not row:
        return None
    return _loads(row.data)


async def lock_document(session: AsyncSession, path: str) -> None:
    """
    ドキュメントの行をトランザクション終了まで書き込みロックする。

    読み取り前に呼ぶこと。PostgreSQL は SELECT ... FOR UPDATE。
    SQLite には FOR UPDATE が無いので、空の UPDATE でデータベースの書き込みロックを取る。
    行が無ければ (PostgreSQL では) 何もロックしない。
    """
    split_path(path)
    if session.get_bind().dialect.name == "sqlite":
        stmt = "UPDATE documents SET updated_at = updated_at WHERE path = :path"
    else:
        stmt = "SELECT path FROM documents WHERE path = :path FOR UPDATE"
    await session.execute(text(stmt), {"path": path})


async def create_document(session: AsyncSession, path: str, data: dict) -> None:
    """
    新規ドキュメントを作成する。

    同じパスが既に存在すると主キー制約違反で失敗する。
    イベントのような追記専用データはこれで書き込む。
    """
    collection, doc_id = split_path(path)
    now = datetime.now(timezone.utc)
    await session.execute(
        _write("""
            INSERT INTO documents (path, collection, doc_id, data, created_at, updated_at)
            VALUES (:path, :collection, :doc_id, :data, :now, :now)
        """),
        {
            "path": path,
            "collection": collection,
            "doc_id": doc_id,
            "data": _dumps(data),
            "now": now,
        },
    )


async def set_document(session: AsyncSession, path: str, data: dict) -> None:
    """ドキュメントを丸ごと書き込む（無ければ作成）。"""
    if await get_document(session, path) is None:
        await create_document(session, path, data)
        return
    await session.execute(
        _write("UPDATE documents SET data = :data, updated_at = :now WHERE path = :path"),
        {"path": path, "data": _dumps(data), "now": datetime.now(timezone.utc)},
    )


async def update_document(session: AsyncSession, path: str, patch: dict) -> dict:
    """
    トップレベルのフィールドを上書きマージする。

    ドキュメントが存在しなければ DocumentNotFound。
    マージ後のドキュメントを返す。
    """
    current = await get_document(session, path)
    if current is None:
        raise DocumentNotFound(path)
    merged = {**current, **patch}
    await session.execute(
        _write("UPDATE documents SET data = :data, updated_at = :now WHERE path = :path"),
        {"path": path, "data": _dumps(merged), "now": datetime.now(timezone.utc)},
    )
    return merged


async def delete_document(session: AsyncSession, path: str) -> None:
    """ドキュメントを削除する。サブコレクションには触れない。"""
    split_path(path)
    await session.execute(
        text("DELETE FROM documents WHERE path = :path"),
        {"path": path},
    )
    logger.info("Deleted document %s", path)


async def list_documents(session: AsyncSession, collection: str) -> list[dict]:
    """コレクション直下のドキュメントを作成順に返す。各要素に id を付与する。"""
    result = await session.execute(
        text("""
            SELECT doc_id, data
            FROM documents
            WHERE collection = :collection
            ORDER BY created_at ASC, doc_id ASC
        """),
        {"collection": collection.strip("/")},
    )
    return [{"id": row.doc_id, **_loads(row.data)} for row in result.fetchall()]
