"""
Order Service — クエリハンドラ (読み取り側)

ドキュメントストアから発注書とその監査イベントを読み出す。
ページキャッシュの読み書きはエンドポイント側で行う。
"""

from sqlalchemy.ext.asyncio import AsyncSession

from . import document_store, event_store
from .commands import order_path
from .events import event_to_document


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    """発注書を 1 件取得する。"""
    order = await document_store.get_document(session, order_path(order_id))
    if order is None:
        return None
    return {"id": order_id, **order}


async def list_orders(session: AsyncSession) -> list[dict]:
    """全発注書を新しい順に返す。"""
    orders = await document_store.list_documents(session, "purchaseOrders")
    return sorted(orders, key=lambda o: o.get("createdAt") or "", reverse=True)


async def list_order_events(session: AsyncSession, order_id: str) -> list[dict]:
    """発注書の監査履歴を古い順に返す。"""
    events = await event_store.load_order_events(session, order_id)
    return [event_to_document(e) for e in events]
