"""
Order Service — 監査イベントストア

発注書ごとのサブコレクション purchaseOrders/{orderId}/events/{eventId} に
イベントを追記する。追記専用で、既存イベントの読み取り・更新・削除はしない。
create_document で書くため、同じ ID の二重書き込みは主キー制約違反になる。

書き込みは呼び出し側のセッションに積まれるだけなので、
発注書本体の更新と同じトランザクションで commit される。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from . import document_store
from .events import (
    Actor,
    OrderEvent,
    OrderEventType,
    OrderStatus,
    event_from_document,
    event_to_document,
    order_event_adapter,
)

logger = logging.getLogger(__name__)


def events_collection(order_id: str) -> str:
    return f"purchaseOrders/{order_id}/events"


async def record_order_event(
    session: AsyncSession,
    order_id: str,
    event_type: OrderEventType,
    actor: Actor,
    *,
    from_status: OrderStatus | None = None,
    to_status: OrderStatus | None = None,
    item_id: str | None = None,
    product_sku: str | None = None,
    quantity: float | None = None,
    reason: str | None = None,
    note: str | None = None,
    at: datetime | None = None,
) -> OrderEvent:
    """
    監査イベントを 1 件追記する。

    id は呼び出しごとに uuid4 で新規発行する。
    at は呼び出し側の時計 (UTC) で打刻する（サーバー時刻ではない）。
    イベント種別に合わないフィールドを渡すと pydantic.ValidationError。
    DB エラーはそのまま呼び出し側に伝播する（リトライしない）。
    """
    fields = {
        "from_status": from_status,
        "to_status": to_status,
        "item_id": item_id,
        "product_sku": product_sku,
        "quantity": quantity,
        "reason": reason,
        "note": note,
    }
    event = order_event_adapter.validate_python(
        {
            "id": str(uuid4()),
            "order_id": order_id,
            "type": event_type,
            "at": at or datetime.now(timezone.utc),
            "actor": actor,
            **{k: v for k, v in fields.items() if v is not None},
        }
    )

    await document_store.create_document(
        session,
        f"{events_collection(order_id)}/{event.id}",
        event_to_document(event),
    )
    logger.debug("Recorded %s event %s for order %s", event.type, event.id, order_id)
    return event


async def load_order_events(session: AsyncSession, order_id: str) -> list[OrderEvent]:
    """発注書のイベントを古い順に読み出す。"""
    docs = await document_store.list_documents(session, events_collection(order_id))
    events = [event_from_document(d) for d in docs]
    return sorted(events, key=lambda e: e.at)
