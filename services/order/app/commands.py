"""
Order Service — コマンドハンドラ (書き込み側)

発注書を変更する操作。どのコマンドも

1. 発注書ドキュメントを更新
2. 監査イベントを purchaseOrders/{id}/events に追記
3. 1 と 2 を同じトランザクションで commit
4. 影響するページキャッシュを破棄
5. Redis Pub/Sub でイベントを発行（他サービスへ通知）

の順で処理する。エラーは握りつぶさず呼び出し側に伝播させる。
"""

import json
import time

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from . import cache, document_store, event_store
from .errors import InvalidOrder, OrderNotFound
from .events import Actor, OrderEvent, event_to_document
from .items import (
    derive_status,
    normalize_new_items,
    sanitize_items_for_store,
    to_finite_number,
)

CLOSED_STATUSES = ("cancelled", "archived")


def order_path(order_id: str) -> str:
    return f"purchaseOrders/{order_id}"


async def _load_order(session: AsyncSession, order_id: str) -> dict:
    order = await document_store.get_document(session, order_path(order_id))
    if order is None:
        raise OrderNotFound(order_id)
    return order


async def _now(session: AsyncSession) -> str:
    return (await document_store.server_timestamp(session)).isoformat()


async def _revalidate_order(redis: aioredis.Redis, order_id: str) -> None:
    await cache.revalidate_path(redis, f"/orders/{order_id}")
    await cache.revalidate_path(redis, "/orders")


async def _publish(redis: aioredis.Redis, events: list[OrderEvent]) -> None:
    for event in events:
        await redis.publish("order_events", json.dumps({
            "event_type": event.type,
            "data": event_to_document(event),
        }, default=str))


async def create_purchase_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    uid: str,
    items: list,
    actor: Actor,
    status: str = "draft",
) -> dict:
    """
    発注書作成コマンド

    明細を正規化し（ID・商品名・SKU 必須、数量 > 0）、有効な行が無ければ
    InvalidOrder("NO_VALID_ITEMS")。created イベントを同じトランザクションで記録する。
    """
    if not uid:
        raise InvalidOrder("UID_MISSING")
    clean = normalize_new_items(items)
    if not clean:
        raise InvalidOrder("NO_VALID_ITEMS")

    now = await _now(session)
    order_id = document_store.new_document_id()
    payload = {
        "uid": uid,
        "orderNumber": f"PO-{int(time.time() * 1000)}",
        "orderDate": now,
        "status": status,
        "items": clean,
        "createdBy": actor.model_dump(
            by_alias=True, exclude_none=True, include={"uid", "email", "display_name"}
        ),
        "createdByUid": actor.uid,
        "createdAt": now,
        "updatedAt": now,
    }

    await document_store.create_document(session, order_path(order_id), payload)
    event = await event_store.record_order_event(
        session, order_id, "created", actor, note="Purchase order created"
    )
    await session.commit()

    await cache.revalidate_path(redis, "/orders")
    await cache.revalidate_path(redis, "/")
    await _publish(redis, [event])
    return {"id": order_id, **payload}


async def update_order_items(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    items: list[dict],
    actor: Actor,
) -> dict:
    """
    明細更新コマンド

    items 配列を丸ごと上書きし、updatedAt を DB サーバー時刻で打刻する。
    items-updated イベントを同じトランザクションで記録する。
    同時編集の調停はしない（後勝ち）。
    """
    await _load_order(session, order_id)
    sanitized = sanitize_items_for_store(items)
    patch = {
        "items": sanitized,
        "updatedAt": await _now(session),
        "updatedByUid": actor.uid,
    }

    updated = await document_store.update_document(session, order_path(order_id), patch)
    event = await event_store.record_order_event(
        session, order_id, "items-updated", actor, quantity=len(sanitized)
    )
    await session.commit()

    await _revalidate_order(redis, order_id)
    await _publish(redis, [event])
    return {"id": order_id, **updated}


async def receive_order_item(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    product_id: str,
    quantity,
    location_id: str,
    actor: Actor,
) -> dict:
    """
    入荷コマンド

    1. 明細の入荷数・残数を更新し、ステータスを再計算
    2. 在庫 stockItems/{uid}_{productId}_{locationId} に加算
    3. 入庫の在庫移動 stockMovements を追記
    4. item-received / item-partially-received と、
       ステータスが変わった場合は status-changed を記録

    発注書と在庫の行をロックしてから読むので、同じ明細への同時入荷は
    後から来た方が最新の残数で検査される。
    """
    quantity = to_finite_number(quantity)
    if quantity <= 0:
        raise InvalidOrder("INVALID_QUANTITY")
    if not location_id:
        raise InvalidOrder("LOCATION_MISSING")

    # 残数チェックから加算までを直列化する
    await document_store.lock_document(session, order_path(order_id))
    order = await _load_order(session, order_id)
    old_status = order.get("status", "draft")
    if old_status in CLOSED_STATUSES:
        raise InvalidOrder("ORDER_CLOSED")

    items = [dict(i) for i in order.get("items", [])]
    index = next(
        (n for n, i in enumerate(items) if i.get("productId") == product_id), None
    )
    if index is None:
        raise InvalidOrder("ITEM_NOT_FOUND")

    item = items[index]
    if quantity > to_finite_number(item.get("remainingQuantity")):
        raise InvalidOrder("QUANTITY_EXCEEDS_REMAINING")

    received = to_finite_number(item.get("receivedQuantity")) + quantity
    item["receivedQuantity"] = received
    item["remainingQuantity"] = max(0, to_finite_number(item.get("quantity")) - received)
    new_status = derive_status(items, old_status)

    now = await _now(session)
    await document_store.update_document(session, order_path(order_id), {
        "items": items,
        "status": new_status,
        "updatedAt": now,
        "updatedByUid": actor.uid,
    })

    # 在庫の加算
    owner = order.get("uid", actor.uid)
    stock_path = f"stockItems/{owner}_{product_id}_{location_id}"
    await document_store.lock_document(session, stock_path)
    stock = await document_store.get_document(session, stock_path)
    current_qty = to_finite_number(stock.get("quantity")) if stock else 0
    await document_store.set_document(session, stock_path, {
        "uid": owner,
        "productId": product_id,
        "locationId": location_id,
        "quantity": current_qty + quantity,
    })
    await document_store.create_document(
        session,
        f"stockMovements/{document_store.new_document_id()}",
        {
            "uid": owner,
            "productId": product_id,
            "locationId": location_id,
            "type": "in",
            "quantity": quantity,
            "date": now,
            "userId": actor.display_name or actor.email or actor.uid,
            "description": f"Purchase order #{order.get('orderNumber', order_id)} receipt",
        },
    )

    events = [await event_store.record_order_event(
        session,
        order_id,
        "item-received" if item["remainingQuantity"] <= 0 else "item-partially-received",
        actor,
        item_id=product_id,
        product_sku=item.get("productSku", ""),
        quantity=quantity,
    )]
    if new_status != old_status:
        events.append(await event_store.record_order_event(
            session,
            order_id,
            "status-changed",
            actor,
            from_status=old_status,
            to_status=new_status,
            note="Status changed by goods receipt",
        ))
    await session.commit()

    await _revalidate_order(redis, order_id)
    await _publish(redis, events)
    return {
        "orderId": order_id,
        "previousStatus": old_status,
        "status": new_status,
        "item": item,
    }


async def update_order_meta(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    actor: Actor,
    note: str | None = None,
    supplier_name: str | None = None,
) -> dict:
    """発注書の付帯情報（社内メモ・仕入先名）を更新する。"""
    await _load_order(session, order_id)
    patch = {"updatedAt": await _now(session), "updatedByUid": actor.uid}
    if isinstance(note, str):
        patch["internalNote"] = note.strip()
    if isinstance(supplier_name, str):
        patch["supplierName"] = supplier_name.strip()

    updated = await document_store.update_document(session, order_path(order_id), patch)
    events = []
    if patch.get("internalNote"):
        events.append(await event_store.record_order_event(
            session, order_id, "note-added", actor, note=patch["internalNote"]
        ))
    await session.commit()

    await cache.revalidate_path(redis, f"/orders/{order_id}")
    await _publish(redis, events)
    return {"id": order_id, **updated}


async def cancel_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    actor: Actor,
    reason: str | None = None,
) -> dict:
    """発注キャンセルコマンド"""
    order = await _load_order(session, order_id)
    now = await _now(session)
    reason = (reason or "").strip()

    updated = await document_store.update_document(session, order_path(order_id), {
        "status": "cancelled",
        "cancelledAt": now,
        "cancelledByUid": actor.uid,
        "cancelReason": reason,
        "updatedAt": now,
        "updatedByUid": actor.uid,
    })
    event = await event_store.record_order_event(
        session,
        order_id,
        "order-cancelled",
        actor,
        from_status=order.get("status", "draft"),
        reason=reason or None,
    )
    await session.commit()

    await _revalidate_order(redis, order_id)
    await _publish(redis, [event])
    return {"id": order_id, **updated}


async def archive_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    actor: Actor,
) -> dict:
    """アーカイブ（論理削除）コマンド"""
    order = await _load_order(session, order_id)
    now = await _now(session)

    updated = await document_store.update_document(session, order_path(order_id), {
        "status": "archived",
        "archivedAt": now,
        "archivedByUid": actor.uid,
        "updatedAt": now,
        "updatedByUid": actor.uid,
    })
    event = await event_store.record_order_event(
        session,
        order_id,
        "status-changed",
        actor,
        from_status=order.get("status", "draft"),
        to_status="archived",
    )
    await session.commit()

    await _revalidate_order(redis, order_id)
    await _publish(redis, [event])
    return {"id": order_id, **updated}


async def hard_delete_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
) -> None:
    """
    物理削除コマンド

    発注書ドキュメントだけを消す。監査イベントのサブコレクションは残る。
    """
    await _load_order(session, order_id)
    await document_store.delete_document(session, order_path(order_id))
    await session.commit()
    await _revalidate_order(redis, order_id)
