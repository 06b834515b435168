"""
Order Service — イベント定義

発注書に対して行われた操作を、不変(immutable)な監査イベントとして定義する。
イベント種別ごとに別のモデルを持つタグ付きユニオンにして、
種別に合わないフィールド（例: created イベントの fromStatus）は
バリデーションで弾く。

永続化時のキーは camelCase（orderId, fromStatus など）。
"""

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

OrderStatus = Literal[
    "draft",
    "ordered",
    "partially-received",
    "received",
    "cancelled",
    "archived",
]

ActorRole = Literal["admin", "purchaser", "warehouse", "manager", "viewer"]


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )


class Actor(_Model):
    """操作を行ったユーザー"""
    uid: str
    display_name: str | None = None
    email: str | None = None
    role: ActorRole | None = None


class _OrderEventBase(_Model):
    id: str
    order_id: str
    at: datetime
    actor: Actor
    note: str | None = None


class OrderCreated(_OrderEventBase):
    """発注書が作成された"""
    type: Literal["created"] = "created"


class ItemsUpdated(_OrderEventBase):
    """明細が丸ごと書き換えられた（quantity は明細行数）"""
    type: Literal["items-updated"] = "items-updated"
    quantity: int | None = None


class StatusChanged(_OrderEventBase):
    """ステータスが遷移した"""
    type: Literal["status-changed"] = "status-changed"
    from_status: OrderStatus
    to_status: OrderStatus
    reason: str | None = None


class ItemReceived(_OrderEventBase):
    """明細の残数がすべて入荷した"""
    type: Literal["item-received"] = "item-received"
    item_id: str
    product_sku: str
    quantity: float


class ItemPartiallyReceived(_OrderEventBase):
    """明細の一部が入荷した"""
    type: Literal["item-partially-received"] = "item-partially-received"
    item_id: str
    product_sku: str
    quantity: float


class ItemCancelled(_OrderEventBase):
    type: Literal["item-cancelled"] = "item-cancelled"
    item_id: str
    product_sku: str
    quantity: float
    reason: str | None = None


class OrderCancelled(_OrderEventBase):
    """発注書がキャンセルされた"""
    type: Literal["order-cancelled"] = "order-cancelled"
    from_status: OrderStatus
    reason: str | None = None


class NoteAdded(_OrderEventBase):
    type: Literal["note-added"] = "note-added"
    note: str


OrderEvent = Annotated[
    Union[
        OrderCreated,
        ItemsUpdated,
        StatusChanged,
        ItemReceived,
        ItemPartiallyReceived,
        ItemCancelled,
        OrderCancelled,
        NoteAdded,
    ],
    Field(discriminator="type"),
]

OrderEventType = Literal[
    "created",
    "items-updated",
    "status-changed",
    "item-received",
    "item-partially-received",
    "item-cancelled",
    "order-cancelled",
    "note-added",
]

order_event_adapter: TypeAdapter[OrderEvent] = TypeAdapter(OrderEvent)


def event_to_document(event: OrderEvent) -> dict:
    """ドキュメントストアに書き込む形（camelCase, None は省略）に変換する。"""
    return event.model_dump(mode="json", by_alias=True, exclude_none=True)


def event_from_document(data: dict) -> OrderEvent:
    return order_event_adapter.validate_python(data)
