"""Tests for purchase order commands and their audit trail."""

from __future__ import annotations

import asyncio
import json

import pytest

from app import commands, document_store, event_store
from app.cache import INVALIDATION_CHANNEL, page_key
from app.database import Resources
from app.errors import ConfigurationError, InvalidOrder, OrderNotFound
from app.events import Actor

pytestmark = pytest.mark.anyio


def event_types(events) -> list[str]:
    return [e.type for e in events]


class TestCreatePurchaseOrder:
    """Test create_purchase_order."""

    async def test_creates_draft_with_created_event(self, session, redis, order) -> None:
        stored = await document_store.get_document(session, f"purchaseOrders/{order['id']}")
        assert stored["status"] == "draft"
        assert stored["orderNumber"].startswith("PO-")
        assert stored["createdBy"] == {"uid": "u1", "email": "buyer@example.com", "displayName": "Buyer"}
        assert [i["remainingQuantity"] for i in stored["items"]] == [10, 4]

        events = await event_store.load_order_events(session, order["id"])
        assert event_types(events) == ["created"]
        assert (INVALIDATION_CHANNEL, "/orders") in redis.published
        assert (INVALIDATION_CHANNEL, "/") in redis.published

    async def test_publishes_order_event(self, redis, order) -> None:
        messages = [json.loads(m) for c, m in redis.published if c == "order_events"]
        assert messages[0]["event_type"] == "created"
        assert messages[0]["data"]["orderId"] == order["id"]

    async def test_no_valid_items(self, session, redis, actor) -> None:
        with pytest.raises(InvalidOrder, match="NO_VALID_ITEMS"):
            await commands.create_purchase_order(
                session, redis, "u1", [{"productId": "p1", "quantity": 0}], actor
            )

    async def test_uid_missing(self, session, redis, actor) -> None:
        with pytest.raises(InvalidOrder, match="UID_MISSING"):
            await commands.create_purchase_order(session, redis, "", [], actor)


class TestUpdateOrderItems:
    """Test update_order_items."""

    async def test_overwrites_items_and_records_event(self, session, redis, order, actor) -> None:
        redis.store[page_key(f"/orders/{order['id']}")] = "{}"
        redis.store[page_key("/orders")] = "[]"

        updated = await commands.update_order_items(
            session,
            redis,
            order["id"],
            [{"productId": "p1", "productName": "Bolt", "productSku": "SKU-1",
              "quantity": float("nan"), "receivedQuantity": 5}],
            actor,
        )

        assert updated["items"] == [{
            "productId": "p1",
            "productName": "Bolt",
            "productSku": "SKU-1",
            "quantity": 0,
            "receivedQuantity": 5,
            "remainingQuantity": 0,
            "description": "",
        }]
        assert updated["updatedAt"] >= order["updatedAt"]
        assert page_key(f"/orders/{order['id']}") not in redis.store
        assert page_key("/orders") not in redis.store

        events = await event_store.load_order_events(session, order["id"])
        assert event_types(events) == ["created", "items-updated"]
        assert events[-1].quantity == 1

    async def test_empty_items_still_recorded(self, session, redis, order, actor) -> None:
        updated = await commands.update_order_items(session, redis, order["id"], [], actor)
        assert updated["items"] == []
        assert updated["updatedByUid"] == "u1"

        events = await event_store.load_order_events(session, order["id"])
        assert event_types(events) == ["created", "items-updated"]
        assert events[-1].quantity == 0
        assert events[-1].actor.uid == "u1"

    async def test_missing_order(self, session, redis, actor) -> None:
        with pytest.raises(OrderNotFound):
            await commands.update_order_items(session, redis, "missing", [], actor)

    async def test_no_database_configured(self, redis, resources, actor) -> None:
        """Test the action fails when no database handle can be built."""
        unconfigured = Resources(None, redis, resources.identity)
        with pytest.raises(ConfigurationError, match="DATABASE_URL is not set"):
            async with unconfigured.session() as session:
                await commands.update_order_items(session, redis, "o1", [], actor)


class TestReceiveOrderItem:
    """Test goods receipt."""

    async def test_partial_receipt(self, session, redis, order, actor) -> None:
        result = await commands.receive_order_item(
            session, redis, order["id"], "p1", 4, "loc-1", actor
        )
        assert result["status"] == "partially-received"
        assert result["item"]["receivedQuantity"] == 4
        assert result["item"]["remainingQuantity"] == 6

        events = await event_store.load_order_events(session, order["id"])
        assert event_types(events) == ["created", "item-partially-received", "status-changed"]
        assert events[-1].from_status == "draft"
        assert events[-1].to_status == "partially-received"

        stock = await document_store.get_document(session, "stockItems/u1_p1_loc-1")
        assert stock["quantity"] == 4
        movements = await document_store.list_documents(session, "stockMovements")
        assert len(movements) == 1
        assert movements[0]["type"] == "in"
        assert movements[0]["userId"] == "Buyer"

    async def test_full_receipt_moves_to_received(self, session, redis, order, actor) -> None:
        await commands.receive_order_item(session, redis, order["id"], "p1", 10, "loc-1", actor)
        result = await commands.receive_order_item(
            session, redis, order["id"], "p2", 4, "loc-1", actor
        )
        assert result["previousStatus"] == "partially-received"
        assert result["status"] == "received"

        events = await event_store.load_order_events(session, order["id"])
        assert event_types(events) == [
            "created",
            "item-received",
            "status-changed",
            "item-received",
            "status-changed",
        ]

    async def test_stock_accumulates(self, session, redis, order, actor) -> None:
        await commands.receive_order_item(session, redis, order["id"], "p1", 3, "loc-1", actor)
        await commands.receive_order_item(session, redis, order["id"], "p1", 2, "loc-1", actor)
        stock = await document_store.get_document(session, "stockItems/u1_p1_loc-1")
        assert stock["quantity"] == 5

    async def test_more_than_remaining_rejected(self, session, redis, order, actor) -> None:
        with pytest.raises(InvalidOrder, match="QUANTITY_EXCEEDS_REMAINING"):
            await commands.receive_order_item(
                session, redis, order["id"], "p2", 5, "loc-1", actor
            )

    @pytest.mark.parametrize(
        ("product_id", "quantity", "location_id", "code"),
        [
            ("p1", 0, "loc-1", "INVALID_QUANTITY"),
            ("p1", 1, "", "LOCATION_MISSING"),
            ("p9", 1, "loc-1", "ITEM_NOT_FOUND"),
        ],
    )
    async def test_invalid_input(
        self, session, redis, order, actor, product_id, quantity, location_id, code
    ) -> None:
        with pytest.raises(InvalidOrder, match=code):
            await commands.receive_order_item(
                session, redis, order["id"], product_id, quantity, location_id, actor
            )

    async def test_cancelled_order_rejected(self, session, redis, order, actor) -> None:
        await commands.cancel_order(session, redis, order["id"], actor)
        with pytest.raises(InvalidOrder, match="ORDER_CLOSED"):
            await commands.receive_order_item(
                session, redis, order["id"], "p1", 1, "loc-1", actor
            )

    async def test_concurrent_receipts_do_not_overbook(self, resources, redis, order, actor) -> None:
        """Test two receipts racing for the same remaining quantity."""

        async def receive():
            async with resources.session() as session:
                return await commands.receive_order_item(
                    session, redis, order["id"], "p2", 3, "loc-1", actor
                )

        results = await asyncio.gather(receive(), receive(), return_exceptions=True)

        assert sum(isinstance(r, dict) for r in results) == 1
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidOrder)
        assert str(errors[0]) == "QUANTITY_EXCEEDS_REMAINING"

        async with resources.session() as session:
            stored = await document_store.get_document(session, f"purchaseOrders/{order['id']}")
            line = next(i for i in stored["items"] if i["productId"] == "p2")
            assert line["receivedQuantity"] == 3
            assert line["remainingQuantity"] == 1

            stock = await document_store.get_document(session, "stockItems/u1_p2_loc-1")
            assert stock["quantity"] == 3
            assert len(await document_store.list_documents(session, "stockMovements")) == 1


class TestOrderLifecycle:
    """Test meta edits, cancel, archive and delete."""

    async def test_update_meta_records_note(self, session, redis, order, actor) -> None:
        updated = await commands.update_order_meta(
            session, redis, order["id"], actor, note="  call supplier ", supplier_name=" ACME "
        )
        assert updated["internalNote"] == "call supplier"
        assert updated["supplierName"] == "ACME"

        events = await event_store.load_order_events(session, order["id"])
        assert events[-1].type == "note-added"
        assert events[-1].note == "call supplier"

    async def test_update_meta_without_note(self, session, redis, order, actor) -> None:
        await commands.update_order_meta(session, redis, order["id"], actor, supplier_name="ACME")
        events = await event_store.load_order_events(session, order["id"])
        assert event_types(events) == ["created"]

    async def test_cancel(self, session, redis, order, actor) -> None:
        updated = await commands.cancel_order(
            session, redis, order["id"], actor, reason=" duplicate "
        )
        assert updated["status"] == "cancelled"
        assert updated["cancelReason"] == "duplicate"
        assert updated["cancelledByUid"] == "u1"

        events = await event_store.load_order_events(session, order["id"])
        assert events[-1].type == "order-cancelled"
        assert events[-1].from_status == "draft"
        assert events[-1].reason == "duplicate"

    async def test_archive(self, session, redis, order) -> None:
        manager = Actor(uid="u9", role="manager")
        updated = await commands.archive_order(session, redis, order["id"], manager)
        assert updated["status"] == "archived"
        assert updated["archivedByUid"] == "u9"

        events = await event_store.load_order_events(session, order["id"])
        assert events[-1].type == "status-changed"
        assert events[-1].to_status == "archived"

    async def test_hard_delete_keeps_events(self, session, redis, order) -> None:
        await commands.hard_delete_order(session, redis, order["id"])

        assert await document_store.get_document(session, f"purchaseOrders/{order['id']}") is None
        events = await event_store.load_order_events(session, order["id"])
        assert event_types(events) == ["created"]

    async def test_hard_delete_missing(self, session, redis) -> None:
        with pytest.raises(OrderNotFound):
            await commands.hard_delete_order(session, redis, "missing")


class TestCommandAtomicity:
    """Test that a failed audit write leaves the order untouched."""

    @pytest.fixture
    def failing_event_store(self, order, monkeypatch):
        async def fail(*args, **kwargs):
            raise RuntimeError("event store unavailable")

        monkeypatch.setattr(event_store, "record_order_event", fail)

    async def assert_unchanged(self, resources, redis, order) -> None:
        async with resources.session() as session:
            stored = await document_store.get_document(session, f"purchaseOrders/{order['id']}")
            assert stored["status"] == "draft"
            assert stored["items"] == order["items"]
            assert "updatedByUid" not in stored
            assert await document_store.get_document(session, "stockItems/u1_p1_loc-1") is None
            assert await document_store.list_documents(session, "stockMovements") == []
            events = await event_store.load_order_events(session, order["id"])
            assert event_types(events) == ["created"]

        published = [c for c, _ in redis.published if c == "order_events"]
        assert len(published) == 1

    async def test_update_items_rolls_back(
        self, session, resources, redis, order, actor, failing_event_store
    ) -> None:
        with pytest.raises(RuntimeError):
            await commands.update_order_items(session, redis, order["id"], [], actor)
        await session.rollback()

        await self.assert_unchanged(resources, redis, order)

    async def test_receive_rolls_back(
        self, session, resources, redis, order, actor, failing_event_store
    ) -> None:
        with pytest.raises(RuntimeError):
            await commands.receive_order_item(
                session, redis, order["id"], "p1", 4, "loc-1", actor
            )
        await session.rollback()

        await self.assert_unchanged(resources, redis, order)
