"""Tests for the order store adapter."""

from datetime import datetime, timezone

from storefront.documents import ORDERS
from storefront.models import CustomerDetails, Order, OrderItem, OrderStatus, PaymentMethod
from storefront.orders import OrderStore, orders_from_documents, sort_orders


def make_order(**overrides) -> Order:
    fields = dict(
        customer_details=CustomerDetails(name="A", email="a@x", address="1 St"),
        items=[OrderItem(id="p1", name="Slice", quantity=2, price=3.5)],
        total_amount=7.0,
        payment_method=PaymentMethod.CASH,
    )
    fields.update(overrides)
    return Order(**fields)


def at(second: int) -> datetime:
    return datetime(2026, 1, 1, 12, 0, second, tzinfo=timezone.utc)


class TestSortOrders:
    """Tests for the operator list ordering."""

    def test_newest_first(self):
        orders = [
            make_order(id="a", created_at=at(1)),
            make_order(id="b", created_at=at(3)),
            make_order(id="c", created_at=at(2)),
        ]

        assert [o.id for o in sort_orders(orders)] == ["b", "c", "a"]

    def test_ties_broken_by_order_id(self):
        orders = [
            make_order(id="z", created_at=at(5)),
            make_order(id="m", created_at=at(5)),
            make_order(id="a", created_at=at(5)),
        ]

        assert [o.id for o in sort_orders(orders)] == ["a", "m", "z"]

    def test_missing_timestamp_sorts_last(self):
        orders = [
            make_order(id="pending-write"),
            make_order(id="old", created_at=at(0)),
        ]

        assert [o.id for o in sort_orders(orders)] == ["old", "pending-write"]

    def test_malformed_documents_are_skipped(self):
        docs = [
            {"id": "bad", "items": []},
            {
                "id": "good",
                "customerDetails": {"name": "A", "email": "a@x", "address": "1 St"},
                "items": [{"id": "p1", "name": "Slice", "quantity": 1, "price": 3.5}],
                "totalAmount": 3.5,
                "status": "Paid",
                "paymentMethod": "Card",
                "createdAt": "2026-01-01T12:00:00.000000+00:00",
            },
        ]

        orders = orders_from_documents(docs)
        assert [o.id for o in orders] == ["good"]
        assert orders[0].status is OrderStatus.PAID


class TestOrderStore:
    """Tests for OrderStore."""

    async def test_append_stores_wire_document(self, store, notifications):
        orders = OrderStore(store, notifications)
        order_id = await orders.append(make_order())

        doc = await store.get(ORDERS, order_id)
        assert doc["customerDetails"] == {"name": "A", "email": "a@x", "address": "1 St"}
        assert doc["items"] == [{"id": "p1", "name": "Slice", "quantity": 2, "price": 3.5}]
        assert doc["totalAmount"] == 7.0
        assert doc["status"] == "Pending"
        assert doc["paymentMethod"] == "Cash"
        assert doc["createdAt"]

    async def test_created_at_follows_commit_order(self, store, notifications):
        orders = OrderStore(store, notifications)
        ids = [await orders.append(make_order()) for _ in range(3)]

        docs = {d["id"]: d for d in await store.list_documents(ORDERS)}
        stamps = [docs[i]["createdAt"] for i in ids]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == 3

    async def test_update_status_notifies_new_status(self, store, notifications):
        orders = OrderStore(store, notifications)
        order_id = await orders.append(make_order())

        assert await orders.update_status(order_id, OrderStatus.SHIPPED)
        assert (await store.get(ORDERS, order_id))["status"] == "Shipped"
        assert notifications.current.message == "Order status updated to Shipped"

    async def test_update_status_failure_notifies_error(self, store, notifications):
        orders = OrderStore(store, notifications)

        assert not await orders.update_status("missing", OrderStatus.PAID)
        assert notifications.current.severity == "error"
        assert "missing" in notifications.current.message

    async def test_subscription_delivers_sorted_snapshot(self, store, notifications):
        orders = OrderStore(store, notifications)
        first = await orders.append(make_order())
        second = await orders.append(make_order())
        received = []

        subscription = await orders.subscribe(received.append)
        try:
            assert [o.id for o in received[-1]] == [second, first]
        finally:
            await subscription.close()
