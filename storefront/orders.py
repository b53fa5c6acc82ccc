"""
Storefront — 注文ストアアダプタ

買い物客は追記 (append) のみ。オペレーターはステータス更新と
ライブ購読ができる。購読はオペレーターセッションでだけ張る。

オペレーター向け一覧は createdAt 降順、同時刻は注文 ID 昇順。
createdAt はストアの時計で埋められる (クライアントは送らない)。
"""

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from pydantic import ValidationError

from .documents import ORDERS, SERVER_TIMESTAMP, DocumentStore
from .errors import StoreError
from .models import Order, OrderStatus
from .notifications import NotificationBus
from .subscriber import Subscription

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _created_key(order: Order) -> datetime:
    if order.created_at is None:
        return _EPOCH
    if order.created_at.tzinfo is None:
        return order.created_at.replace(tzinfo=timezone.utc)
    return order.created_at


def sort_orders(orders: list[Order]) -> list[Order]:
    """createdAt 降順、同時刻は ID 昇順。createdAt が無い注文は末尾。"""
    by_id = sorted(orders, key=lambda o: o.id or "")
    return sorted(by_id, key=_created_key, reverse=True)


def orders_from_documents(documents: list[dict]) -> list[Order]:
    orders = []
    for doc in documents:
        try:
            orders.append(Order.model_validate(doc))
        except ValidationError:
            logger.warning("Skipping malformed order %s", doc.get("id"))
    return sort_orders(orders)


class OrderStore:
    def __init__(self, store: DocumentStore, notifications: NotificationBus):
        self.store = store
        self.notifications = notifications

    async def append(self, order: Order, idempotency_key: str | None = None) -> str | None:
        """注文を追記して注文 ID を返す。失敗時は通知して None。"""
        document = order.to_document()
        document["createdAt"] = SERVER_TIMESTAMP
        try:
            order_id = await self.store.add(ORDERS, document, idempotency_key=idempotency_key)
        except StoreError:
            logger.exception("Error placing order")
            self.notifications.error(
                "There was an error placing your order. Please try again."
            )
            return None
        logger.info("Order placed: %s total=%.2f", order_id, order.total_amount)
        return order_id

    async def update_status(self, order_id: str, status: OrderStatus) -> bool:
        try:
            await self.store.update(ORDERS, order_id, {"status": status.value})
        except StoreError:
            logger.exception("Error updating status of order %s", order_id)
            self.notifications.error(f"Failed to update status of order {order_id}.")
            return False
        self.notifications.success(f"Order status updated to {status.value}")
        return True

    async def subscribe(self, on_snapshot: Callable[[list[Order]], None]) -> Subscription:
        subscription = Subscription(
            self.store,
            ORDERS,
            on_snapshot=lambda docs: on_snapshot(orders_from_documents(docs)),
            on_error=self._on_read_error,
        )
        await subscription.start()
        return subscription

    def _on_read_error(self, error: Exception) -> None:
        self.notifications.error("Could not fetch orders.")
