"""
Storefront — チェックアウトパイプライン

カートのスナップショットから注文を組み立て、注文ストアにコミットし、
成功したらセッションを店舗画面に戻す。

  状態遷移:
    Browsing          → CollectingDetails  (カートが空でないときだけ)
    CollectingDetails → Submitting         (氏名・メール・住所がすべて入力済み)
    Submitting        → Done               (コミット成功: カートを空にして shop へ)
    Submitting        → Failed             (コミット失敗: 入力を保ったまま CollectingDetails へ)

在庫の引き当てや、最新カタログとの価格照合は行わない。
二重送信は Submitting 中の再送拒否と、再試行で使い回す冪等キーで防ぐ。
"""

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from .cart import Cart
from .errors import InvalidTransitionError
from .models import CustomerDetails, Order, OrderItem, OrderStatus, PaymentMethod
from .notifications import NotificationBus
from .orders import OrderStore

logger = logging.getLogger(__name__)

SHIPPING_FIELDS = ("name", "email", "address")


class CheckoutState(str, Enum):
    BROWSING = "Browsing"
    COLLECTING_DETAILS = "CollectingDetails"
    SUBMITTING = "Submitting"
    DONE = "Done"
    FAILED = "Failed"


class CheckoutPipeline:
    def __init__(
        self,
        cart: Cart,
        orders: OrderStore,
        notifications: NotificationBus,
        on_success: Callable[[str], None],
    ):
        self.cart = cart
        self.orders = orders
        self.notifications = notifications
        self.on_success = on_success
        self.state = CheckoutState.BROWSING
        self.details = {field: "" for field in SHIPPING_FIELDS}
        self.payment_method = PaymentMethod.CARD
        self.idempotency_key: str | None = None
        self.last_order_id: str | None = None
        self.log: list[dict] = []

    def _transition(self, new_state: CheckoutState) -> None:
        self.log.append(
            {
                "from": self.state.value,
                "to": new_state.value,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
        self.state = new_state

    @property
    def submitting(self) -> bool:
        return self.state is CheckoutState.SUBMITTING

    # ── 遷移 ──────────────────────────────────────

    def begin(self) -> bool:
        """配送先入力を開始する。カートが空なら何もしない。"""
        if self.state is CheckoutState.COLLECTING_DETAILS:
            return True
        if self.state not in (CheckoutState.BROWSING, CheckoutState.DONE):
            raise InvalidTransitionError(
                self.state.value, CheckoutState.COLLECTING_DETAILS.value
            )
        if len(self.cart) == 0:
            return False
        if self.state is CheckoutState.DONE:
            self._reset_form()
        self.idempotency_key = uuid4().hex
        self._transition(CheckoutState.COLLECTING_DETAILS)
        return True

    def cancel(self) -> None:
        """入力をやめてカートに戻る。"""
        if self.state is CheckoutState.COLLECTING_DETAILS:
            self._transition(CheckoutState.BROWSING)

    def update_details(
        self,
        name: str | None = None,
        email: str | None = None,
        address: str | None = None,
        payment_method: str | None = None,
    ) -> None:
        for field, value in (("name", name), ("email", email), ("address", address)):
            if value is not None:
                self.details[field] = value
        if payment_method is not None:
            self.payment_method = PaymentMethod(payment_method)

    async def submit(
        self,
        name: str | None = None,
        email: str | None = None,
        address: str | None = None,
        payment_method: str | None = None,
    ) -> str | None:
        """
        注文を確定する。成功すれば注文 ID、検証失敗・コミット失敗なら None。
        """
        if self.state is not CheckoutState.COLLECTING_DETAILS:
            raise InvalidTransitionError(self.state.value, CheckoutState.SUBMITTING.value)

        try:
            self.update_details(name, email, address, payment_method)
        except ValueError:
            self.notifications.error("Please choose a valid payment method.")
            return None

        if any(not self.details[field].strip() for field in SHIPPING_FIELDS):
            self.notifications.error("Please fill out all shipping fields.")
            return None

        snapshot = self.cart.snapshot()
        if not snapshot.lines:
            self.notifications.error("Your cart is empty.")
            self._transition(CheckoutState.BROWSING)
            return None

        order = Order(
            customer_details=CustomerDetails(**self.details),
            items=[
                OrderItem(id=line.id, name=line.name, quantity=line.quantity, price=line.price)
                for line in snapshot.lines
            ],
            total_amount=snapshot.subtotal,
            status=OrderStatus.PENDING,
            payment_method=self.payment_method,
        )

        self._transition(CheckoutState.SUBMITTING)
        order_id = await self.orders.append(order, idempotency_key=self.idempotency_key)

        if order_id is None:
            # 通知は注文ストアアダプタが出している
            self._transition(CheckoutState.FAILED)
            self._transition(CheckoutState.COLLECTING_DETAILS)
            return None

        self._transition(CheckoutState.DONE)
        self.last_order_id = order_id
        self.idempotency_key = None
        self.cart.clear()
        self.on_success(order_id)
        self.notifications.success("Order Placed! Thank you for your purchase.")
        logger.info("Checkout completed: order %s", order_id)
        return order_id

    def _reset_form(self) -> None:
        self.details = {field: "" for field in SHIPPING_FIELDS}
        self.payment_method = PaymentMethod.CARD
