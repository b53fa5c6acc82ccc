"""
Storefront — カートエンジン

セッションのメモリ上にだけ存在する、商品 ID → カート行 の対応表。

  - 初回追加時に 名前・単価・画像 URL を凍結して保持する
  - 数量は常に 1 以上。0 以下にした行は存在しない (削除と同じ)
  - 合計は毎回カート行から計算する
"""

import math
from decimal import Decimal

from pydantic import BaseModel, Field

from .models import Product
from .notifications import NotificationBus


class CartLine(BaseModel):
    """カート行 — 価格は初回追加時点のスナップショット"""
    id: str
    name: str
    price: float = 0
    image_url: str = ""
    quantity: int = Field(1, ge=1)

    @property
    def subtotal(self) -> float:
        return _money(Decimal(str(self.price)) * self.quantity)


class CartSnapshot(BaseModel):
    lines: list[CartLine]
    item_count: int
    subtotal: float


def _money(amount: Decimal) -> float:
    return float(round(amount, 2))


def coerce_quantity(value: int | float | str | None) -> int | None:
    """
    数量入力を整数に丸める (四捨五入)。数値として読めなければ None。
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return math.floor(value + 0.5)
    return int(value)


class Cart:
    def __init__(self, notifications: NotificationBus):
        self.notifications = notifications
        self._lines: dict[str, CartLine] = {}

    def __len__(self) -> int:
        return len(self._lines)

    def __contains__(self, product_id: str) -> bool:
        return product_id in self._lines

    def line(self, product_id: str) -> CartLine | None:
        return self._lines.get(product_id)

    # ── 操作 ──────────────────────────────────────

    def add(self, product: Product) -> CartLine:
        line = self._lines.get(product.id)
        if line:
            line.quantity += 1
        else:
            line = CartLine(
                id=product.id,
                name=product.name,
                price=product.price or 0,
                image_url=product.image_url,
                quantity=1,
            )
            self._lines[product.id] = line
        self.notifications.success(f"{product.name} added to cart!")
        return line

    def set_quantity(self, product_id: str, quantity: int | float | str | None) -> None:
        """
        数量を設定する。0 以下なら行を削除する。凍結した単価は更新しない。
        数値として読めない入力は無視する。
        """
        q = coerce_quantity(quantity)
        if q is None:
            return
        if q <= 0:
            self.remove(product_id)
            return
        line = self._lines.get(product_id)
        if line:
            line.quantity = q

    def increment(self, product_id: str) -> None:
        line = self._lines.get(product_id)
        if line:
            self.set_quantity(product_id, line.quantity + 1)

    def decrement(self, product_id: str) -> None:
        line = self._lines.get(product_id)
        if line:
            self.set_quantity(product_id, line.quantity - 1)

    def remove(self, product_id: str) -> None:
        # 存在しない ID でも同じ通知を出す
        self._lines.pop(product_id, None)
        self.notifications.success("Item removed from cart.")

    def clear(self) -> None:
        self._lines.clear()

    # ── 派生値 ────────────────────────────────────

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self._lines.values())

    @property
    def subtotal(self) -> float:
        total = sum(
            (Decimal(str(line.price)) * line.quantity for line in self._lines.values()),
            Decimal("0"),
        )
        return _money(total)

    def snapshot(self) -> CartSnapshot:
        return CartSnapshot(
            lines=[line.model_copy() for line in self._lines.values()],
            item_count=self.item_count,
            subtotal=self.subtotal,
        )
