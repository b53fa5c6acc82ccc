"""
Storefront — オペレーターコンソール

オペレーター (UID が定数と一致する呼び出し元) だけが使える管理画面。

  products タブ: 商品の追加・編集・削除 (削除は確認ステップ付き)
  orders タブ  : 注文一覧 (新しい順)、ステータス変更、詳細表示

オペレーターでない呼び出し元には「アクセス拒否」画面だけを返し、
変更系の操作はすべて AccessDeniedError になる。
"""

import logging
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel

from .catalog import CatalogSnapshot, CatalogStore
from .errors import AccessDeniedError
from .identity import IdentityGate
from .models import Order, OrderStatus, Product
from .notifications import NotificationBus
from .orders import OrderStore

logger = logging.getLogger(__name__)

PLACEHOLDER_THUMBNAIL = "https://placehold.co/100x100/E2E8F0/4A5568?text=Item"


class AdminTab(str, Enum):
    PRODUCTS = "products"
    ORDERS = "orders"


class ProductForm(BaseModel):
    """追加・編集フォームの入力状態。product_id が None なら新規追加。"""
    product_id: str | None = None
    name: str = ""
    description: str = ""
    price: float = 0
    stock: int = 0
    image_url: str = ""

    def to_document(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "stock": self.stock,
            "imageUrl": self.image_url,
        }


def coerce_number(value, default: float = 0) -> float:
    """数値入力を float にする。読めなければ default。"""
    if isinstance(value, bool) or value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number or number in (float("inf"), float("-inf")):
        return default
    return number


def _line_subtotal(price: float, quantity: int) -> float:
    return float(round(Decimal(str(price or 0)) * quantity, 2))


class OperatorConsole:
    def __init__(
        self,
        identity: IdentityGate,
        catalog: CatalogStore,
        orders: OrderStore,
        notifications: NotificationBus,
    ):
        self.identity = identity
        self.catalog = catalog
        self.orders = orders
        self.notifications = notifications
        self.tab = AdminTab.PRODUCTS
        self.form: ProductForm | None = None
        self.pending_delete: tuple[str, str] | None = None
        self.viewing_order_id: str | None = None

    @property
    def admitted(self) -> bool:
        return self.identity.is_operator

    def require_operator(self) -> None:
        if not self.admitted:
            raise AccessDeniedError(self.identity.uid)

    def select_tab(self, tab: str) -> None:
        self.require_operator()
        self.tab = AdminTab(tab)

    # ── 商品管理 ──────────────────────────────────

    def open_new_product(self) -> ProductForm:
        self.require_operator()
        self.form = ProductForm()
        return self.form

    def open_edit_product(self, product: Product) -> ProductForm:
        self.require_operator()
        self.form = ProductForm(
            product_id=product.id,
            name=product.name,
            description=product.description,
            price=product.price or 0,
            stock=product.stock or 0,
            image_url=product.image_url,
        )
        return self.form

    def close_form(self) -> None:
        self.form = None

    async def submit_product_form(self, fields: dict) -> bool:
        """
        フォームを送信する。名前と説明は必須。
        価格・在庫は数値に変換し、読めなければ 0 (負数も 0 に丸める)。
        成功したらフォームを閉じる。
        """
        self.require_operator()
        if self.form is None:
            self.form = ProductForm()

        form = self.form
        if "name" in fields:
            form.name = fields["name"] or ""
        if "description" in fields:
            form.description = fields["description"] or ""
        if "price" in fields:
            form.price = round(max(coerce_number(fields["price"]), 0), 2)
        if "stock" in fields:
            form.stock = max(int(coerce_number(fields["stock"])), 0)
        if "imageUrl" in fields or "image_url" in fields:
            form.image_url = fields.get("imageUrl", fields.get("image_url")) or ""

        if not form.name.strip() or not form.description.strip():
            self.notifications.error("Product name and description are required.")
            return False

        if form.product_id is None:
            ok = await self.catalog.create(form.to_document()) is not None
        else:
            ok = await self.catalog.update(form.product_id, form.to_document())
        if ok:
            self.form = None
        return ok

    def request_delete(self, product: Product) -> None:
        """削除の確認待ちにする。実際の削除は confirm_delete()。"""
        self.require_operator()
        self.pending_delete = (product.id, product.name)

    def cancel_delete(self) -> None:
        self.pending_delete = None

    async def confirm_delete(self) -> bool:
        self.require_operator()
        if self.pending_delete is None:
            return False
        product_id, name = self.pending_delete
        self.pending_delete = None
        return await self.catalog.delete(product_id, name)

    # ── 注文管理 ──────────────────────────────────

    async def change_order_status(self, order_id: str, status: str) -> bool:
        self.require_operator()
        try:
            new_status = OrderStatus(status)
        except ValueError:
            self.notifications.error(f"Unknown order status: {status}")
            return False
        return await self.orders.update_status(order_id, new_status)

    def open_order_details(self, order_id: str) -> None:
        self.require_operator()
        self.viewing_order_id = order_id

    def close_order_details(self) -> None:
        self.viewing_order_id = None

    # ── 描画 ──────────────────────────────────────

    def render(self, products: CatalogSnapshot, orders: list[Order]) -> dict:
        if not self.admitted:
            return {
                "surface": "access_denied",
                "message": "You do not have permission to view this page.",
                "uid": self.identity.uid,
            }

        view = {
            "surface": "admin",
            "tab": self.tab.value,
            "order_count": len(orders),
        }
        if self.tab is AdminTab.PRODUCTS:
            view["products"] = [
                {
                    "id": p.id,
                    "name": p.name,
                    "price": p.price or 0,
                    "thumbnail": p.image_url or PLACEHOLDER_THUMBNAIL,
                }
                for p in products.values()
            ]
            view["form"] = (
                self.form.model_dump(mode="json") if self.form is not None else None
            )
            view["pending_delete"] = (
                {"id": self.pending_delete[0], "name": self.pending_delete[1]}
                if self.pending_delete
                else None
            )
        else:
            view["orders"] = [
                {
                    "id": o.id,
                    "date": o.created_at.isoformat() if o.created_at else None,
                    "customer": o.customer_details.name,
                    "payment_method": o.payment_method.value,
                    "total": o.total_amount,
                    "status": o.status.value,
                    "status_options": [s.value for s in OrderStatus],
                }
                for o in orders
            ]
            view["order_details"] = self._order_details(orders)
        return view

    def _order_details(self, orders: list[Order]) -> dict | None:
        if self.viewing_order_id is None:
            return None
        order = next((o for o in orders if o.id == self.viewing_order_id), None)
        if order is None:
            return None
        return {
            "customer": order.customer_details.model_dump(),
            "id": order.id,
            "date": order.created_at.isoformat() if order.created_at else None,
            "status": order.status.value,
            "payment_method": order.payment_method.value,
            "total": order.total_amount,
            "items": [
                {
                    "id": item.id,
                    "name": item.name,
                    "quantity": item.quantity,
                    "price": item.price,
                    "subtotal": _line_subtotal(item.price, item.quantity),
                }
                for item in order.items
            ],
        }
