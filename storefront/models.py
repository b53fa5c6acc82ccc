"""
Storefront — ドキュメントモデル

ストアに保存されるドキュメントの形を定義する。
フィールド名はストア上の表現 (camelCase) をエイリアスとして持ち、
Python 側では snake_case で扱う。
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class PaymentMethod(str, Enum):
    CARD = "Card"
    CASH = "Cash"


class Product(BaseModel):
    """
    商品 — products コレクションのドキュメント

    price / stock が欠けていても読み込みはエラーにせず 0 として扱う。
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""
    description: str = ""
    price: float = 0
    stock: int = 0
    image_url: str = Field("", alias="imageUrl")

    @field_validator("price", "stock", mode="before")
    @classmethod
    def _missing_as_zero(cls, value):
        return 0 if value is None else value

    @field_validator("name", "description", "image_url", mode="before")
    @classmethod
    def _missing_as_empty(cls, value):
        return "" if value is None else value


class CustomerDetails(BaseModel):
    """配送先情報 (注文に埋め込まれる)"""
    name: str
    email: str
    address: str


class OrderItem(BaseModel):
    """注文明細 — 注文時点の単価を保持する"""
    id: str
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(0, ge=0)


class Order(BaseModel):
    """
    注文 — orders コレクションのドキュメント

    createdAt はクライアントではなくストアの時計で埋められる。
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    customer_details: CustomerDetails = Field(..., alias="customerDetails")
    items: list[OrderItem] = Field(..., min_length=1)
    total_amount: float = Field(0, alias="totalAmount")
    status: OrderStatus = OrderStatus.PENDING
    payment_method: PaymentMethod = Field(PaymentMethod.CARD, alias="paymentMethod")
    created_at: datetime | None = Field(None, alias="createdAt")

    def to_document(self) -> dict:
        """ストアに書き込む形 (id と createdAt を除く) に変換する。"""
        return self.model_dump(
            mode="json", by_alias=True, exclude={"id", "created_at"}
        )
