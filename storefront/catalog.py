"""
Storefront — カタログストアアダプタ

products コレクションのライブスナップショット (商品 ID → Product) と、
オペレーター向けの作成・更新 (マージ)・削除を提供する。

書き込みは結果整合: 成功した書き込みは後続のスナップショットで反映される。
ローカル状態を楽観的に書き換えることはしない。
失敗はここで捕捉して通知に変換し、呼び出し元には bool で返す。
"""

import logging
from collections.abc import Callable

from pydantic import ValidationError

from .documents import PRODUCTS, DocumentStore
from .errors import StoreError
from .models import Product
from .notifications import NotificationBus
from .subscriber import Subscription

logger = logging.getLogger(__name__)

CatalogSnapshot = dict[str, Product]


def products_from_documents(documents: list[dict]) -> CatalogSnapshot:
    catalog: CatalogSnapshot = {}
    for doc in documents:
        try:
            product = Product.model_validate(doc)
        except ValidationError:
            logger.warning("Skipping malformed product %s", doc.get("id"))
            continue
        catalog[product.id] = product
    return catalog


class CatalogStore:
    def __init__(self, store: DocumentStore, notifications: NotificationBus):
        self.store = store
        self.notifications = notifications

    async def subscribe(
        self,
        on_snapshot: Callable[[CatalogSnapshot], None],
        on_error: Callable[[Exception], None] | None = None,
    ) -> Subscription:
        """
        ライブスナップショットを購読する。読み取りエラーは通知に変換し、
        直前のスナップショットは消費側にそのまま残る。
        """

        def _on_read_error(error: Exception) -> None:
            self.notifications.error("Could not fetch products.")
            if on_error is not None:
                on_error(error)

        subscription = Subscription(
            self.store,
            PRODUCTS,
            on_snapshot=lambda docs: on_snapshot(products_from_documents(docs)),
            on_error=_on_read_error,
        )
        await subscription.start()
        return subscription

    # ── 書き込み (オペレーター) ───────────────────

    async def create(self, fields: dict) -> str | None:
        try:
            product_id = await self.store.add(PRODUCTS, fields)
        except StoreError:
            logger.exception("Error creating product %r", fields.get("name"))
            self.notifications.error(f'Failed to add product "{fields.get("name")}".')
            return None
        self.notifications.success("Product added successfully!")
        return product_id

    async def update(self, product_id: str, fields: dict) -> bool:
        try:
            await self.store.set(PRODUCTS, product_id, fields, merge=True)
        except StoreError:
            logger.exception("Error updating product %s", product_id)
            self.notifications.error(
                f'Failed to update product "{fields.get("name") or product_id}".'
            )
            return False
        self.notifications.success("Product updated successfully!")
        return True

    async def delete(self, product_id: str, name: str) -> bool:
        try:
            await self.store.delete(PRODUCTS, product_id)
        except StoreError:
            logger.exception("Error deleting product %s", product_id)
            self.notifications.error(f'Failed to delete product "{name}".')
            return False
        self.notifications.success(f'Product "{name}" deleted successfully.')
        return True
