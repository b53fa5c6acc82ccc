"""
Storefront — ビューコントローラ

訪問者ごとのストアフロントセッション。元はブラウザ側で持っていた状態を
すべてサーバー側で保持する。

  ┌──────────────┐  snapshot  ┌──────────────────┐
  │ CatalogStore │ ─────────▶ │ StorefrontSession│ ──▶ shop / cart / admin
  │ OrderStore   │ ─────────▶ │  (surface, cart, │
  └──────────────┘ (operator) │   checkout, ...) │
                              └──────────────────┘

アイデンティティと最初のカタログスナップショットが揃うまでは
loading 画面だけを返す。注文の購読はオペレーターのときだけ張る。
UID はセッション中に変わらないので、ロール変更時の購読解除は扱わない。
"""

import logging
import time
from collections.abc import Callable
from enum import Enum
from urllib.parse import quote
from uuid import uuid4

from .cart import Cart
from .catalog import CatalogSnapshot, CatalogStore
from .checkout import CheckoutPipeline, CheckoutState
from .config import Settings
from .console import OperatorConsole
from .documents import DocumentStore
from .errors import IdentityError, SessionNotFoundError
from .identity import IdentityGate, IdentityProvider
from .models import Order
from .notifications import NotificationBus
from .orders import OrderStore
from .subscriber import Subscription

logger = logging.getLogger(__name__)

PLACEHOLDER_IMAGE = "https://placehold.co/600x400/F25F5C/FFFFFF?text={name}"
PLACEHOLDER_CART_IMAGE = "https://placehold.co/100x100/E2E8F0/4A5568?text=Item"


class Surface(str, Enum):
    SHOP = "shop"
    CART = "cart"
    ADMIN = "admin"


class StorefrontSession:
    def __init__(
        self,
        session_id: str,
        store: DocumentStore,
        provider: IdentityProvider,
        settings: Settings,
        initial_auth_token: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_id = session_id
        self.clock = clock
        self.last_seen = clock()
        self.notifications = NotificationBus(ttl=settings.notification_ttl, clock=clock)
        self.identity = IdentityGate(
            provider,
            settings.operator_uid,
            initial_auth_token or settings.initial_auth_token,
        )
        self.catalog = CatalogStore(store, self.notifications)
        self.order_store = OrderStore(store, self.notifications)
        self.cart = Cart(self.notifications)
        self.checkout = CheckoutPipeline(
            self.cart, self.order_store, self.notifications, on_success=self._on_order_placed
        )
        self.console = OperatorConsole(
            self.identity, self.catalog, self.order_store, self.notifications
        )

        self.surface = Surface.SHOP
        self.products: CatalogSnapshot = {}
        self.orders: list[Order] = []
        self.catalog_loaded = False
        self.identity_error: str | None = None
        self.subscriptions: list[Subscription] = []

    # ── ライフサイクル ────────────────────────────

    async def start(self) -> None:
        """
        アイデンティティを取得してから購読を張る。
        取得に失敗したセッションは loading のまま (再試行しない)。
        """
        try:
            await self.identity.acquire()
        except IdentityError as e:
            logger.error("Session %s has no identity: %s", self.session_id, e)
            self.identity_error = str(e)
            return

        try:
            self.subscriptions.append(
                await self.catalog.subscribe(self._on_products, on_error=self._on_catalog_error)
            )
            if self.identity.is_operator:
                self.subscriptions.append(await self.order_store.subscribe(self._on_orders))
        except Exception:
            # 張り終えた購読を残さない
            await self.close()
            raise

    async def close(self) -> None:
        for subscription in self.subscriptions:
            await subscription.close()
        self.subscriptions.clear()

    def _on_products(self, products: CatalogSnapshot) -> None:
        self.products = products
        self.catalog_loaded = True

    def _on_catalog_error(self, error: Exception) -> None:
        # 最初の読み取りに失敗しても loading からは抜ける
        self.catalog_loaded = True

    def _on_orders(self, orders: list[Order]) -> None:
        self.orders = orders

    def _on_order_placed(self, order_id: str) -> None:
        self.surface = Surface.SHOP

    def touch(self) -> None:
        self.last_seen = self.clock()

    @property
    def ready(self) -> bool:
        return self.identity.ready and self.catalog_loaded

    @property
    def is_operator(self) -> bool:
        return self.identity.is_operator

    # ── ユーザー操作 ──────────────────────────────

    def navigate(self, surface: str) -> None:
        target = Surface(surface)
        if self.surface is Surface.CART and target is not Surface.CART:
            self.checkout.cancel()
        self.surface = target

    def add_to_cart(self, product_id: str) -> bool:
        product = self.products.get(product_id)
        if product is None:
            self.notifications.error("That product is no longer available.")
            return False
        self.cart.add(product)
        return True

    # ── 描画 ──────────────────────────────────────

    def render(self) -> dict:
        notification = self.notifications.current
        view = {
            "session_id": self.session_id,
            "uid": self.identity.uid,
            "notification": notification.model_dump() if notification else None,
        }
        if not self.ready:
            view.update(
                surface="loading",
                nav=None,
                body={"surface": "loading", "message": "Loading your shop..."},
            )
            return view

        links = [Surface.SHOP.value, Surface.CART.value]
        if self.is_operator:
            links.append(Surface.ADMIN.value)

        view.update(
            surface=self.surface.value,
            nav={"links": links, "cart_count": self.cart.item_count},
        )
        if self.surface is Surface.CART:
            view["body"] = self._render_cart()
        elif self.surface is Surface.ADMIN:
            view["body"] = self.console.render(self.products, self.orders)
        else:
            view["body"] = self._render_shop()
        return view

    def _render_shop(self) -> dict:
        return {
            "surface": "shop",
            "products": [
                {
                    "id": p.id,
                    "name": p.name,
                    "description": p.description,
                    "price": p.price or 0,
                    "image": p.image_url or PLACEHOLDER_IMAGE.format(name=quote(p.name)),
                }
                for p in self.products.values()
            ],
        }

    def _render_cart(self) -> dict:
        snapshot = self.cart.snapshot()
        if not snapshot.lines:
            return {"surface": "cart", "empty": True, "lines": [], "total": 0.0}
        body = {
            "surface": "cart",
            "empty": False,
            "lines": [
                {
                    "id": line.id,
                    "name": line.name,
                    "price": line.price,
                    "quantity": line.quantity,
                    "subtotal": line.subtotal,
                    "image": line.image_url or PLACEHOLDER_CART_IMAGE,
                }
                for line in snapshot.lines
            ],
            "item_count": snapshot.item_count,
            "total": snapshot.subtotal,
            "checkout": {
                "state": self.checkout.state.value,
                "details": dict(self.checkout.details),
                "payment_method": self.checkout.payment_method.value,
                "submit_enabled": self.checkout.state is CheckoutState.COLLECTING_DETAILS,
            },
        }
        return body


class SessionRegistry:
    """
    ストアフロントセッションの生成・参照・破棄

    参照されないまま session_ttl 秒経ったセッションは evict_idle() で閉じる。
    作成時にも掃除するので、放置されたセッションが購読を持ち続けることはない。
    """

    def __init__(
        self,
        store: DocumentStore,
        provider: IdentityProvider,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.provider = provider
        self.settings = settings
        self.clock = clock
        self._sessions: dict[str, StorefrontSession] = {}
        self.session_ttl = settings.session_ttl

    def __len__(self) -> int:
        return len(self._sessions)

    async def create(self, initial_auth_token: str | None = None) -> StorefrontSession:
        await self.evict_idle()
        session = StorefrontSession(
            uuid4().hex,
            self.store,
            self.provider,
            self.settings,
            initial_auth_token=initial_auth_token,
            clock=self.clock,
        )
        await session.start()
        self._sessions[session.session_id] = session
        logger.info(
            "Session %s started (uid=%s, operator=%s)",
            session.session_id,
            session.identity.uid,
            session.is_operator,
        )
        return session

    def get(self, session_id: str) -> StorefrontSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        session.touch()
        return session

    async def close(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFoundError(session_id)
        await session.close()
        logger.info("Session %s closed", session_id)

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.close(session_id)

    async def evict_idle(self) -> int:
        """放置されたセッションを閉じ、閉じた数を返す。"""
        now = self.clock()
        idle = [
            session_id
            for session_id, session in self._sessions.items()
            if now - session.last_seen >= self.session_ttl
        ]
        for session_id in idle:
            logger.info("Evicting idle session %s", session_id)
            await self.close(session_id)
        return len(idle)
