"""
Storefront — FastAPI エントリーポイント

訪問者ごとのストアフロントセッションを HTTP で操作する。
変更系のエンドポイントはすべて、操作後のセッション描画 (render) を返す。

  /sessions                         セッション作成 (任意で資格トークン)
  /sessions/{sid}                   描画 / 破棄
  /sessions/{sid}/cart/...          カート操作
  /sessions/{sid}/checkout/...      チェックアウト
  /sessions/{sid}/admin/...         オペレーターコンソール
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Literal

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .config import load_settings
from .controller import SessionRegistry, StorefrontSession
from .documents import DocumentStore, init_schema
from .errors import AccessDeniedError, InvalidTransitionError, SessionNotFoundError
from .identity import IdentityProvider

logger = logging.getLogger(__name__)

settings = load_settings()

engine = create_async_engine(settings.database_url, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
registry: SessionRegistry | None = None

SWEEP_INTERVAL = 60.0


async def sweep_idle_sessions(sessions: SessionRegistry, shutdown_event: asyncio.Event) -> None:
    """shutdown_event がセットされるまで、放置セッションを定期的に閉じる。"""
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=SWEEP_INTERVAL)
        except asyncio.TimeoutError:
            pass
        try:
            await sessions.evict_idle()
        except Exception:
            logger.exception("Failed to evict idle sessions")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global registry
    redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
    await init_schema(engine)
    store = DocumentStore(async_session, redis_pool, settings.app_id)
    registry = SessionRegistry(store, IdentityProvider(async_session, store.clock), settings)
    shutdown_event = asyncio.Event()
    sweeper_task = asyncio.create_task(sweep_idle_sessions(registry, shutdown_event))
    yield
    shutdown_event.set()
    sweeper_task.cancel()
    try:
        await sweeper_task
    except asyncio.CancelledError:
        pass
    await registry.close_all()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Storefront", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_registry() -> SessionRegistry:
    if registry is None:
        raise HTTPException(503, "Storefront is starting up")
    return registry


def get_session(
    session_id: str, sessions: SessionRegistry = Depends(get_registry)
) -> StorefrontSession:
    return sessions.get(session_id)


# ── 例外ハンドラ ─────────────────────────────────


@app.exception_handler(SessionNotFoundError)
async def session_not_found(request: Request, exc: SessionNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(AccessDeniedError)
async def access_denied(request: Request, exc: AccessDeniedError):
    return JSONResponse(
        status_code=403, content={"detail": "Access denied", "uid": exc.uid}
    )


@app.exception_handler(InvalidTransitionError)
async def invalid_transition(request: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# ── Request Models ───────────────────────────────


class CreateSessionRequest(BaseModel):
    token: str | None = None


class NavigateRequest(BaseModel):
    surface: Literal["shop", "cart", "admin"]


class AddToCartRequest(BaseModel):
    product_id: str


class QuantityRequest(BaseModel):
    quantity: int | float | str | None = None


class ShippingDetailsRequest(BaseModel):
    name: str | None = None
    email: str | None = None
    address: str | None = None
    payment_method: Literal["Card", "Cash"] | None = None


class TabRequest(BaseModel):
    tab: Literal["products", "orders"]


class ProductFormRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    price: float | str | None = None
    stock: float | str | None = None
    imageUrl: str | None = None


class StatusRequest(BaseModel):
    status: str


# ── セッション ───────────────────────────────────


@app.post("/sessions", status_code=201)
async def create_session(
    req: CreateSessionRequest | None = None,
    sessions: SessionRegistry = Depends(get_registry),
):
    """セッションを作成する。アイデンティティ取得に失敗しても loading のまま返す。"""
    session = await sessions.create(initial_auth_token=req.token if req else None)
    return session.render()


@app.get("/sessions/{session_id}")
async def render_session(session: StorefrontSession = Depends(get_session)):
    return session.render()


@app.delete("/sessions/{session_id}", status_code=204)
async def close_session(session_id: str, sessions: SessionRegistry = Depends(get_registry)):
    await sessions.close(session_id)


@app.post("/sessions/{session_id}/navigate")
async def navigate(req: NavigateRequest, session: StorefrontSession = Depends(get_session)):
    session.navigate(req.surface)
    return session.render()


@app.post("/sessions/{session_id}/notification/dismiss")
async def dismiss_notification(session: StorefrontSession = Depends(get_session)):
    session.notifications.dismiss()
    return session.render()


# ── カート ───────────────────────────────────────


@app.post("/sessions/{session_id}/cart/items")
async def add_to_cart(req: AddToCartRequest, session: StorefrontSession = Depends(get_session)):
    session.add_to_cart(req.product_id)
    return session.render()


@app.put("/sessions/{session_id}/cart/items/{product_id}")
async def set_quantity(
    product_id: str, req: QuantityRequest, session: StorefrontSession = Depends(get_session)
):
    session.cart.set_quantity(product_id, req.quantity)
    return session.render()


@app.post("/sessions/{session_id}/cart/items/{product_id}/increment")
async def increment(product_id: str, session: StorefrontSession = Depends(get_session)):
    session.cart.increment(product_id)
    return session.render()


@app.post("/sessions/{session_id}/cart/items/{product_id}/decrement")
async def decrement(product_id: str, session: StorefrontSession = Depends(get_session)):
    session.cart.decrement(product_id)
    return session.render()


@app.delete("/sessions/{session_id}/cart/items/{product_id}")
async def remove_from_cart(product_id: str, session: StorefrontSession = Depends(get_session)):
    session.cart.remove(product_id)
    return session.render()


# ── チェックアウト ───────────────────────────────


@app.post("/sessions/{session_id}/checkout")
async def begin_checkout(session: StorefrontSession = Depends(get_session)):
    session.checkout.begin()
    return session.render()


@app.delete("/sessions/{session_id}/checkout")
async def cancel_checkout(session: StorefrontSession = Depends(get_session)):
    session.checkout.cancel()
    return session.render()


@app.patch("/sessions/{session_id}/checkout/details")
async def update_details(
    req: ShippingDetailsRequest, session: StorefrontSession = Depends(get_session)
):
    session.checkout.update_details(**req.model_dump())
    return session.render()


@app.post("/sessions/{session_id}/checkout/submit")
async def submit_order(
    req: ShippingDetailsRequest, session: StorefrontSession = Depends(get_session)
):
    order_id = await session.checkout.submit(**req.model_dump())
    return {**session.render(), "order_id": order_id}


# ── オペレーターコンソール ───────────────────────


@app.post("/sessions/{session_id}/admin/tab")
async def select_tab(req: TabRequest, session: StorefrontSession = Depends(get_session)):
    session.console.select_tab(req.tab)
    return session.render()


@app.post("/sessions/{session_id}/admin/products/form")
async def open_new_product(session: StorefrontSession = Depends(get_session)):
    session.console.open_new_product()
    return session.render()


@app.post("/sessions/{session_id}/admin/products/{product_id}/form")
async def open_edit_product(product_id: str, session: StorefrontSession = Depends(get_session)):
    product = session.products.get(product_id)
    if product is None:
        session.console.require_operator()
        raise HTTPException(404, "Product not found")
    session.console.open_edit_product(product)
    return session.render()


@app.delete("/sessions/{session_id}/admin/products/form")
async def close_product_form(session: StorefrontSession = Depends(get_session)):
    session.console.close_form()
    return session.render()


@app.post("/sessions/{session_id}/admin/products/form/submit")
async def submit_product_form(
    req: ProductFormRequest, session: StorefrontSession = Depends(get_session)
):
    await session.console.submit_product_form(req.model_dump(exclude_unset=True))
    return session.render()


@app.post("/sessions/{session_id}/admin/products/{product_id}/delete")
async def request_delete(product_id: str, session: StorefrontSession = Depends(get_session)):
    product = session.products.get(product_id)
    if product is None:
        session.console.require_operator()
        raise HTTPException(404, "Product not found")
    session.console.request_delete(product)
    return session.render()


@app.post("/sessions/{session_id}/admin/products/delete/confirm")
async def confirm_delete(session: StorefrontSession = Depends(get_session)):
    await session.console.confirm_delete()
    return session.render()


@app.delete("/sessions/{session_id}/admin/products/delete")
async def cancel_delete(session: StorefrontSession = Depends(get_session)):
    session.console.cancel_delete()
    return session.render()


@app.put("/sessions/{session_id}/admin/orders/{order_id}/status")
async def change_status(
    order_id: str, req: StatusRequest, session: StorefrontSession = Depends(get_session)
):
    await session.console.change_order_status(order_id, req.status)
    return session.render()


@app.post("/sessions/{session_id}/admin/orders/{order_id}/details")
async def open_order_details(order_id: str, session: StorefrontSession = Depends(get_session)):
    session.console.open_order_details(order_id)
    return session.render()


@app.delete("/sessions/{session_id}/admin/orders/details")
async def close_order_details(session: StorefrontSession = Depends(get_session)):
    session.console.close_order_details()
    return session.render()


@app.get("/health")
async def health():
    return {"status": "ok", "service": "storefront"}
