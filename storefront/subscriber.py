"""
Storefront — ライブ購読 (Redis Pub/Sub サブスクライバー)

コレクションパスのチャネルを購読し、変更イベントを受け取るたびに
コレクション全体を読み直してスナップショットとしてコールバックに渡す。
差分プロトコルは持たない。

  start()  → チャネル購読 → 初回スナップショット配信 → バックグラウンドで待機
             (購読に失敗しても初回スナップショットは配信し、待機中に再購読する)
  close()  → 購読解除・接続解放 (二度呼んでも安全)

注意: Redis Pub/Sub は fire-and-forget。購読前に発行されたイベントは届かないため、
購読を張ってから初回スナップショットを読む順序にしている。
"""

import asyncio
import json
import logging
from collections.abc import Callable

from redis.exceptions import RedisError

from .documents import DocumentStore
from .errors import StoreError

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[list[dict]], None]
ErrorCallback = Callable[[Exception], None]


class Subscription:
    def __init__(
        self,
        store: DocumentStore,
        collection: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
        poll_timeout: float = 1.0,
    ):
        self.store = store
        self.collection = collection
        self.channel = store.path(collection)
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.poll_timeout = poll_timeout
        self._pubsub = None
        self._subscribed = False
        self._task: asyncio.Task | None = None
        self._shutdown = asyncio.Event()
        self.closed = False

    @property
    def active(self) -> bool:
        return self._task is not None and not self.closed

    @property
    def subscribed(self) -> bool:
        return self._subscribed

    async def start(self) -> None:
        self._pubsub = self.store.redis.pubsub()
        try:
            await self._subscribe()
        except RedisError as e:
            logger.warning("Could not subscribe to %s: %s", self.channel, e)
            self.on_error(e)

        await self.refresh()
        self._task = asyncio.create_task(self._listen())

    async def _subscribe(self) -> None:
        await self._pubsub.subscribe(self.channel)
        self._subscribed = True
        logger.info("Subscribed to %s", self.channel)

    async def refresh(self) -> None:
        """コレクションを読み直してスナップショットを配信する。"""
        try:
            documents = await self.store.list_documents(self.collection)
        except StoreError as e:
            logger.warning("Snapshot read failed on %s: %s", self.channel, e)
            self.on_error(e)
            return
        self.on_snapshot(documents)

    async def _listen(self) -> None:
        while not self._shutdown.is_set():
            if not self._subscribed:
                try:
                    await self._subscribe()
                except RedisError:
                    await asyncio.sleep(self.poll_timeout)
                    continue
                # 購読できなかった間の変更を取り込む
                await self._safe_refresh()
                continue

            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self.poll_timeout
                )
            except RedisError as e:
                logger.warning("Subscription error on %s: %s", self.channel, e)
                self.on_error(e)
                await asyncio.sleep(self.poll_timeout)
                continue
            if message and message["type"] == "message":
                try:
                    event = json.loads(message["data"])
                except (TypeError, ValueError):
                    logger.warning("Ignoring malformed event on %s", self.channel)
                    continue
                logger.debug(
                    "Received %s on %s", event.get("event_type"), self.channel
                )
                await self._safe_refresh()
            else:
                await asyncio.sleep(0.01)

    async def _safe_refresh(self) -> None:
        try:
            await self.refresh()
        except Exception:
            logger.exception("Failed to deliver snapshot on %s", self.channel)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._shutdown.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Listener on %s had stopped with an error", self.channel)
        if self._pubsub is not None:
            try:
                if self._subscribed:
                    await self._pubsub.unsubscribe(self.channel)
                await self._pubsub.aclose()
            except RedisError as e:
                logger.warning("Error releasing subscription on %s: %s", self.channel, e)
        logger.info("Unsubscribed from %s", self.channel)
