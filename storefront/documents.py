"""
Storefront — ドキュメントストア

テナントプレフィックス付きのコレクションにドキュメントを保存する。

  artifacts/{app_id}/public/data/products/{product_id}
  artifacts/{app_id}/public/data/orders/{order_id}

ドキュメント本体は JSON テキストとして 1 行に保存する。
書き込みが成功するたびに、コレクションパスと同名の Redis チャネルへ
変更イベントを発行する。ライブ購読 (subscriber.py) はこのイベントを
受けてスナップショットを読み直す。

ID とタイムスタンプはストア側で採番する (クライアントは決めない)。
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import sessionmaker

from .errors import DocumentNotFoundError, StoreError

logger = logging.getLogger(__name__)

PRODUCTS = "products"
ORDERS = "orders"

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS documents (
        collection VARCHAR(255) NOT NULL,
        id VARCHAR(64) NOT NULL,
        data TEXT NOT NULL,
        idempotency_key VARCHAR(64),
        created_at VARCHAR(40) NOT NULL,
        updated_at VARCHAR(40) NOT NULL,
        PRIMARY KEY (collection, id)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS documents_idempotency
        ON documents (collection, idempotency_key)
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_users (
        uid VARCHAR(64) PRIMARY KEY,
        provider VARCHAR(32) NOT NULL,
        created_at VARCHAR(40) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_tokens (
        token VARCHAR(128) PRIMARY KEY,
        uid VARCHAR(64) NOT NULL,
        created_at VARCHAR(40) NOT NULL
    )
    """,
]


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


# フィールド値にこれを入れて書き込むと、コミット時にストアの時刻で置き換わる
SERVER_TIMESTAMP = _ServerTimestamp()


class ServerClock:
    """
    ストアの権威ある時計。

    同一プロセス内のコミット順に対して単調増加する値を返す。
    文字列として辞書順に比較できるよう、マイクロ秒まで固定桁で出力する。
    """

    def __init__(self) -> None:
        self._last: datetime | None = None

    def now(self) -> str:
        now = datetime.now(timezone.utc)
        if self._last is not None and now <= self._last:
            now = self._last + timedelta(microseconds=1)
        self._last = now
        return now.isoformat(timespec="microseconds")


async def init_schema(engine: AsyncEngine) -> None:
    """テーブルを作成する (既にあれば何もしない)。"""
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))


def _resolve_sentinels(data: dict, now: str) -> dict:
    return {k: (now if v is SERVER_TIMESTAMP else v) for k, v in data.items()}


def _row_to_document(row) -> dict:
    data = json.loads(row.data) if isinstance(row.data, str) else row.data
    return {"id": row.id, **data}


class DocumentStore:
    """コレクション単位の CRUD と変更イベントの発行"""

    def __init__(
        self,
        session_factory: sessionmaker,
        redis: aioredis.Redis,
        app_id: str,
        clock: ServerClock | None = None,
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.app_id = app_id
        self.clock = clock or ServerClock()

    def path(self, collection: str) -> str:
        return f"artifacts/{self.app_id}/public/data/{collection}"

    # ── 書き込み ──────────────────────────────────

    async def add(
        self,
        collection: str,
        data: dict,
        idempotency_key: str | None = None,
    ) -> str:
        """
        ドキュメントを追加し、ストアが採番した ID を返す。

        idempotency_key が既に使われていれば何も書かずに既存の ID を返す。
        再送による二重登録をストア層で防ぐ。
        """
        path = self.path(collection)
        try:
            async with self.session_factory() as session:
                if idempotency_key:
                    existing = await self._find_by_key(session, path, idempotency_key)
                    if existing:
                        logger.info(
                            "Duplicate add on %s ignored (key=%s)", path, idempotency_key
                        )
                        return existing

                doc_id = uuid4().hex
                now = self.clock.now()
                await session.execute(
                    text("""
                        INSERT INTO documents
                            (collection, id, data, idempotency_key, created_at, updated_at)
                        VALUES
                            (:collection, :id, :data, :key, :now, :now)
                    """),
                    {
                        "collection": path,
                        "id": doc_id,
                        "data": json.dumps(_resolve_sentinels(data, now), default=str),
                        "key": idempotency_key,
                        "now": now,
                    },
                )
                try:
                    await session.commit()
                except IntegrityError:
                    # 同じキーで並行に書き込まれた
                    await session.rollback()
                    existing = await self._find_by_key(session, path, idempotency_key)
                    if not existing:
                        raise
                    return existing
        except SQLAlchemyError as e:
            raise StoreError("add", path, str(e)) from e

        logger.info("Added %s/%s", path, doc_id)
        await self._publish("DocumentAdded", path, doc_id, now)
        return doc_id

    async def set(
        self,
        collection: str,
        doc_id: str,
        data: dict,
        merge: bool = True,
    ) -> None:
        """
        ドキュメントを置き換える。merge=True なら指定されていないキーを残す。
        ドキュメントが無ければ作成する。
        """
        path = self.path(collection)
        try:
            async with self.session_factory() as session:
                current = await self._load(session, path, doc_id)
                now = self.clock.now()
                fields = _resolve_sentinels(data, now)
                if current is None:
                    await session.execute(
                        text("""
                            INSERT INTO documents
                                (collection, id, data, created_at, updated_at)
                            VALUES
                                (:collection, :id, :data, :now, :now)
                        """),
                        {
                            "collection": path,
                            "id": doc_id,
                            "data": json.dumps(fields, default=str),
                            "now": now,
                        },
                    )
                    event_type = "DocumentAdded"
                else:
                    merged = {**current, **fields} if merge else fields
                    await self._write(session, path, doc_id, merged, now)
                    event_type = "DocumentUpdated"
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError("set", path, str(e)) from e

        logger.info("Set %s/%s (merge=%s)", path, doc_id, merge)
        await self._publish(event_type, path, doc_id, now)

    async def update(self, collection: str, doc_id: str, fields: dict) -> None:
        """既存ドキュメントの一部フィールドを更新する。無ければ DocumentNotFoundError。"""
        path = self.path(collection)
        try:
            async with self.session_factory() as session:
                current = await self._load(session, path, doc_id)
                if current is None:
                    raise DocumentNotFoundError(path, doc_id)
                now = self.clock.now()
                merged = {**current, **_resolve_sentinels(fields, now)}
                await self._write(session, path, doc_id, merged, now)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError("update", path, str(e)) from e

        logger.info("Updated %s/%s fields=%s", path, doc_id, sorted(fields))
        await self._publish("DocumentUpdated", path, doc_id, now)

    async def delete(self, collection: str, doc_id: str) -> None:
        path = self.path(collection)
        try:
            async with self.session_factory() as session:
                await session.execute(
                    text("DELETE FROM documents WHERE collection = :collection AND id = :id"),
                    {"collection": path, "id": doc_id},
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError("delete", path, str(e)) from e

        logger.info("Deleted %s/%s", path, doc_id)
        await self._publish("DocumentDeleted", path, doc_id, self.clock.now())

    # ── 読み取り ──────────────────────────────────

    async def get(self, collection: str, doc_id: str) -> dict | None:
        path = self.path(collection)
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    text("""
                        SELECT id, data FROM documents
                        WHERE collection = :collection AND id = :id
                    """),
                    {"collection": path, "id": doc_id},
                )
                row = result.fetchone()
        except SQLAlchemyError as e:
            raise StoreError("get", path, str(e)) from e
        return _row_to_document(row) if row else None

    async def list_documents(self, collection: str) -> list[dict]:
        """コレクションの全ドキュメントをコミット順に返す。"""
        path = self.path(collection)
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    text("""
                        SELECT id, data FROM documents
                        WHERE collection = :collection
                        ORDER BY created_at ASC, id ASC
                    """),
                    {"collection": path},
                )
                rows = result.fetchall()
        except SQLAlchemyError as e:
            raise StoreError("list", path, str(e)) from e
        return [_row_to_document(row) for row in rows]

    # ── 内部ヘルパ ────────────────────────────────

    async def _load(self, session, path: str, doc_id: str) -> dict | None:
        result = await session.execute(
            text("SELECT data FROM documents WHERE collection = :collection AND id = :id"),
            {"collection": path, "id": doc_id},
        )
        row = result.fetchone()
        if not row:
            return None
        return json.loads(row.data) if isinstance(row.data, str) else row.data

    async def _write(self, session, path: str, doc_id: str, data: dict, now: str) -> None:
        await session.execute(
            text("""
                UPDATE documents
                SET data = :data, updated_at = :now
                WHERE collection = :collection AND id = :id
            """),
            {
                "collection": path,
                "id": doc_id,
                "data": json.dumps(data, default=str),
                "now": now,
            },
        )

    async def _find_by_key(self, session, path: str, key: str) -> str | None:
        result = await session.execute(
            text("""
                SELECT id FROM documents
                WHERE collection = :collection AND idempotency_key = :key
            """),
            {"collection": path, "key": key},
        )
        row = result.fetchone()
        return row.id if row else None

    async def _publish(self, event_type: str, path: str, doc_id: str, now: str) -> None:
        """
        変更イベントを Redis Pub/Sub で発行する。

        書き込み自体はコミット済みなので、発行に失敗しても操作は失敗扱いにしない。
        購読側は次のイベントで最新状態を読み直す。
        """
        try:
            await self.redis.publish(
                path,
                json.dumps(
                    {
                        "event_type": event_type,
                        "data": {"collection": path, "id": doc_id, "timestamp": now},
                    },
                    default=str,
                ),
            )
        except RedisError:
            logger.exception("Failed to publish %s for %s/%s", event_type, path, doc_id)
