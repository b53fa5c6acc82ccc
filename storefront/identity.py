"""
Storefront — アイデンティティゲート

セッション開始時にストアから呼び出し元の UID を取得する。

  initial_auth_token あり → トークンを引き換えて UID を得る
  なし                    → 匿名セッションを開く

UID がオペレーター定数と一致するときだけ「オペレーター」として扱う。
これはクライアント側の UX ゲートであり、セキュリティ境界ではない。
改ざん防止はストア側のルールに依存する。
"""

import logging
import secrets
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .documents import ServerClock
from .errors import IdentityError

logger = logging.getLogger(__name__)


class IdentityProvider:
    """ストア側の認証 (auth_users / auth_tokens テーブル)"""

    def __init__(self, session_factory: sessionmaker, clock: ServerClock | None = None):
        self.session_factory = session_factory
        self.clock = clock or ServerClock()

    async def sign_in_anonymously(self) -> str:
        uid = uuid4().hex
        try:
            async with self.session_factory() as session:
                await session.execute(
                    text("""
                        INSERT INTO auth_users (uid, provider, created_at)
                        VALUES (:uid, 'anonymous', :now)
                    """),
                    {"uid": uid, "now": self.clock.now()},
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise IdentityError(f"anonymous sign-in failed: {e}") from e
        logger.info("Anonymous sign-in: %s", uid)
        return uid

    async def sign_in_with_custom_token(self, token: str) -> str:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    text("SELECT uid FROM auth_tokens WHERE token = :token"),
                    {"token": token},
                )
                row = result.fetchone()
        except SQLAlchemyError as e:
            raise IdentityError(f"token sign-in failed: {e}") from e
        if not row:
            raise IdentityError("credential token was not recognised")
        logger.info("Token sign-in: %s", row.uid)
        return row.uid

    async def mint_custom_token(self, uid: str) -> str:
        """UID に紐づく資格トークンを発行する (オペレーター端末の準備用)。"""
        token = secrets.token_urlsafe(32)
        now = self.clock.now()
        async with self.session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO auth_tokens (token, uid, created_at)
                    VALUES (:token, :uid, :now)
                """),
                {"token": token, "uid": uid, "now": now},
            )
            exists = await session.execute(
                text("SELECT uid FROM auth_users WHERE uid = :uid"), {"uid": uid}
            )
            if not exists.fetchone():
                await session.execute(
                    text("""
                        INSERT INTO auth_users (uid, provider, created_at)
                        VALUES (:uid, 'custom', :now)
                    """),
                    {"uid": uid, "now": now},
                )
            await session.commit()
        return token


class IdentityGate:
    """
    セッションの呼び出し元 UID を確定させる。

    ready になるまでデータを表示するサーフェスは描画しない。
    UID はセッション中に変わらない。
    """

    def __init__(
        self,
        provider: IdentityProvider,
        operator_uid: str,
        initial_auth_token: str | None = None,
    ):
        self.provider = provider
        self.operator_uid = operator_uid
        self.initial_auth_token = initial_auth_token
        self.uid: str | None = None
        self.ready = False

    async def acquire(self) -> str:
        if self.initial_auth_token:
            uid = await self.provider.sign_in_with_custom_token(self.initial_auth_token)
        else:
            uid = await self.provider.sign_in_anonymously()
        if not uid:
            raise IdentityError("store returned an empty identity")
        self.uid = uid
        self.ready = True
        return uid

    @property
    def is_operator(self) -> bool:
        return self.uid is not None and self.uid == self.operator_uid
