"""
Storefront — 設定

起動時にホスト環境変数を一度だけ読む。すべて任意。

  firebase_config     ストア接続情報の JSON (database_url, redis_url)
  app_id              コレクションパスのテナントプレフィックス
  initial_auth_token  匿名サインインの代わりに引き換えるトークン
  operator_uid        オペレーターとして扱う唯一の UID
  session_ttl         参照の無いセッションを閉じるまでの秒数
"""

import json
import os
from collections.abc import Mapping

from pydantic import BaseModel

DEFAULT_APP_ID = "e-commerce-mvp"
DEFAULT_OPERATOR_UID = "REPLACE_WITH_YOUR_FIREBASE_USER_ID"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./storefront.db"
DEFAULT_REDIS_URL = "redis://localhost:6379"
DEFAULT_SESSION_TTL = 1800.0


class Settings(BaseModel):
    database_url: str = DEFAULT_DATABASE_URL
    redis_url: str = DEFAULT_REDIS_URL
    app_id: str = DEFAULT_APP_ID
    initial_auth_token: str | None = None
    operator_uid: str = DEFAULT_OPERATOR_UID
    notification_ttl: float = 3.0
    session_ttl: float = DEFAULT_SESSION_TTL


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """
    環境変数から Settings を組み立てる。

    firebase_config にキーが無ければ DATABASE_URL / REDIS_URL にフォールバックする。
    firebase_config が JSON として壊れている場合は起動エラー(ValueError)。
    """
    env = os.environ if environ is None else environ

    store_config: dict = {}
    raw = env.get("firebase_config")
    if raw:
        store_config = json.loads(raw)
        if not isinstance(store_config, dict):
            raise ValueError("firebase_config must be a JSON object")

    return Settings(
        database_url=store_config.get("database_url")
        or env.get("DATABASE_URL", DEFAULT_DATABASE_URL),
        redis_url=store_config.get("redis_url")
        or env.get("REDIS_URL", DEFAULT_REDIS_URL),
        app_id=env.get("app_id") or DEFAULT_APP_ID,
        initial_auth_token=env.get("initial_auth_token") or None,
        operator_uid=env.get("operator_uid") or DEFAULT_OPERATOR_UID,
        notification_ttl=float(env.get("notification_ttl", 3.0)),
        session_ttl=float(env.get("session_ttl", DEFAULT_SESSION_TTL)),
    )
