"""
Storefront — 通知バス

一枠だけの一時メッセージ。新しい通知は表示中のものを置き換え、
表示期限 (既定 3 秒) をリセットする。期限切れは参照時に判定する。
"""

import time
from collections.abc import Callable
from typing import Literal

from pydantic import BaseModel

Severity = Literal["success", "error"]


class Notification(BaseModel):
    message: str
    severity: Severity


class NotificationBus:
    def __init__(self, ttl: float = 3.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._current: Notification | None = None
        self._expires_at: float = 0.0

    def push(self, message: str, severity: Severity) -> Notification:
        self._current = Notification(message=message, severity=severity)
        self._expires_at = self.clock() + self.ttl
        return self._current

    def success(self, message: str) -> Notification:
        return self.push(message, "success")

    def error(self, message: str) -> Notification:
        return self.push(message, "error")

    def dismiss(self) -> None:
        self._current = None

    @property
    def current(self) -> Notification | None:
        if self._current is not None and self.clock() >= self._expires_at:
            self._current = None
        return self._current
