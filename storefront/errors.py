"""
Storefront — 例外定義

ストア層で発生した例外はアダプタの呼び出し位置で捕捉され、
通知(Notification)か状態遷移に変換される。
HTTP 層まで届くのはセッション参照とオペレーター認可だけ。
"""


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    pass


class StoreError(StorefrontError):
    """Raised when the backing document store rejects or fails an operation."""

    def __init__(self, operation: str, collection: str, reason: str | None = None):
        self.operation = operation
        self.collection = collection
        msg = f"Store {operation} failed on {collection}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


class DocumentNotFoundError(StoreError):
    """Raised when an update targets a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        self.doc_id = doc_id
        super().__init__("update", collection, f"document not found: {doc_id}")


class IdentityError(StorefrontError):
    """Raised when no caller identity can be obtained. Fatal to the session."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Could not obtain an identity: {reason}")


class AccessDeniedError(StorefrontError):
    """Raised when a non-operator reaches an operator-only operation."""

    def __init__(self, uid: str | None):
        self.uid = uid
        super().__init__(f"Caller {uid or '<unknown>'} is not the operator")


class SessionNotFoundError(StorefrontError):
    """Raised when a storefront session id is unknown or already closed."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class InvalidTransitionError(StorefrontError):
    """Raised when the checkout pipeline is driven out of order."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move checkout from {current} to {requested}")
