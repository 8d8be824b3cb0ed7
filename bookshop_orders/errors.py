"""
Order Service: エラー定義

すべての業務エラーは OrderError を継承する。
kind / status_code / retryable をクラス属性として持ち、
main.py の例外ハンドラがそのまま HTTP レスポンスに変換する。

検証エラーは変更を一切行う前に送出される。
コミット時のエラーはロールバックが完了してから送出される。
"""


class OrderError(Exception):
    kind = "OrderError"
    status_code = 400
    retryable = False

    def __init__(self, message: str, **detail) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
            **self.detail,
        }


class InvalidRequest(OrderError):
    kind = "InvalidRequest"


class DuplicateLineItem(OrderError):
    kind = "DuplicateLineItem"

    def __init__(self, book_ids: list[str]) -> None:
        super().__init__("Duplicate books in order lines", book_ids=book_ids)


class UserNotFound(OrderError):
    kind = "UserNotFound"
    status_code = 404

    def __init__(self, user_id: str) -> None:
        super().__init__("User not found", user_id=user_id)


class BookNotFound(OrderError):
    kind = "BookNotFound"
    status_code = 404

    def __init__(self, book_ids: list[str]) -> None:
        super().__init__("One or more books not found", book_ids=book_ids)


class InsufficientStock(OrderError):
    kind = "InsufficientStock"
    status_code = 409

    def __init__(self, book_id: str, title: str, available: int, requested: int) -> None:
        super().__init__(
            f"Insufficient stock for book: {title}. "
            f"Available: {available}, Requested: {requested}",
            book_id=book_id,
            available=available,
            requested=requested,
        )


class IdempotencyKeyConflict(OrderError):
    kind = "IdempotencyKeyConflict"
    status_code = 409

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            "Idempotency key was already used by another purchaser",
            idempotency_key=idempotency_key,
        )


class OrderNotFound(OrderError):
    kind = "OrderNotFound"
    status_code = 404

    def __init__(self, order_id: str) -> None:
        super().__init__("Order not found", order_id=order_id)


class ConcurrentStockConflict(OrderError):
    """在庫の条件付き減算が他の注文に先を越された。最新の在庫で再送すれば成功しうる。"""

    kind = "ConcurrentStockConflict"
    status_code = 409
    retryable = True

    def __init__(self, book_id: str) -> None:
        super().__init__(
            "Stock changed while the order was being committed",
            book_id=book_id,
        )


class StorageUnavailable(OrderError):
    """ストレージ障害・ロック待ちタイムアウト。内部の詳細は返さない。"""

    kind = "StorageUnavailable"
    status_code = 503
    retryable = True

    def __init__(self) -> None:
        super().__init__("Order could not be committed, please retry")
