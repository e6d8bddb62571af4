"""
Bookstore Service — ドメインエラー

すべての業務エラーは BookstoreError を継承する。
HTTP 層は status_code と to_dict() だけを見てレスポンスに変換する。
プロセスを落とすエラーはここには存在しない。
"""

from decimal import Decimal
from typing import Any
from uuid import UUID


class BookstoreError(Exception):
    """業務エラーの基底クラス"""

    code = "bookstore_error"
    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(BookstoreError):
    """入力値がフィールド制約を満たさない"""

    code = "validation_error"
    status_code = 422

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message, {"field": field})
        self.field = field


class NotFoundError(BookstoreError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: UUID | str) -> None:
        super().__init__(
            f"{entity} not found",
            {"entity": entity, "id": str(entity_id)},
        )
        self.entity = entity
        self.entity_id = entity_id


class InsufficientStockError(BookstoreError):
    """カタログの条件付き減算が 0 行だった（在庫不足）"""

    code = "insufficient_stock"
    status_code = 409

    def __init__(self, book_id: UUID, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock: requested={requested}, available={available}",
            {"book_id": str(book_id), "requested": requested, "available": available},
        )
        self.book_id = book_id
        self.requested = requested
        self.available = available


class BookNotAvailableError(BookstoreError):
    """購入時点で要求数量の在庫がない"""

    code = "book_not_available"
    status_code = 409

    def __init__(self, book_id: UUID, requested: int, available: int) -> None:
        super().__init__(
            "Book not available in requested quantity",
            {"book_id": str(book_id), "requested": requested, "available": available},
        )
        self.book_id = book_id
        self.requested = requested
        self.available = available


class PriceMismatchError(BookstoreError):
    """提示価格が現在価格の許容範囲 (1%) を外れている"""

    code = "price_mismatch"
    status_code = 409

    def __init__(self, current: Decimal, proposed: Decimal) -> None:
        super().__init__(
            "Purchase price does not match current book price. "
            f"Current: {current:.2f}, Provided: {proposed:.2f}",
            {"current_price": str(current), "proposed_price": str(proposed)},
        )
        self.current = current
        self.proposed = proposed


class InvalidStateError(BookstoreError):
    """終端状態 (completed / cancelled) からの遷移"""

    code = "invalid_state"
    status_code = 409

    def __init__(self, purchase_id: UUID, current: str, target: str, message: str) -> None:
        super().__init__(
            message,
            {"purchase_id": str(purchase_id), "current_status": current, "target_status": target},
        )
        self.purchase_id = purchase_id
        self.current = current
        self.target = target


class BookHasPurchasesError(BookstoreError):
    code = "book_has_purchases"
    status_code = 409

    def __init__(self, book_id: UUID, purchase_count: int) -> None:
        super().__init__(
            "Book has purchase history and cannot be deleted",
            {"book_id": str(book_id), "purchase_count": purchase_count},
        )
        self.book_id = book_id
        self.purchase_count = purchase_count
