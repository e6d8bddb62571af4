"""
Bookstore Service — 購入集約 (Purchase Aggregate)

購入の状態遷移ルールをここに集める。

状態遷移:
    PENDING → COMPLETED  (支払い完了)
    PENDING → CANCELLED  (キャンセル)
    COMPLETED / CANCELLED は終端状態で、以降の遷移はすべて不正。

現在の状態はリードモデル (book_purchases) が正だが、
イベントストアの履歴からリプレイして同じ状態を復元することもできる。
"""

from enum import Enum
from uuid import UUID

from .errors import InvalidStateError


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def label(self) -> str:
        return {
            PurchaseStatus.PENDING: "Pending",
            PurchaseStatus.COMPLETED: "Completed",
            PurchaseStatus.CANCELLED: "Cancelled",
        }[self]

    @property
    def is_terminal(self) -> bool:
        return self is not PurchaseStatus.PENDING

    def can_transition_to(self, new_status: "PurchaseStatus") -> bool:
        if self is PurchaseStatus.PENDING:
            return new_status in (PurchaseStatus.COMPLETED, PurchaseStatus.CANCELLED)
        return False

    @classmethod
    def default(cls) -> "PurchaseStatus":
        return cls.PENDING


class PurchaseAggregate:
    def __init__(self) -> None:
        self.id: UUID | None = None
        self.book_id: UUID | None = None
        self.buyer_id: UUID | None = None
        self.quantity: int = 0
        self.status: PurchaseStatus = PurchaseStatus.PENDING
        self.transaction_id: str | None = None
        self.version: int = 0

    @classmethod
    def from_record(cls, purchase) -> "PurchaseAggregate":
        """リードモデルの購入レコードから集約を組み立てる。"""
        agg = cls()
        agg.id = purchase.id
        agg.book_id = purchase.book_id
        agg.buyer_id = purchase.buyer_id
        agg.quantity = purchase.quantity
        agg.status = PurchaseStatus(purchase.status)
        agg.transaction_id = purchase.transaction_id
        return agg

    # ── 状態遷移の判定 ───────────────────────────────

    def ensure_can_complete(self) -> None:
        if not self.status.can_transition_to(PurchaseStatus.COMPLETED):
            raise InvalidStateError(
                self.id,
                self.status.value,
                PurchaseStatus.COMPLETED.value,
                "Only pending purchases can be completed",
            )

    def ensure_can_cancel(self) -> None:
        if not self.status.can_transition_to(PurchaseStatus.CANCELLED):
            raise InvalidStateError(
                self.id,
                self.status.value,
                PurchaseStatus.CANCELLED.value,
                "Only pending purchases can be cancelled",
            )

    # ── イベント適用メソッド ──────────────────────────

    def apply_purchase_created(self, data: dict) -> None:
        self.id = UUID(data["purchase_id"])
        self.book_id = UUID(data["book_id"])
        self.buyer_id = UUID(data["buyer_id"])
        self.quantity = data["quantity"]
        self.status = PurchaseStatus(data.get("status", PurchaseStatus.PENDING.value))
        self.transaction_id = data.get("transaction_id")

    def apply_purchase_completed(self, data: dict) -> None:
        self.status = PurchaseStatus.COMPLETED
        if data.get("transaction_id"):
            self.transaction_id = data["transaction_id"]

    def apply_purchase_cancelled(self, _data: dict) -> None:
        self.status = PurchaseStatus.CANCELLED

    def apply_event(self, event_type: str, event_data: dict) -> None:
        handler = {
            "PurchaseCreated": self.apply_purchase_created,
            "PurchaseCompleted": self.apply_purchase_completed,
            "PurchaseCancelled": self.apply_purchase_cancelled,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "PurchaseAggregate":
        """イベント列から集約を再構築する。"""
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg
