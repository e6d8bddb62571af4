"""
Bookstore Service — リクエスト / フィルタ / リードモデル

フィールド制約は pydantic の Field で宣言する。
FastAPI のエンドポイントではそのまま 422 になり、
ライブラリとして呼ぶ場合は parse() でドメインの ValidationError に変換する。
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, computed_field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .aggregate import PurchaseStatus
from .errors import ValidationError

MAX_PRICE = Decimal("9999.99")
MAX_QUANTITY = 999
PRICE_TOLERANCE = Decimal("0.01")
CENT = Decimal("0.01")
LOW_STOCK_THRESHOLD = 3

PRICE_CONSTRAINTS = {"gt": 0, "le": MAX_PRICE, "max_digits": 6, "decimal_places": 2}

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse(model_cls: type[ModelT], data: dict) -> ModelT:
    """dict をモデルに変換する。最初の違反フィールドを ValidationError として送出。"""
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "__root__"
        raise ValidationError(field, first["msg"]) from exc


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class BookSortField(str, Enum):
    CREATED_AT = "created_at"
    TITLE = "title"
    PRICE = "price"
    QUANTITY = "quantity"


class PurchaseSortField(str, Enum):
    CREATED_AT = "created_at"
    TOTAL_PRICE = "total_price"
    QUANTITY = "quantity"
    STATUS = "status"


# ── Request Models ───────────────────────────────


class BookDraft(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    price: Decimal = Field(**PRICE_CONSTRAINTS)
    quantity: int = Field(ge=0, le=MAX_QUANTITY)
    category: str | None = Field(default=None, max_length=100)
    owner_id: UUID
    owner_name: str = Field(min_length=1, max_length=255)


class BookPatch(BaseModel):
    """書籍の部分更新。在庫数は restock でしか変えられないので含めない。"""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    price: Decimal | None = Field(default=None, **PRICE_CONSTRAINTS)
    category: str | None = Field(default=None, max_length=100)
    owner_name: str | None = Field(default=None, min_length=1, max_length=255)


class RestockRequest(BaseModel):
    quantity: int = Field(gt=0, le=MAX_QUANTITY)


class PurchaseDraft(BaseModel):
    book_id: UUID
    buyer_id: UUID
    buyer_name: str = Field(min_length=1, max_length=255)
    buyer_email: EmailStr
    quantity: int = Field(gt=0, le=MAX_QUANTITY)
    purchase_price: Decimal = Field(**PRICE_CONSTRAINTS)
    status: PurchaseStatus = PurchaseStatus.PENDING
    notes: str | None = Field(default=None, max_length=1000)
    payment_method: str | None = Field(default=None, max_length=50)
    transaction_id: str | None = Field(default=None, max_length=100)


class CompleteRequest(BaseModel):
    transaction_id: str | None = Field(default=None, max_length=100)


class BulkCompleteRequest(BaseModel):
    # 不正な ID も 1 件ごとのエラーとして返すため文字列で受ける
    purchase_ids: list[str] = Field(min_length=1)


class StatusUpdateRequest(BaseModel):
    status: PurchaseStatus


class BulkCreateRequest(BaseModel):
    purchases: list[dict] = Field(min_length=1)


# ── Filters ──────────────────────────────────────


class BookFilters(BaseModel):
    search: str | None = None
    category: str | None = None
    available_only: bool = False
    price_min: Decimal | None = None
    price_max: Decimal | None = None
    owner_id: UUID | None = None
    exclude_owner_id: UUID | None = None
    sort_by: BookSortField = BookSortField.CREATED_AT
    sort_order: SortOrder = SortOrder.DESC
    limit: int | None = Field(default=None, gt=0, le=500)
    offset: int = Field(default=0, ge=0)


class PurchaseFilters(BaseModel):
    buyer_id: UUID | None = None
    seller_id: UUID | None = None
    book_id: UUID | None = None
    status: PurchaseStatus | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    # 合計金額 (price * quantity) に対する範囲
    price_min: Decimal | None = None
    price_max: Decimal | None = None
    sort_by: PurchaseSortField = PurchaseSortField.CREATED_AT
    sort_order: SortOrder = SortOrder.DESC
    limit: int | None = Field(default=None, gt=0, le=500)
    offset: int = Field(default=0, ge=0)

    @field_validator("date_from", "date_to")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        # 保存値は UTC。SQLite はオフセットを無視して文字列比較するので揃えておく
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ── Read Models ──────────────────────────────────


class Book(BaseModel):
    id: UUID
    title: str
    description: str | None = None
    price: Decimal
    quantity: int
    category: str | None = None
    owner_id: UUID
    owner_name: str
    created_at: datetime
    updated_at: datetime | None = None

    @computed_field
    @property
    def is_available(self) -> bool:
        return self.quantity > 0

    @computed_field
    @property
    def availability(self) -> str:
        if self.quantity == 0:
            return "unavailable"
        if self.quantity <= LOW_STOCK_THRESHOLD:
            return "low"
        return "available"


class Purchase(BaseModel):
    id: UUID
    book_id: UUID
    book_title: str | None = None
    seller_id: UUID | None = None
    buyer_id: UUID
    buyer_name: str
    buyer_email: str
    quantity: int
    price: Decimal
    status: PurchaseStatus
    notes: str | None = None
    payment_method: str | None = None
    transaction_id: str | None = None
    created_at: datetime
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    @computed_field
    @property
    def total_price(self) -> Decimal:
        return (self.price * self.quantity).quantize(CENT)

    @computed_field
    @property
    def status_label(self) -> str:
        return self.status.label


class OrderLine(BaseModel):
    book_id: UUID
    title: str | None
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class OrderSummary(BaseModel):
    total_items: int = 0
    total_price: Decimal = Decimal("0.00")
    books: list[OrderLine] = Field(default_factory=list)


class BulkCompleteResult(BaseModel):
    completed: list[Purchase] = Field(default_factory=list)
    errors: dict[str, dict] = Field(default_factory=dict)


class BulkCreateResult(BaseModel):
    created: list[Purchase] = Field(default_factory=list)
    errors: dict[int, dict] = Field(default_factory=dict)
    order_summary: OrderSummary = Field(default_factory=OrderSummary)
