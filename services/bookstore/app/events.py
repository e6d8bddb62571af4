"""
Bookstore Service — イベント定義

書籍と購入のドメインで発生したイベント。
イベントは過去形で命名し、不変(immutable)として扱う。
event_store に JSON で保存し、同じ内容を Redis Pub/Sub にも流す。
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel


class BookCreated(BaseModel):
    """書籍が出品された"""
    book_id: UUID
    owner_id: UUID
    title: str
    price: Decimal
    quantity: int
    timestamp: datetime


class BookUpdated(BaseModel):
    """書籍の属性が編集された（在庫数は含まない）"""
    book_id: UUID
    changes: dict
    timestamp: datetime


class BookDeleted(BaseModel):
    book_id: UUID
    purchases_deleted: int
    timestamp: datetime


class StockDecreased(BaseModel):
    """在庫が減った（購入による引き当て）"""
    book_id: UUID
    quantity: int
    remaining: int
    purchase_id: UUID | None = None
    timestamp: datetime


class StockIncreased(BaseModel):
    """在庫が増えた（補充、またはキャンセル時の戻し）"""
    book_id: UUID
    quantity: int
    remaining: int
    purchase_id: UUID | None = None
    timestamp: datetime


class PurchaseCreated(BaseModel):
    """購入が作成された（status は通常 pending）"""
    purchase_id: UUID
    book_id: UUID
    buyer_id: UUID
    quantity: int
    price: Decimal
    status: str
    transaction_id: str | None = None
    timestamp: datetime


class PurchaseCompleted(BaseModel):
    purchase_id: UUID
    transaction_id: str | None = None
    timestamp: datetime


class PurchaseCancelled(BaseModel):
    purchase_id: UUID
    restocked: bool
    timestamp: datetime
