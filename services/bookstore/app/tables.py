"""
Bookstore Service — テーブル定義

books と book_purchases は同じ DB に置く。
在庫の減算と購入レコードの挿入を 1 トランザクションで行うため。
event_store は書籍・購入のイベント履歴（追記のみ）。
"""

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
)

metadata = MetaData()

books = Table(
    "books",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("title", String(255), nullable=False),
    Column("description", Text, nullable=True),
    Column("price", Numeric(10, 2, asdecimal=True), nullable=False),
    Column("quantity", Integer, nullable=False, default=0),
    Column("category", String(100), nullable=True),
    Column("owner_id", Uuid, nullable=False),
    Column("owner_name", String(255), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=True),
    CheckConstraint("quantity >= 0", name="ck_books_quantity_nonnegative"),
    CheckConstraint("price > 0", name="ck_books_price_positive"),
    Index("ix_books_owner_id", "owner_id"),
    Index("ix_books_category", "category"),
)

book_purchases = Table(
    "book_purchases",
    metadata,
    Column("id", Uuid, primary_key=True),
    # 削除ポリシーは BOOK_DELETE_CASCADE 設定でアプリ側が決める
    Column("book_id", Uuid, ForeignKey("books.id", ondelete="RESTRICT"), nullable=False),
    Column("buyer_id", Uuid, nullable=False),
    Column("buyer_name", String(255), nullable=False),
    Column("buyer_email", String(255), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("price", Numeric(10, 2, asdecimal=True), nullable=False),
    Column("status", String(20), nullable=False, default="pending"),
    Column("notes", String(1000), nullable=True),
    Column("payment_method", String(50), nullable=True),
    Column("transaction_id", String(100), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    CheckConstraint("quantity > 0", name="ck_purchases_quantity_positive"),
    CheckConstraint("price > 0", name="ck_purchases_price_positive"),
    Index("ix_purchases_buyer_id", "buyer_id"),
    Index("ix_purchases_book_id", "book_id"),
    Index("ix_purchases_status", "status"),
)

event_store = Table(
    "event_store",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("aggregate_id", Uuid, nullable=False),
    Column("aggregate_type", String(50), nullable=False),
    Column("event_type", String(100), nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    # 同じ集約・同じバージョンの二重書き込みを防ぐ（楽観的ロック）
    UniqueConstraint("aggregate_id", "version", name="uq_event_store_aggregate_version"),
)
