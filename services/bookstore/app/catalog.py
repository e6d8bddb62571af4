"""
Bookstore Service — 書籍カタログ (Catalog Store)

書籍レコードの保存と検索、在庫数の増減プリミティブを提供する。
ここの関数はコミットしない。トランザクション境界は呼び出し側 (commands) が持つ。

在庫数 (quantity) を書き換えてよいのは decrease_stock / increase_stock だけ。
どちらも「条件付き UPDATE 1 文 + 影響行数の確認」で実装し、
読んでから書く (read-then-write) 形にはしない。
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import insert, select, update
from sqlalchemy import delete as sql_delete
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InsufficientStockError, NotFoundError, ValidationError
from .models import (
    MAX_QUANTITY,
    Book,
    BookDraft,
    BookFilters,
    BookPatch,
    BookSortField,
    SortOrder,
    parse,
)
from .tables import books

_SORT_COLUMNS = {
    BookSortField.CREATED_AT: books.c.created_at,
    BookSortField.TITLE: books.c.title,
    BookSortField.PRICE: books.c.price,
    BookSortField.QUANTITY: books.c.quantity,
}

# None にしてはいけない列（部分更新で明示的に null を渡された場合に弾く）
_NOT_NULL_FIELDS = ("title", "price", "owner_name")


def _to_book(row) -> Book:
    return Book.model_validate(dict(row._mapping))


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(timezone.utc)


# ── 書き込み ─────────────────────────────────────


async def create_book(
    session: AsyncSession,
    draft: BookDraft | dict,
    now: datetime | None = None,
) -> Book:
    if isinstance(draft, dict):
        draft = parse(BookDraft, draft)
    now = _now(now)
    values = {
        "id": uuid4(),
        "title": draft.title,
        "description": draft.description,
        "price": draft.price,
        "quantity": draft.quantity,
        "category": draft.category,
        "owner_id": draft.owner_id,
        "owner_name": draft.owner_name,
        "created_at": now,
        "updated_at": now,
    }
    await session.execute(insert(books).values(**values))
    return Book.model_validate(values)


async def update_book(
    session: AsyncSession,
    book_id: UUID,
    patch: BookPatch | dict,
    now: datetime | None = None,
) -> Book:
    """指定されたフィールドだけを更新する。在庫数は対象外。"""
    if isinstance(patch, dict):
        patch = parse(BookPatch, patch)
    changes = patch.model_dump(exclude_unset=True)
    for field in _NOT_NULL_FIELDS:
        if field in changes and changes[field] is None:
            raise ValidationError(field, f"{field} must not be null")

    book = await get_book(session, book_id)
    if not changes:
        return book

    await session.execute(
        update(books)
        .where(books.c.id == book_id)
        .values(**changes, updated_at=_now(now))
    )
    return await get_book(session, book_id)


async def delete_book(session: AsyncSession, book_id: UUID) -> None:
    await get_book(session, book_id)
    await session.execute(sql_delete(books).where(books.c.id == book_id))


async def decrease_stock(
    session: AsyncSession,
    book_id: UUID,
    amount: int,
    now: datetime | None = None,
) -> Book:
    """
    在庫を amount 減らす。

    UPDATE books SET quantity = quantity - :n WHERE id = :id AND quantity >= :n
    影響行数 0 は「書籍がない」か「在庫不足」のどちらか。
    並行する購入が同じ書籍を取り合っても、この 1 文が DB 上で直列化されるので
    在庫がマイナスになることはない。
    """
    if amount <= 0:
        raise ValidationError("quantity", "Quantity must be positive")

    result = await session.execute(
        update(books)
        .where(books.c.id == book_id, books.c.quantity >= amount)
        .values(quantity=books.c.quantity - amount, updated_at=_now(now))
    )
    if result.rowcount == 0:
        book = await get_book(session, book_id)
        raise InsufficientStockError(book_id, amount, book.quantity)
    return await get_book(session, book_id)


async def increase_stock(
    session: AsyncSession,
    book_id: UUID,
    amount: int,
    now: datetime | None = None,
) -> Book:
    """在庫を amount 増やす。上限 MAX_QUANTITY を超える補充は拒否する。"""
    if amount <= 0:
        raise ValidationError("quantity", "Quantity must be positive")

    result = await session.execute(
        update(books)
        .where(books.c.id == book_id, books.c.quantity + amount <= MAX_QUANTITY)
        .values(quantity=books.c.quantity + amount, updated_at=_now(now))
    )
    if result.rowcount == 0:
        book = await get_book(session, book_id)
        raise ValidationError(
            "quantity",
            f"Quantity cannot exceed {MAX_QUANTITY}: "
            f"current={book.quantity}, requested={amount}",
        )
    return await get_book(session, book_id)


# ── 読み取り ─────────────────────────────────────


async def find_book(session: AsyncSession, book_id: UUID) -> Book | None:
    result = await session.execute(select(books).where(books.c.id == book_id))
    row = result.fetchone()
    if not row:
        return None
    return _to_book(row)


async def get_book(session: AsyncSession, book_id: UUID) -> Book:
    book = await find_book(session, book_id)
    if book is None:
        raise NotFoundError("Book", book_id)
    return book


async def list_books(
    session: AsyncSession,
    filters: BookFilters | None = None,
) -> list[Book]:
    """フィルタはすべて AND で結合する。"""
    filters = filters or BookFilters()
    query = select(books)

    if filters.search:
        pattern = f"%{filters.search}%"
        query = query.where(
            books.c.title.ilike(pattern)
            | books.c.description.ilike(pattern)
            | books.c.owner_name.ilike(pattern)
        )
    if filters.category and filters.category != "all":
        query = query.where(books.c.category == filters.category)
    if filters.available_only:
        query = query.where(books.c.quantity > 0)
    if filters.price_min is not None:
        query = query.where(books.c.price >= filters.price_min)
    if filters.price_max is not None:
        query = query.where(books.c.price <= filters.price_max)
    if filters.owner_id:
        query = query.where(books.c.owner_id == filters.owner_id)
    if filters.exclude_owner_id:
        query = query.where(books.c.owner_id != filters.exclude_owner_id)

    column = _SORT_COLUMNS[filters.sort_by]
    query = query.order_by(column.asc() if filters.sort_order == SortOrder.ASC else column.desc())
    if filters.limit is not None:
        query = query.limit(filters.limit)
    if filters.offset:
        query = query.offset(filters.offset)

    result = await session.execute(query)
    return [_to_book(row) for row in result.fetchall()]


async def find_by_owner(session: AsyncSession, owner_id: UUID) -> list[Book]:
    return await list_books(session, BookFilters(owner_id=owner_id))


async def find_available(session: AsyncSession) -> list[Book]:
    return await list_books(session, BookFilters(available_only=True))


async def search_books(session: AsyncSession, text: str) -> list[Book]:
    return await list_books(session, BookFilters(search=text))


async def find_by_category(session: AsyncSession, category: str) -> list[Book]:
    return await list_books(
        session, BookFilters(category=category, available_only=True)
    )


async def find_recently_added(session: AsyncSession, limit: int = 10) -> list[Book]:
    return await list_books(
        session, BookFilters(available_only=True, limit=limit)
    )


async def find_by_price_range(
    session: AsyncSession,
    price_min: Decimal,
    price_max: Decimal,
) -> list[Book]:
    return await list_books(
        session,
        BookFilters(
            price_min=price_min,
            price_max=price_max,
            available_only=True,
            sort_by=BookSortField.PRICE,
            sort_order=SortOrder.ASC,
        ),
    )


async def list_categories(session: AsyncSession) -> list[str]:
    """在庫のある書籍に付いているカテゴリの一覧"""
    result = await session.execute(
        select(books.c.category)
        .where(books.c.category.is_not(None), books.c.quantity > 0)
        .distinct()
        .order_by(books.c.category)
    )
    return [category for category in result.scalars().all() if category]
