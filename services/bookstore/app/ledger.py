"""
Bookstore Service — 購入台帳 (Purchase Ledger)

book_purchases の保存・状態遷移・検索。
catalog と同じく、ここの関数はコミットしない。

状態遷移は「WHERE status = 'pending'」付きの条件付き UPDATE で行う。
同じ購入を同時に complete / cancel しても成功するのは片方だけ。
"""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import func, insert, select, update
from sqlalchemy import delete as sql_delete
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import PurchaseAggregate, PurchaseStatus
from .errors import InvalidStateError, NotFoundError, ValidationError
from .models import (
    Purchase,
    PurchaseDraft,
    PurchaseFilters,
    PurchaseSortField,
    SortOrder,
    parse,
)
from .tables import book_purchases, books

total_price_expr = book_purchases.c.price * book_purchases.c.quantity

_SORT_COLUMNS = {
    PurchaseSortField.CREATED_AT: book_purchases.c.created_at,
    PurchaseSortField.TOTAL_PRICE: total_price_expr,
    PurchaseSortField.QUANTITY: book_purchases.c.quantity,
    PurchaseSortField.STATUS: book_purchases.c.status,
}


def _base_query():
    """購入 + 書籍タイトル + 出品者 (書籍の owner) を結合したクエリ"""
    return select(
        book_purchases,
        books.c.title.label("book_title"),
        books.c.owner_id.label("seller_id"),
    ).select_from(book_purchases.join(books, book_purchases.c.book_id == books.c.id))


def _to_purchase(row) -> Purchase:
    return Purchase.model_validate(dict(row._mapping))


def _ordered(query, column, order: SortOrder):
    return query.order_by(column.asc() if order == SortOrder.ASC else column.desc())


# ── 書き込み ─────────────────────────────────────


async def insert_purchase(
    session: AsyncSession,
    record: PurchaseDraft | dict,
    now: datetime | None = None,
    purchase_id: UUID | None = None,
) -> Purchase:
    """
    購入レコードを挿入する。

    status は record に明示されない限り pending。
    在庫のチェックと減算はここでは行わない（commands の責務）。
    """
    if isinstance(record, dict):
        record = parse(PurchaseDraft, record)
    if record.quantity is None or record.quantity <= 0:
        raise ValidationError("quantity", "Quantity must be positive")
    if record.purchase_price is None or record.purchase_price <= 0:
        raise ValidationError("purchase_price", "Purchase price must be positive")

    now = now or datetime.now(timezone.utc)
    status = PurchaseStatus(record.status or PurchaseStatus.default())
    purchase_id = purchase_id or uuid4()

    await session.execute(
        insert(book_purchases).values(
            id=purchase_id,
            book_id=record.book_id,
            buyer_id=record.buyer_id,
            buyer_name=record.buyer_name,
            buyer_email=str(record.buyer_email),
            quantity=record.quantity,
            price=record.purchase_price,
            status=status.value,
            notes=record.notes,
            payment_method=record.payment_method,
            transaction_id=record.transaction_id,
            created_at=now,
            updated_at=now,
            completed_at=now if status is PurchaseStatus.COMPLETED else None,
        )
    )
    return await get_purchase(session, purchase_id)


def _transition_message(new_status: PurchaseStatus) -> str:
    if new_status is PurchaseStatus.COMPLETED:
        return "Only pending purchases can be completed"
    if new_status is PurchaseStatus.CANCELLED:
        return "Only pending purchases can be cancelled"
    return "Purchases cannot return to pending"


async def transition(
    session: AsyncSession,
    purchase_id: UUID,
    new_status: PurchaseStatus | str,
    now: datetime | None = None,
    transaction_id: str | None = None,
) -> Purchase:
    """pending → completed / cancelled の遷移だけを許可する。"""
    try:
        new_status = PurchaseStatus(new_status)
    except ValueError:
        raise ValidationError(
            "status",
            "Invalid status. Valid statuses: "
            + ", ".join(status.value for status in PurchaseStatus),
        ) from None

    current = await get_purchase(session, purchase_id)
    agg = PurchaseAggregate.from_record(current)
    if new_status is PurchaseStatus.COMPLETED:
        agg.ensure_can_complete()
    elif new_status is PurchaseStatus.CANCELLED:
        agg.ensure_can_cancel()
    else:
        raise InvalidStateError(
            purchase_id, agg.status.value, new_status.value, _transition_message(new_status)
        )

    now = now or datetime.now(timezone.utc)
    values = {"status": new_status.value, "updated_at": now}
    if new_status is PurchaseStatus.COMPLETED:
        values["completed_at"] = now
        if transaction_id:
            values["transaction_id"] = transaction_id

    result = await session.execute(
        update(book_purchases)
        .where(
            book_purchases.c.id == purchase_id,
            book_purchases.c.status == PurchaseStatus.PENDING.value,
        )
        .values(**values)
    )
    if result.rowcount == 0:
        # 読んだ後に別のリクエストが先に遷移させた
        latest = await get_purchase(session, purchase_id)
        raise InvalidStateError(
            purchase_id,
            latest.status.value,
            new_status.value,
            _transition_message(new_status),
        )
    return await get_purchase(session, purchase_id)


async def delete_for_book(session: AsyncSession, book_id: UUID) -> int:
    result = await session.execute(
        sql_delete(book_purchases).where(book_purchases.c.book_id == book_id)
    )
    return result.rowcount


# ── 読み取り ─────────────────────────────────────


async def find_purchase(session: AsyncSession, purchase_id: UUID) -> Purchase | None:
    result = await session.execute(
        _base_query().where(book_purchases.c.id == purchase_id)
    )
    row = result.fetchone()
    if not row:
        return None
    return _to_purchase(row)


async def get_purchase(session: AsyncSession, purchase_id: UUID) -> Purchase:
    purchase = await find_purchase(session, purchase_id)
    if purchase is None:
        raise NotFoundError("Purchase", purchase_id)
    return purchase


async def find_with_filters(
    session: AsyncSession,
    filters: PurchaseFilters | None = None,
) -> list[Purchase]:
    """フィルタはすべて AND。デフォルトは作成日時の降順。"""
    filters = filters or PurchaseFilters()
    query = _base_query()

    if filters.buyer_id:
        query = query.where(book_purchases.c.buyer_id == filters.buyer_id)
    if filters.seller_id:
        query = query.where(books.c.owner_id == filters.seller_id)
    if filters.book_id:
        query = query.where(book_purchases.c.book_id == filters.book_id)
    if filters.status:
        query = query.where(book_purchases.c.status == filters.status.value)
    if filters.date_from:
        query = query.where(book_purchases.c.created_at >= filters.date_from)
    if filters.date_to:
        query = query.where(book_purchases.c.created_at <= filters.date_to)
    if filters.price_min is not None:
        query = query.where(total_price_expr >= filters.price_min)
    if filters.price_max is not None:
        query = query.where(total_price_expr <= filters.price_max)

    query = _ordered(query, _SORT_COLUMNS[filters.sort_by], filters.sort_order)
    if filters.limit is not None:
        query = query.limit(filters.limit)
    if filters.offset:
        query = query.offset(filters.offset)

    result = await session.execute(query)
    return [_to_purchase(row) for row in result.fetchall()]


async def find_by_buyer(session: AsyncSession, buyer_id: UUID) -> list[Purchase]:
    return await find_with_filters(session, PurchaseFilters(buyer_id=buyer_id))


async def find_by_seller(session: AsyncSession, seller_id: UUID) -> list[Purchase]:
    return await find_with_filters(session, PurchaseFilters(seller_id=seller_id))


async def find_by_book(session: AsyncSession, book_id: UUID) -> list[Purchase]:
    return await find_with_filters(session, PurchaseFilters(book_id=book_id))


async def find_by_status(
    session: AsyncSession,
    status: PurchaseStatus | str,
) -> list[Purchase]:
    return await find_with_filters(
        session, PurchaseFilters(status=PurchaseStatus(status))
    )


async def find_pending(session: AsyncSession) -> list[Purchase]:
    """処理待ちの購入を古い順に返す。"""
    return await find_with_filters(
        session,
        PurchaseFilters(status=PurchaseStatus.PENDING, sort_order=SortOrder.ASC),
    )


async def find_recent_completed(session: AsyncSession, limit: int = 10) -> list[Purchase]:
    query = _ordered(
        _base_query().where(book_purchases.c.status == PurchaseStatus.COMPLETED.value),
        book_purchases.c.completed_at,
        SortOrder.DESC,
    ).limit(limit)
    result = await session.execute(query)
    return [_to_purchase(row) for row in result.fetchall()]


async def find_by_transaction_id(
    session: AsyncSession,
    transaction_id: str,
) -> Purchase | None:
    result = await session.execute(
        _base_query().where(book_purchases.c.transaction_id == transaction_id)
    )
    row = result.first()
    if not row:
        return None
    return _to_purchase(row)


async def count_for_book(session: AsyncSession, book_id: UUID) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(book_purchases)
        .where(book_purchases.c.book_id == book_id)
    )
    return result.scalar() or 0
