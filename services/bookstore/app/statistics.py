"""
Bookstore Service — 集計 (Statistics Aggregator)

購入台帳と書籍カタログに対する読み取り専用の集計。
該当レコードがなくてもエラーにせず、0 の集計を返す。
金額は全ステータス合計（キャンセル分も含む）と、完了分のみの合計を別々に持つ。
"""

from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import case, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import PurchaseStatus
from .ledger import total_price_expr
from .models import CENT
from .tables import book_purchases, books


class BuyerStatistics(BaseModel):
    total_purchases: int = 0
    total_books: int = 0
    total_spent: Decimal = Decimal("0.00")
    completed_spent: Decimal = Decimal("0.00")
    completed_purchases: int = 0
    pending_purchases: int = 0
    cancelled_purchases: int = 0


class SellerStatistics(BaseModel):
    total_sales: int = 0
    total_books_sold: int = 0
    total_revenue: Decimal = Decimal("0.00")
    completed_revenue: Decimal = Decimal("0.00")
    completed_sales: int = 0
    pending_sales: int = 0
    cancelled_sales: int = 0


class BookPurchaseStatistics(BaseModel):
    total_purchases: int = 0
    total_units: int = 0
    total_revenue: Decimal = Decimal("0.00")
    completed_revenue: Decimal = Decimal("0.00")
    completed_purchases: int = 0
    pending_purchases: int = 0
    cancelled_purchases: int = 0


class PlatformStatistics(BaseModel):
    total_purchases: int = 0
    total_books: int = 0
    total_revenue: Decimal = Decimal("0.00")
    completed_revenue: Decimal = Decimal("0.00")
    completed_purchases: int = 0
    pending_purchases: int = 0
    cancelled_purchases: int = 0
    total_buyers: int = 0


class CatalogStatistics(BaseModel):
    total_books: int = 0
    total_quantity: int = 0
    total_value: Decimal = Decimal("0.00")
    available_books: int = 0
    total_owners: int | None = None


def _money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT)


def _count_status(status: PurchaseStatus):
    return func.sum(case((book_purchases.c.status == status.value, 1), else_=0))


async def _purchase_rollup(session: AsyncSession, *conditions) -> dict:
    query = select(
        func.count(book_purchases.c.id).label("purchases"),
        func.sum(book_purchases.c.quantity).label("units"),
        func.sum(total_price_expr).label("revenue"),
        func.sum(
            case(
                (book_purchases.c.status == PurchaseStatus.COMPLETED.value, total_price_expr),
                else_=0,
            )
        ).label("completed_revenue"),
        _count_status(PurchaseStatus.COMPLETED).label("completed"),
        _count_status(PurchaseStatus.PENDING).label("pending"),
        _count_status(PurchaseStatus.CANCELLED).label("cancelled"),
        func.count(distinct(book_purchases.c.buyer_id)).label("buyers"),
    ).select_from(book_purchases.join(books, book_purchases.c.book_id == books.c.id))
    for condition in conditions:
        query = query.where(condition)

    row = (await session.execute(query)).one()
    return {
        "count": int(row.purchases or 0),
        "units": int(row.units or 0),
        "revenue": _money(row.revenue),
        "completed_revenue": _money(row.completed_revenue),
        "completed": int(row.completed or 0),
        "pending": int(row.pending or 0),
        "cancelled": int(row.cancelled or 0),
        "buyers": int(row.buyers or 0),
    }


async def buyer_statistics(session: AsyncSession, buyer_id: UUID) -> BuyerStatistics:
    r = await _purchase_rollup(session, book_purchases.c.buyer_id == buyer_id)
    return BuyerStatistics(
        total_purchases=r["count"],
        total_books=r["units"],
        total_spent=r["revenue"],
        completed_spent=r["completed_revenue"],
        completed_purchases=r["completed"],
        pending_purchases=r["pending"],
        cancelled_purchases=r["cancelled"],
    )


async def seller_statistics(session: AsyncSession, seller_id: UUID) -> SellerStatistics:
    r = await _purchase_rollup(session, books.c.owner_id == seller_id)
    return SellerStatistics(
        total_sales=r["count"],
        total_books_sold=r["units"],
        total_revenue=r["revenue"],
        completed_revenue=r["completed_revenue"],
        completed_sales=r["completed"],
        pending_sales=r["pending"],
        cancelled_sales=r["cancelled"],
    )


async def book_statistics(session: AsyncSession, book_id: UUID) -> BookPurchaseStatistics:
    r = await _purchase_rollup(session, book_purchases.c.book_id == book_id)
    return BookPurchaseStatistics(
        total_purchases=r["count"],
        total_units=r["units"],
        total_revenue=r["revenue"],
        completed_revenue=r["completed_revenue"],
        completed_purchases=r["completed"],
        pending_purchases=r["pending"],
        cancelled_purchases=r["cancelled"],
    )


async def platform_statistics(session: AsyncSession) -> PlatformStatistics:
    r = await _purchase_rollup(session)
    return PlatformStatistics(
        total_purchases=r["count"],
        total_books=r["units"],
        total_revenue=r["revenue"],
        completed_revenue=r["completed_revenue"],
        completed_purchases=r["completed"],
        pending_purchases=r["pending"],
        cancelled_purchases=r["cancelled"],
        total_buyers=r["buyers"],
    )


# ── カタログ側の集計 ─────────────────────────────


async def _catalog_rollup(session: AsyncSession, *conditions):
    query = select(
        func.count(books.c.id).label("total_books"),
        func.sum(books.c.quantity).label("total_quantity"),
        func.sum(books.c.price * books.c.quantity).label("total_value"),
        func.sum(case((books.c.quantity > 0, 1), else_=0)).label("available_books"),
        func.count(distinct(books.c.owner_id)).label("total_owners"),
    )
    for condition in conditions:
        query = query.where(condition)
    return (await session.execute(query)).one()


async def owner_catalog_statistics(session: AsyncSession, owner_id: UUID) -> CatalogStatistics:
    row = await _catalog_rollup(session, books.c.owner_id == owner_id)
    return CatalogStatistics(
        total_books=int(row.total_books or 0),
        total_quantity=int(row.total_quantity or 0),
        total_value=_money(row.total_value),
        available_books=int(row.available_books or 0),
    )


async def platform_catalog_statistics(session: AsyncSession) -> CatalogStatistics:
    row = await _catalog_rollup(session)
    return CatalogStatistics(
        total_books=int(row.total_books or 0),
        total_quantity=int(row.total_quantity or 0),
        total_value=_money(row.total_value),
        available_books=int(row.available_books or 0),
        total_owners=int(row.total_owners or 0),
    )
