"""
Bookstore Service — コマンドハンドラ (Purchase Workflow Engine)

在庫 (books) と購入 (book_purchases) の整合性を保つ唯一の書き込み口。

各コマンドの流れ:
    1. catalog / ledger の関数で状態を変更する（同じトランザクション内）
    2. イベントストアに追記する
    3. コミットする。途中で失敗したらロールバックして何も残さない
    4. Redis Pub/Sub でイベントを発行する（他サービスへの通知）

Redis への発行はコミット後に行う。DB が正なので、発行に失敗しても
コマンド自体は成功として扱い、ログだけ残す。
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import catalog, event_store, ledger
from .aggregate import PurchaseStatus
from .errors import (
    BookHasPurchasesError,
    BookNotAvailableError,
    BookstoreError,
    InsufficientStockError,
    NotFoundError,
    PriceMismatchError,
    ValidationError,
)
from .events import (
    BookCreated,
    BookDeleted,
    BookUpdated,
    PurchaseCancelled,
    PurchaseCompleted,
    PurchaseCreated,
    StockDecreased,
    StockIncreased,
)
from .models import (
    CENT,
    PRICE_TOLERANCE,
    Book,
    BookDraft,
    BookPatch,
    BulkCompleteResult,
    BulkCreateResult,
    OrderLine,
    OrderSummary,
    Purchase,
    PurchaseDraft,
    parse,
)

logger = logging.getLogger(__name__)

BOOK_CHANNEL = "book_events"
PURCHASE_CHANNEL = "purchase_events"


@asynccontextmanager
async def _unit_of_work(session: AsyncSession):
    """ブロックが正常終了したらコミット、例外ならロールバックして再送出する。"""
    try:
        yield
        await session.commit()
    except Exception:
        await session.rollback()
        raise


async def _publish(
    redis: aioredis.Redis | None,
    channel: str,
    event: BaseModel,
) -> None:
    if redis is None:
        return
    event_type = type(event).__name__
    try:
        await redis.publish(
            channel,
            json.dumps(
                {"event_type": event_type, "data": event.model_dump(mode="json")},
                default=str,
            ),
        )
    except RedisError:
        logger.exception("Failed to publish %s to %s", event_type, channel)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _error_entry(exc: BookstoreError) -> dict:
    return {"error": exc.code, "message": exc.message, "details": exc.details}


def _database_error_entry(exc: SQLAlchemyError) -> dict:
    return {
        "error": "database_error",
        "message": "Database error while processing this item",
        "details": {"type": type(exc).__name__},
    }


# ── 価格チェック ─────────────────────────────────


def price_within_tolerance(current: Decimal, proposed: Decimal) -> bool:
    """|current - proposed| <= current * 1% を Decimal で判定する。"""
    current = Decimal(current)
    proposed = Decimal(proposed)
    return abs(current - proposed) <= current * PRICE_TOLERANCE


def check_price(book: Book, proposed: Decimal) -> None:
    if not price_within_tolerance(book.price, proposed):
        raise PriceMismatchError(book.price, Decimal(proposed))


# ── 購入コマンド ─────────────────────────────────


async def create_purchase(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    draft: PurchaseDraft | dict,
) -> Purchase:
    """
    購入作成コマンド

    1. 条件付き UPDATE で在庫を減らす（影響行数 0 なら在庫不足）
    2. 提示価格を減算後の書籍価格と照合する（1% 以内）
    3. pending の購入レコードを挿入する
    2 や 3 で失敗しても 1 はロールバックされる。
    """
    if isinstance(draft, dict):
        draft = parse(PurchaseDraft, draft)
    if draft.status is not PurchaseStatus.PENDING:
        raise ValidationError("status", "New purchases must start as pending")
    now = _utcnow()
    purchase_id = uuid4()

    try:
        async with _unit_of_work(session):
            try:
                book = await catalog.decrease_stock(session, draft.book_id, draft.quantity, now)
            except InsufficientStockError as exc:
                raise BookNotAvailableError(draft.book_id, exc.requested, exc.available) from exc
            check_price(book, draft.purchase_price)

            purchase = await ledger.insert_purchase(session, draft, now, purchase_id)

            stock_event = StockDecreased(
                book_id=book.id,
                quantity=draft.quantity,
                remaining=book.quantity,
                purchase_id=purchase_id,
                timestamp=now,
            )
            purchase_event = PurchaseCreated(
                purchase_id=purchase_id,
                book_id=book.id,
                buyer_id=purchase.buyer_id,
                quantity=purchase.quantity,
                price=purchase.price,
                status=purchase.status.value,
                transaction_id=purchase.transaction_id,
                timestamp=now,
            )
            await event_store.append_event(session, book.id, "Book", stock_event)
            await event_store.append_event(session, purchase_id, "Purchase", purchase_event, 0)
    except BookstoreError as exc:
        logger.warning("Purchase rejected for book %s: %s", draft.book_id, exc.message)
        raise

    logger.info(
        "Purchase %s created: book=%s quantity=%s remaining=%s",
        purchase_id, book.id, draft.quantity, book.quantity,
    )
    await _publish(redis, PURCHASE_CHANNEL, purchase_event)
    await _publish(redis, BOOK_CHANNEL, stock_event)
    return purchase


async def complete_purchase(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    purchase_id: UUID,
    transaction_id: str | None = None,
) -> Purchase:
    """購入完了コマンド（pending のみ）。在庫は変化しない。"""
    now = _utcnow()
    try:
        async with _unit_of_work(session):
            purchase = await ledger.transition(
                session, purchase_id, PurchaseStatus.COMPLETED, now, transaction_id
            )
            event = PurchaseCompleted(
                purchase_id=purchase_id,
                transaction_id=purchase.transaction_id,
                timestamp=now,
            )
            await event_store.append_event(session, purchase_id, "Purchase", event)
    except BookstoreError as exc:
        logger.warning("Completion of purchase %s rejected: %s", purchase_id, exc.message)
        raise

    logger.info("Purchase %s completed", purchase_id)
    await _publish(redis, PURCHASE_CHANNEL, event)
    return purchase


async def cancel_purchase(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    purchase_id: UUID,
    restock: bool = False,
) -> Purchase:
    """
    購入キャンセルコマンド（pending のみ）

    restock=False（デフォルト）では在庫を戻さない。戻す場合は restock_book を別に呼ぶ。
    restock=True なら同じトランザクションで購入数量を在庫に戻す。
    """
    now = _utcnow()
    stock_event = None
    try:
        async with _unit_of_work(session):
            purchase = await ledger.transition(
                session, purchase_id, PurchaseStatus.CANCELLED, now
            )
            if restock:
                book = await catalog.increase_stock(
                    session, purchase.book_id, purchase.quantity, now
                )
                stock_event = StockIncreased(
                    book_id=book.id,
                    quantity=purchase.quantity,
                    remaining=book.quantity,
                    purchase_id=purchase_id,
                    timestamp=now,
                )
                await event_store.append_event(session, book.id, "Book", stock_event)
            event = PurchaseCancelled(
                purchase_id=purchase_id, restocked=restock, timestamp=now
            )
            await event_store.append_event(session, purchase_id, "Purchase", event)
    except BookstoreError as exc:
        logger.warning("Cancellation of purchase %s rejected: %s", purchase_id, exc.message)
        raise

    logger.info("Purchase %s cancelled (restocked=%s)", purchase_id, restock)
    await _publish(redis, PURCHASE_CHANNEL, event)
    if stock_event:
        await _publish(redis, BOOK_CHANNEL, stock_event)
    return purchase


async def change_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    purchase_id: UUID,
    status: PurchaseStatus | str,
    restock: bool = False,
) -> Purchase:
    """ステータス指定での更新。合法な遷移は complete / cancel に振り分ける。"""
    try:
        status = PurchaseStatus(status)
    except ValueError:
        raise ValidationError(
            "status",
            "Invalid status. Valid statuses: "
            + ", ".join(s.value for s in PurchaseStatus),
        ) from None

    if status is PurchaseStatus.COMPLETED:
        return await complete_purchase(session, redis, purchase_id)
    if status is PurchaseStatus.CANCELLED:
        return await cancel_purchase(session, redis, purchase_id, restock)
    # pending への遷移は常に不正。NotFound / InvalidState は ledger が判定する
    async with _unit_of_work(session):
        return await ledger.transition(session, purchase_id, status)


async def validate_purchase(
    session: AsyncSession,
    draft: PurchaseDraft,
) -> dict[str, str]:
    """
    購入を作らずに業務ルールだけをチェックする（ドライラン）。

    問題のあるフィールド名 → メッセージ の dict を返す。空なら問題なし。
    ここで OK でも、実際の create_purchase は在庫の取り合いで失敗しうる。
    """
    errors: dict[str, str] = {}
    book = await catalog.find_book(session, draft.book_id)
    if book is None:
        errors["book_id"] = "Book not found"
        return errors

    if book.quantity < draft.quantity:
        errors["quantity"] = "Book not available in requested quantity"
    if not price_within_tolerance(book.price, draft.purchase_price):
        errors["purchase_price"] = PriceMismatchError(book.price, draft.purchase_price).message
    return errors


# ── 一括処理（ベストエフォート） ─────────────────


async def bulk_complete(
    session_factory: sessionmaker,
    redis: aioredis.Redis | None,
    purchase_ids: list[UUID | str],
) -> BulkCompleteResult:
    """
    複数の購入を 1 件ずつ独立に完了させる。

    全体はアトミックではない。失敗した ID はエラー内容と一緒に返し、
    残りの処理は続ける。
    """
    result = BulkCompleteResult()
    for raw_id in purchase_ids:
        key = str(raw_id)
        try:
            purchase_id = raw_id if isinstance(raw_id, UUID) else UUID(key)
        except ValueError:
            result.errors[key] = _error_entry(ValidationError("purchase_id", "Invalid UUID"))
            continue

        async with session_factory() as session:
            try:
                purchase = await complete_purchase(session, redis, purchase_id)
            except BookstoreError as exc:
                result.errors[key] = _error_entry(exc)
                continue
            except SQLAlchemyError as exc:
                logger.exception("Bulk completion of purchase %s failed", purchase_id)
                result.errors[key] = _database_error_entry(exc)
                continue
        result.completed.append(purchase)

    logger.info(
        "Bulk completion processed: completed=%s failed=%s",
        len(result.completed), len(result.errors),
    )
    return result


def summarize_order(purchases: list[Purchase]) -> OrderSummary:
    summary = OrderSummary()
    total = Decimal("0")
    for purchase in purchases:
        summary.total_items += purchase.quantity
        total += purchase.total_price
        summary.books.append(
            OrderLine(
                book_id=purchase.book_id,
                title=purchase.book_title,
                quantity=purchase.quantity,
                unit_price=purchase.price,
                total_price=purchase.total_price,
            )
        )
    summary.total_price = total.quantize(CENT)
    return summary


async def bulk_create(
    session_factory: sessionmaker,
    redis: aioredis.Redis | None,
    drafts: list[PurchaseDraft | dict],
) -> BulkCreateResult:
    """カートの一括購入。1 件ごとに独立したトランザクションで作成する。"""
    result = BulkCreateResult()
    for index, draft in enumerate(drafts):
        async with session_factory() as session:
            try:
                if isinstance(draft, dict):
                    draft = parse(PurchaseDraft, draft)
                purchase = await create_purchase(session, redis, draft)
            except BookstoreError as exc:
                result.errors[index] = _error_entry(exc)
                continue
            except SQLAlchemyError as exc:
                logger.exception("Bulk purchase item %s failed", index)
                result.errors[index] = _database_error_entry(exc)
                continue
        result.created.append(purchase)

    result.order_summary = summarize_order(result.created)
    return result


# ── 書籍コマンド ─────────────────────────────────


async def create_book(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    draft: BookDraft | dict,
) -> Book:
    now = _utcnow()
    async with _unit_of_work(session):
        book = await catalog.create_book(session, draft, now)
        event = BookCreated(
            book_id=book.id,
            owner_id=book.owner_id,
            title=book.title,
            price=book.price,
            quantity=book.quantity,
            timestamp=now,
        )
        await event_store.append_event(session, book.id, "Book", event, 0)

    logger.info("Book %s created by owner %s", book.id, book.owner_id)
    await _publish(redis, BOOK_CHANNEL, event)
    return book


async def update_book(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    book_id: UUID,
    patch: BookPatch | dict,
) -> Book:
    if isinstance(patch, dict):
        patch = parse(BookPatch, patch)
    now = _utcnow()
    async with _unit_of_work(session):
        book = await catalog.update_book(session, book_id, patch, now)
        changes = patch.model_dump(mode="json", exclude_unset=True)
        if not changes:
            # 何も変わらない更新はイベントを残さない
            return book
        event = BookUpdated(book_id=book_id, changes=changes, timestamp=now)
        await event_store.append_event(session, book_id, "Book", event)

    await _publish(redis, BOOK_CHANNEL, event)
    return book


async def restock_book(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    book_id: UUID,
    quantity: int,
) -> Book:
    """明示的な在庫補充。上限 999 を超える場合は ValidationError。"""
    now = _utcnow()
    async with _unit_of_work(session):
        book = await catalog.increase_stock(session, book_id, quantity, now)
        event = StockIncreased(
            book_id=book_id, quantity=quantity, remaining=book.quantity, timestamp=now
        )
        await event_store.append_event(session, book_id, "Book", event)

    logger.info("Book %s restocked by %s (now %s)", book_id, quantity, book.quantity)
    await _publish(redis, BOOK_CHANNEL, event)
    return book


async def delete_book(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    book_id: UUID,
    cascade: bool = False,
) -> int:
    """
    書籍を削除し、一緒に削除した購入の件数を返す。

    購入履歴がある場合、cascade=False なら BookHasPurchasesError。
    """
    now = _utcnow()
    async with _unit_of_work(session):
        if await catalog.find_book(session, book_id) is None:
            raise NotFoundError("Book", book_id)
        count = await ledger.count_for_book(session, book_id)
        if count and not cascade:
            raise BookHasPurchasesError(book_id, count)
        deleted = await ledger.delete_for_book(session, book_id) if count else 0
        await catalog.delete_book(session, book_id)
        event = BookDeleted(book_id=book_id, purchases_deleted=deleted, timestamp=now)
        await event_store.append_event(session, book_id, "Book", event)

    logger.info("Book %s deleted (purchases deleted=%s)", book_id, deleted)
    await _publish(redis, BOOK_CHANNEL, event)
    return deleted
