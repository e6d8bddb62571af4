"""
Bookstore Service — FastAPI エントリーポイント

書き込み (POST / PATCH / PUT / DELETE) は commands、
読み取り (GET) は catalog / ledger / statistics を直接呼ぶ。
ドメイン例外は 1 つの例外ハンドラで {"error", "message", "details"} に変換する。
"""

import logging
from contextlib import asynccontextmanager
from typing import Annotated
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog, commands, event_store, ledger, statistics
from .aggregate import PurchaseAggregate
from .config import Settings
from .database import create_engine, create_schema, create_session_factory
from .errors import BookstoreError
from .models import (
    Book,
    BookDraft,
    BookFilters,
    BookPatch,
    BulkCompleteRequest,
    BulkCompleteResult,
    BulkCreateRequest,
    BulkCreateResult,
    CompleteRequest,
    Purchase,
    PurchaseDraft,
    PurchaseFilters,
    RestockRequest,
    StatusUpdateRequest,
)

settings = Settings.from_env()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_engine(settings.database_url)
async_session = create_session_factory(engine)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    if settings.create_schema:
        await create_schema(engine)
    redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
    logger.info("Bookstore Service started")
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Bookstore Service", lifespan=lifespan)


# ── Dependencies ─────────────────────────────────


async def get_session():
    async with async_session() as session:
        yield session


def get_session_factory():
    return async_session


def get_redis() -> aioredis.Redis | None:
    return redis_pool


def get_settings() -> Settings:
    return settings


SessionDep = Annotated[AsyncSession, Depends(get_session)]
RedisDep = Annotated[aioredis.Redis | None, Depends(get_redis)]
SettingsDep = Annotated[Settings, Depends(get_settings)]


@app.exception_handler(BookstoreError)
async def bookstore_error_handler(request: Request, exc: BookstoreError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Book Endpoints ───────────────────────────────


@app.post("/books", status_code=status.HTTP_201_CREATED, response_model=Book)
async def create_book(req: BookDraft, session: SessionDep, redis: RedisDep):
    return await commands.create_book(session, redis, req)


@app.get("/books", response_model=list[Book])
async def list_books(filters: Annotated[BookFilters, Query()], session: SessionDep):
    return await catalog.list_books(session, filters)


@app.get("/books/categories", response_model=list[str])
async def list_categories(session: SessionDep):
    return await catalog.list_categories(session)


@app.get("/books/recent", response_model=list[Book])
async def recent_books(session: SessionDep, limit: int = Query(10, gt=0, le=100)):
    """最近追加された在庫ありの書籍"""
    return await catalog.find_recently_added(session, limit)


@app.get("/books/statistics", response_model=statistics.CatalogStatistics)
async def catalog_statistics(session: SessionDep):
    return await statistics.platform_catalog_statistics(session)


@app.get("/books/owner/{owner_id}/statistics", response_model=statistics.CatalogStatistics)
async def owner_statistics(owner_id: UUID, session: SessionDep):
    return await statistics.owner_catalog_statistics(session, owner_id)


@app.get("/books/{book_id}", response_model=Book)
async def get_book(book_id: UUID, session: SessionDep):
    return await catalog.get_book(session, book_id)


@app.patch("/books/{book_id}", response_model=Book)
async def update_book(book_id: UUID, req: BookPatch, session: SessionDep, redis: RedisDep):
    return await commands.update_book(session, redis, book_id, req)


@app.delete("/books/{book_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_book(
    book_id: UUID, session: SessionDep, redis: RedisDep, config: SettingsDep
):
    await commands.delete_book(session, redis, book_id, cascade=config.book_delete_cascade)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/books/{book_id}/restock", response_model=Book)
async def restock_book(
    book_id: UUID, req: RestockRequest, session: SessionDep, redis: RedisDep
):
    return await commands.restock_book(session, redis, book_id, req.quantity)


# ── Purchase Commands ────────────────────────────


@app.post("/purchases", status_code=status.HTTP_201_CREATED, response_model=Purchase)
async def create_purchase(req: PurchaseDraft, session: SessionDep, redis: RedisDep):
    return await commands.create_purchase(session, redis, req)


@app.post("/purchases/validate")
async def validate_purchase(req: PurchaseDraft, session: SessionDep):
    """購入を作らずに在庫と価格だけをチェックする"""
    errors = await commands.validate_purchase(session, req)
    return {"valid": not errors, "errors": errors}


@app.post(
    "/purchases/bulk",
    status_code=status.HTTP_201_CREATED,
    response_model=BulkCreateResult,
)
async def bulk_create(
    req: BulkCreateRequest,
    response: Response,
    redis: RedisDep,
    session_factory=Depends(get_session_factory),
):
    result = await commands.bulk_create(session_factory, redis, req.purchases)
    if result.errors:
        response.status_code = status.HTTP_207_MULTI_STATUS
    return result


@app.post("/purchases/bulk-complete", response_model=BulkCompleteResult)
async def bulk_complete(
    req: BulkCompleteRequest,
    redis: RedisDep,
    session_factory=Depends(get_session_factory),
):
    return await commands.bulk_complete(session_factory, redis, req.purchase_ids)


@app.post("/purchases/{purchase_id}/complete", response_model=Purchase)
async def complete_purchase(
    purchase_id: UUID,
    session: SessionDep,
    redis: RedisDep,
    req: CompleteRequest | None = None,
):
    transaction_id = req.transaction_id if req else None
    return await commands.complete_purchase(session, redis, purchase_id, transaction_id)


@app.post("/purchases/{purchase_id}/cancel", response_model=Purchase)
async def cancel_purchase(
    purchase_id: UUID, session: SessionDep, redis: RedisDep, config: SettingsDep
):
    return await commands.cancel_purchase(
        session, redis, purchase_id, restock=config.restock_on_cancel
    )


@app.put("/purchases/{purchase_id}/status", response_model=Purchase)
async def change_status(
    purchase_id: UUID,
    req: StatusUpdateRequest,
    session: SessionDep,
    redis: RedisDep,
    config: SettingsDep,
):
    return await commands.change_status(
        session, redis, purchase_id, req.status, restock=config.restock_on_cancel
    )


# ── Purchase Queries ─────────────────────────────


@app.get("/purchases", response_model=list[Purchase])
async def list_purchases(
    filters: Annotated[PurchaseFilters, Query()], session: SessionDep
):
    return await ledger.find_with_filters(session, filters)


@app.get("/purchases/pending", response_model=list[Purchase])
async def pending_purchases(session: SessionDep):
    return await ledger.find_pending(session)


@app.get("/purchases/recent", response_model=list[Purchase])
async def recent_purchases(session: SessionDep, limit: int = Query(10, gt=0, le=100)):
    """最近完了した購入"""
    return await ledger.find_recent_completed(session, limit)


@app.get("/purchases/statistics", response_model=statistics.PlatformStatistics)
async def platform_statistics(session: SessionDep):
    return await statistics.platform_statistics(session)


@app.get("/purchases/buyer/{buyer_id}/statistics", response_model=statistics.BuyerStatistics)
async def buyer_statistics(buyer_id: UUID, session: SessionDep):
    return await statistics.buyer_statistics(session, buyer_id)


@app.get(
    "/purchases/seller/{seller_id}/statistics",
    response_model=statistics.SellerStatistics,
)
async def seller_statistics(seller_id: UUID, session: SessionDep):
    return await statistics.seller_statistics(session, seller_id)


@app.get(
    "/purchases/book/{book_id}/statistics",
    response_model=statistics.BookPurchaseStatistics,
)
async def book_statistics(book_id: UUID, session: SessionDep):
    return await statistics.book_statistics(session, book_id)


@app.get("/purchases/{purchase_id}", response_model=Purchase)
async def get_purchase(purchase_id: UUID, session: SessionDep):
    return await ledger.get_purchase(session, purchase_id)


@app.get("/purchases/{purchase_id}/history")
async def purchase_history(purchase_id: UUID, session: SessionDep):
    """イベント履歴と、そこからリプレイした状態を返す"""
    await ledger.get_purchase(session, purchase_id)
    events = await event_store.load_events(session, purchase_id)
    agg = PurchaseAggregate.from_events(events)
    return {
        "purchase_id": str(purchase_id),
        "status": agg.status.value,
        "version": agg.version,
        "events": events,
    }


# ── Event Store (デバッグ用) ─────────────────────


@app.get("/events")
async def get_all_events(session: SessionDep):
    return await event_store.load_all_events(session)


@app.get("/events/{aggregate_id}")
async def get_aggregate_events(aggregate_id: UUID, session: SessionDep):
    return await event_store.load_events(session, aggregate_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "bookstore"}
