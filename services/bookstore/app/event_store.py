"""
Bookstore Service — イベントストア

書籍・購入の変更履歴を追記だけで記録する。
(aggregate_id, version) の UNIQUE 制約で楽観的ロックを実現し、
同じバージョンへの二重書き込みは IntegrityError になる。

現在の状態は books / book_purchases が正で、ここは監査と履歴のためのもの。
"""

from datetime import datetime, timezone
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from .tables import event_store


async def current_version(session: AsyncSession, aggregate_id: UUID) -> int:
    result = await session.execute(
        select(func.max(event_store.c.version)).where(
            event_store.c.aggregate_id == aggregate_id
        )
    )
    return result.scalar() or 0


async def append_event(
    session: AsyncSession,
    aggregate_id: UUID,
    aggregate_type: str,
    event: BaseModel,
    expected_version: int | None = None,
) -> int:
    """
    イベントを追記して新しいバージョンを返す。

    expected_version を省略した場合はストア上の最新バージョンを使う。
    イベント名はモデルのクラス名 (BookCreated など)。
    """
    if expected_version is None:
        expected_version = await current_version(session, aggregate_id)
    new_version = expected_version + 1
    await session.execute(
        insert(event_store).values(
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            event_type=type(event).__name__,
            event_data=event.model_dump(mode="json"),
            version=new_version,
            created_at=datetime.now(timezone.utc),
        )
    )
    return new_version


def _row_to_event(row) -> dict:
    return {
        "aggregate_id": str(row.aggregate_id),
        "aggregate_type": row.aggregate_type,
        "event_type": row.event_type,
        "event_data": row.event_data,
        "version": row.version,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def load_events(session: AsyncSession, aggregate_id: UUID) -> list[dict]:
    """指定した集約の全イベントをバージョン順に読み出す。"""
    result = await session.execute(
        select(event_store)
        .where(event_store.c.aggregate_id == aggregate_id)
        .order_by(event_store.c.version.asc())
    )
    return [_row_to_event(row) for row in result.fetchall()]


async def load_all_events(session: AsyncSession) -> list[dict]:
    """すべてのイベントを記録順に返す（デバッグ用）。"""
    result = await session.execute(
        select(event_store).order_by(event_store.c.id.asc())
    )
    return [_row_to_event(row) for row in result.fetchall()]
