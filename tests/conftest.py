"""
Bookstore Service テスト共通フィクスチャ

- engine / session_factory / session: テストごとのファイル SQLite (aiosqlite)
- redis: publish を記録するだけの Fake
- make_book / make_purchase: 別セッションでデータを用意するヘルパー
- client: ASGITransport 経由の httpx.AsyncClient（依存関係を差し替え済み）

SQLite ではトランザクションを BEGIN IMMEDIATE で開始するため、
読み取りだけのセッションでも開いている間は他の書き込みを待たせる。
ヘルパーは自前のセッションを使い、終わったら閉じる。
"""

import json
import os
from decimal import Decimal
from uuid import UUID, uuid4

# main はインポート時に設定を読むので先に環境変数を用意する
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CREATE_SCHEMA", "false")

import httpx
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from services.bookstore.app import commands, main
from services.bookstore.app.config import Settings
from services.bookstore.app.database import (
    create_engine,
    create_schema,
    create_session_factory,
    drop_schema,
)

OWNER_ID = UUID("11111111-1111-1111-1111-111111111111")
BUYER_ID = UUID("22222222-2222-2222-2222-222222222222")


class FakeRedis:
    """publish されたメッセージを (channel, payload) で記録する"""

    def __init__(self):
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, json.loads(message)))
        return 1

    def event_types(self, channel: str | None = None) -> list[str]:
        return [
            payload["event_type"]
            for published_channel, payload in self.published
            if channel is None or published_channel == channel
        ]


class BrokenRedis:
    """常に接続エラーになる Redis"""

    async def publish(self, channel: str, message: str) -> int:
        raise RedisConnectionError("redis is down")


# ── DB ───────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'bookstore.db'}")
    await create_schema(engine)
    yield engine
    await drop_schema(engine)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def redis():
    return FakeRedis()


# ── Test Data ────────────────────────────────────


def book_data(**overrides) -> dict:
    data = {
        "title": "The Pragmatic Programmer",
        "description": "From journeyman to master",
        "price": Decimal("100.00"),
        "quantity": 5,
        "category": "programming",
        "owner_id": OWNER_ID,
        "owner_name": "Alice Owner",
    }
    data.update(overrides)
    return data


def purchase_data(book, **overrides) -> dict:
    data = {
        "book_id": book.id,
        "buyer_id": BUYER_ID,
        "buyer_name": "Bob Buyer",
        "buyer_email": "bob@example.com",
        "quantity": 1,
        "purchase_price": book.price,
    }
    data.update(overrides)
    return data


@pytest.fixture
def make_book(session_factory):
    async def _make(**overrides):
        async with session_factory() as session:
            return await commands.create_book(session, None, book_data(**overrides))

    return _make


@pytest.fixture
def make_purchase(session_factory):
    async def _make(book, **overrides):
        async with session_factory() as session:
            return await commands.create_purchase(
                session, None, purchase_data(book, **overrides)
            )

    return _make


# ── HTTP ─────────────────────────────────────────


@pytest.fixture
def settings():
    return Settings(database_url="sqlite+aiosqlite://")


@pytest_asyncio.fixture
async def client(session_factory, redis, settings):
    async def override_session():
        async with session_factory() as session:
            yield session

    main.app.dependency_overrides[main.get_session] = override_session
    main.app.dependency_overrides[main.get_session_factory] = lambda: session_factory
    main.app.dependency_overrides[main.get_redis] = lambda: redis
    main.app.dependency_overrides[main.get_settings] = lambda: settings

    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    main.app.dependency_overrides.clear()


def new_id() -> str:
    return str(uuid4())
