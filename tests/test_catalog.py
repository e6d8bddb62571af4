"""
書籍カタログ（保存・検索・在庫の増減プリミティブ）のテスト
"""

import warnings
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.exc import SAWarning

from conftest import OWNER_ID, book_data
from services.bookstore.app import catalog
from services.bookstore.app.errors import (
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from services.bookstore.app.models import BookFilters, BookSortField, SortOrder

pytestmark = pytest.mark.asyncio


class TestCreateBook:
    async def test_create_and_get(self, session):
        book = await catalog.create_book(session, book_data())
        await session.commit()

        loaded = await catalog.get_book(session, book.id)
        assert loaded.title == "The Pragmatic Programmer"
        assert loaded.price == Decimal("100.00")
        assert loaded.quantity == 5
        assert loaded.is_available
        assert loaded.availability == "available"

    @pytest.mark.parametrize(
        "field, value",
        [
            ("title", ""),
            ("price", Decimal("0")),
            ("price", Decimal("10000.00")),
            ("quantity", -1),
            ("quantity", 1000),
            ("owner_name", ""),
        ],
    )
    async def test_rejects_out_of_bounds_fields(self, session, field, value):
        with pytest.raises(ValidationError) as exc:
            await catalog.create_book(session, book_data(**{field: value}))
        assert exc.value.field == field

    async def test_availability_labels(self, session):
        empty = await catalog.create_book(session, book_data(quantity=0))
        low = await catalog.create_book(session, book_data(quantity=3))
        assert empty.availability == "unavailable"
        assert not empty.is_available
        assert low.availability == "low"


class TestUpdateBook:
    async def test_partial_update(self, session):
        book = await catalog.create_book(session, book_data())

        updated = await catalog.update_book(
            session, book.id, {"title": "New Title", "price": Decimal("42.50")}
        )

        assert updated.title == "New Title"
        assert updated.price == Decimal("42.50")
        assert updated.description == book.description
        assert updated.quantity == book.quantity

    async def test_quantity_is_not_patchable(self, session):
        book = await catalog.create_book(session, book_data())
        with pytest.raises(ValidationError) as exc:
            await catalog.update_book(session, book.id, {"quantity": 100})
        assert exc.value.field == "quantity"

    async def test_null_title_rejected(self, session):
        book = await catalog.create_book(session, book_data())
        with pytest.raises(ValidationError):
            await catalog.update_book(session, book.id, {"title": None})

    async def test_unknown_book(self, session):
        with pytest.raises(NotFoundError):
            await catalog.update_book(session, uuid4(), {"title": "x"})


class TestStockPrimitives:
    async def test_decrease_stock(self, session):
        book = await catalog.create_book(session, book_data(quantity=5))

        after = await catalog.decrease_stock(session, book.id, 3)

        assert after.quantity == 2

    async def test_decrease_to_zero(self, session):
        book = await catalog.create_book(session, book_data(quantity=2))
        after = await catalog.decrease_stock(session, book.id, 2)
        assert after.quantity == 0
        assert after.availability == "unavailable"

    async def test_decrease_more_than_available(self, session):
        book = await catalog.create_book(session, book_data(quantity=2))

        with pytest.raises(InsufficientStockError) as exc:
            await catalog.decrease_stock(session, book.id, 3)

        assert exc.value.requested == 3
        assert exc.value.available == 2
        assert (await catalog.get_book(session, book.id)).quantity == 2

    async def test_decrease_unknown_book(self, session):
        with pytest.raises(NotFoundError):
            await catalog.decrease_stock(session, uuid4(), 1)

    @pytest.mark.parametrize("amount", [0, -1])
    async def test_non_positive_amount(self, session, amount):
        book = await catalog.create_book(session, book_data())
        with pytest.raises(ValidationError):
            await catalog.decrease_stock(session, book.id, amount)
        with pytest.raises(ValidationError):
            await catalog.increase_stock(session, book.id, amount)

    async def test_increase_stock(self, session):
        book = await catalog.create_book(session, book_data(quantity=5))
        after = await catalog.increase_stock(session, book.id, 10)
        assert after.quantity == 15

    async def test_increase_up_to_ceiling(self, session):
        book = await catalog.create_book(session, book_data(quantity=990))
        after = await catalog.increase_stock(session, book.id, 9)
        assert after.quantity == 999

    async def test_increase_past_ceiling(self, session):
        book = await catalog.create_book(session, book_data(quantity=990))

        with pytest.raises(ValidationError) as exc:
            await catalog.increase_stock(session, book.id, 10)

        assert exc.value.field == "quantity"
        assert (await catalog.get_book(session, book.id)).quantity == 990

    async def test_increase_unknown_book(self, session):
        with pytest.raises(NotFoundError):
            await catalog.increase_stock(session, uuid4(), 1)


class TestQueries:
    async def _seed(self, session):
        other_owner = uuid4()
        await catalog.create_book(
            session, book_data(title="Python Tricks", price=Decimal("30.00"), category="programming")
        )
        await catalog.create_book(
            session,
            book_data(
                title="Dune",
                description="Desert planet",
                price=Decimal("15.00"),
                category="fiction",
                owner_id=other_owner,
                owner_name="Carol",
            ),
        )
        await catalog.create_book(
            session,
            book_data(title="Sold Out", price=Decimal("50.00"), quantity=0, category="history"),
        )
        return other_owner

    async def test_search_is_case_insensitive(self, session):
        await self._seed(session)

        assert [b.title for b in await catalog.search_books(session, "python")] == ["Python Tricks"]
        assert [b.title for b in await catalog.search_books(session, "DESERT")] == ["Dune"]
        assert [b.title for b in await catalog.search_books(session, "carol")] == ["Dune"]

    async def test_category_all_means_no_filter(self, session):
        await self._seed(session)
        books = await catalog.list_books(session, BookFilters(category="all"))
        assert len(books) == 3

    async def test_available_only(self, session):
        await self._seed(session)
        titles = {b.title for b in await catalog.find_available(session)}
        assert titles == {"Python Tricks", "Dune"}

    async def test_owner_filters(self, session):
        other_owner = await self._seed(session)

        mine = await catalog.find_by_owner(session, OWNER_ID)
        others = await catalog.list_books(session, BookFilters(exclude_owner_id=OWNER_ID))

        assert {b.title for b in mine} == {"Python Tricks", "Sold Out"}
        assert [b.owner_id for b in others] == [other_owner]

    async def test_price_range_sorted_ascending(self, session):
        await self._seed(session)
        books = await catalog.find_by_price_range(session, Decimal("10"), Decimal("40"))
        assert [b.title for b in books] == ["Dune", "Python Tricks"]

    async def test_sort_and_paginate(self, session):
        await self._seed(session)
        filters = BookFilters(sort_by=BookSortField.TITLE, sort_order=SortOrder.ASC, limit=2, offset=1)
        books = await catalog.list_books(session, filters)
        assert [b.title for b in books] == ["Python Tricks", "Sold Out"]

    async def test_categories_of_available_books(self, session):
        await self._seed(session)
        assert await catalog.list_categories(session) == ["fiction", "programming"]

    async def test_categories_query_emits_no_sqlalchemy_warning(self, session):
        await self._seed(session)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            await catalog.list_categories(session)
        assert not [w for w in caught if issubclass(w.category, SAWarning)]

    async def test_find_by_category_skips_sold_out(self, session):
        await self._seed(session)
        assert await catalog.find_by_category(session, "history") == []
        assert len(await catalog.find_by_category(session, "fiction")) == 1

    async def test_recently_added_limit(self, session):
        await self._seed(session)
        assert len(await catalog.find_recently_added(session, limit=1)) == 1
