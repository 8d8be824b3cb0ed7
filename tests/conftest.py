import json
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from bookshop_orders.database import create_schema, make_engine, make_session_factory
from bookshop_orders.models import Book, Genre, User


class RecordingRedis:
    """publish されたメッセージを記録するだけの Redis の代役"""

    def __init__(self):
        self.published = []

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        return 1

    async def aclose(self):
        pass


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}"


@pytest.fixture
async def engine(database_url):
    engine = make_engine(database_url)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
async def seeded(session_factory):
    """
    Fiction: book-b (10.00, 在庫5), book-c (12.50, 在庫10)
    History: book-h (20.00, 在庫3)
    """
    async with session_factory() as session:
        session.add_all(
            [
                Genre(id="genre-fiction", name="Fiction"),
                Genre(id="genre-history", name="History"),
                User(id="user-1", username="alice", email="alice@example.com"),
                User(id="user-2", username="bob", email="bob@example.com"),
            ]
        )
        await session.flush()
        session.add_all(
            [
                _book("book-b", "Blue Harbour", "10.00", 5, "genre-fiction"),
                _book("book-c", "Cold Orchard", "12.50", 10, "genre-fiction"),
                _book("book-h", "A Short History", "20.00", 3, "genre-history"),
            ]
        )
        await session.commit()


def _book(book_id, title, price, stock, genre_id):
    return Book(
        id=book_id,
        title=title,
        writer="Someone",
        publisher="Some Press",
        publication_year=2020,
        price=Decimal(price),
        stock_quantity=stock,
        genre_id=genre_id,
    )


async def stock_of(session_factory, book_id):
    async with session_factory() as session:
        book = await session.get(Book, book_id)
        return book.stock_quantity


async def count_rows(session_factory, model):
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))
