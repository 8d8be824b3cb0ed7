"""
Order Service: カタログストア

書籍・ジャンルの CRUD は別サービスの責務。ここでは注文処理に必要な
参照系と、在庫の条件付き減算だけを提供する。
"""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Book, Genre


async def find_books_by_ids(session: AsyncSession, book_ids: list[str]) -> list[Book]:
    """論理削除されていない書籍を1回のクエリでまとめて取得する。"""
    if not book_ids:
        return []
    result = await session.execute(
        select(Book).where(Book.id.in_(book_ids), Book.deleted_at.is_(None))
    )
    return list(result.scalars().all())


async def find_genre(session: AsyncSession, genre_id: str) -> Genre | None:
    """ジャンルの現在の名前を引く。統計表示用なので論理削除済みも返す。"""
    return await session.get(Genre, genre_id)


async def decrement_stock(session: AsyncSession, book_id: str, quantity: int) -> bool:
    """
    在庫を quantity だけ減らす。減算後に 0 未満になる場合は何もしない。

    読み取りと書き込みを1つの UPDATE 文で行うため、同じ書籍に対する
    同時注文があっても在庫がマイナスになることはない。
    PostgreSQL では UPDATE した行のロックがコミットまで保持される。

    Returns:
        減算できたら True、条件を満たさず 0 行更新なら False
    """
    result = await session.execute(
        update(Book)
        .where(
            Book.id == book_id,
            Book.deleted_at.is_(None),
            Book.stock_quantity >= quantity,
        )
        .values(stock_quantity=Book.stock_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
