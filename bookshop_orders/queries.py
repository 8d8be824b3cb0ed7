"""
Order Service: クエリハンドラ (CQRS の Read 側)

注文一覧・注文詳細を返す。どちらも読み取り専用で、
同じ注文を続けて2回読めば（間にコミットが無い限り）同じ結果になる。
"""

import math

from sqlalchemy.ext.asyncio import AsyncSession

from . import repository
from .errors import InvalidRequest

MAX_LIMIT = 100
SORT_DIRECTIONS = ("asc", "desc")


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    return await repository.fetch_by_id(session, order_id)


async def list_orders(
    session: AsyncSession,
    page: int = 1,
    limit: int = 10,
    search: str | None = None,
    order_by_id: str | None = None,
    order_by_price: str | None = None,
    order_by_amount: str | None = None,
) -> dict:
    """注文一覧をページ情報付きで返す。"""
    if page < 1:
        raise InvalidRequest("Invalid page number", page=page)
    if not 1 <= limit <= MAX_LIMIT:
        raise InvalidRequest(f"Invalid limit (must be 1-{MAX_LIMIT})", limit=limit)
    for name, value in (
        ("order_by_id", order_by_id),
        ("order_by_price", order_by_price),
        ("order_by_amount", order_by_amount),
    ):
        if value is not None and value not in SORT_DIRECTIONS:
            raise InvalidRequest(f"{name} must be 'asc' or 'desc'", **{name: value})

    items, total = await repository.fetch_all(
        session,
        page=page,
        limit=limit,
        search=search or None,
        order_by_id=order_by_id,
        order_by_price=order_by_price,
        order_by_amount=order_by_amount,
    )
    total_pages = math.ceil(total / limit)
    return {
        "items": items,
        "meta": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "prev_page": page - 1 if page > 1 else None,
            "next_page": page + 1 if page < total_pages else None,
        },
    }
