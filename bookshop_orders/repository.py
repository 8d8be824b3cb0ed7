"""
Order Service: 注文リポジトリ

注文 (orders) と明細 (order_items) の永続化を担う。

- commit は呼び出し側が開いたトランザクションの中で実行される。
  在庫の条件付き減算・注文行・明細行の挿入がすべて同じトランザクションに
  入るので、読み手が「明細のない注文」や「注文のない在庫減算」を見ることはない。
- 読み取り側は書籍・ジャンルと結合した投影を返す。
"""

from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog
from .errors import ConcurrentStockConflict
from .models import Book, Order, OrderLine

CENT = Decimal("0.01")


@dataclass(frozen=True)
class PricedLine:
    """検証済みの明細。unit_price は検証時点の書籍価格のスナップショット。"""
    book_id: str
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(CENT)


def _iso(value: datetime | None) -> str | None:
    if not value:
        return None
    # SQLite はタイムゾーンを保存しないので UTC として扱う
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


# ── Write 側 ─────────────────────────────────────


async def commit(
    session: AsyncSession,
    user_id: str,
    lines: list[PricedLine],
    idempotency_key: str | None = None,
) -> Order:
    """
    在庫減算と注文・明細の挿入を行う。コミットは呼び出し側の責務。

    減算は book_id の昇順で行う（どの注文も同じ順序で行ロックを取る）。

    Raises:
        ConcurrentStockConflict: 検証後に他の注文が在庫を減らし、
            条件付き減算が 0 行更新になった
    """
    for line in sorted(lines, key=lambda line: line.book_id):
        if not await catalog.decrement_stock(session, line.book_id, line.quantity):
            raise ConcurrentStockConflict(line.book_id)

    order = Order(
        user_id=user_id,
        total_price=sum((line.subtotal for line in lines), Decimal("0")),
        idempotency_key=idempotency_key,
        lines=[
            OrderLine(book_id=line.book_id, quantity=line.quantity, price=line.unit_price)
            for line in lines
        ],
    )
    session.add(order)
    await session.flush()
    return order


# ── Read 側 ──────────────────────────────────────


async def find_by_idempotency_key(session: AsyncSession, key: str) -> Order | None:
    result = await session.execute(select(Order).where(Order.idempotency_key == key))
    return result.scalar_one_or_none()


async def fetch_by_id(session: AsyncSession, order_id: str) -> dict | None:
    """注文と明細を書籍タイトル付きで返す。論理削除済みの書籍も表示する。"""
    order = await session.get(Order, order_id)
    if not order:
        return None

    result = await session.execute(
        select(OrderLine.book_id, Book.title, OrderLine.quantity, OrderLine.price)
        .join(Book, Book.id == OrderLine.book_id)
        .where(OrderLine.order_id == order_id)
        .order_by(OrderLine.book_id)
    )
    items = [
        {
            "book_id": row.book_id,
            "book_title": row.title,
            "quantity": row.quantity,
            "unit_price": float(row.price),
            "subtotal_price": float((row.price * row.quantity).quantize(CENT)),
        }
        for row in result.fetchall()
    ]
    return {
        "id": order.id,
        "user_id": order.user_id,
        "items": items,
        "total_quantity": sum(item["quantity"] for item in items),
        "total_price": float(order.total_price),
        "created_at": _iso(order.created_at),
    }


async def fetch_all(
    session: AsyncSession,
    *,
    page: int,
    limit: int,
    search: str | None = None,
    order_by_id: str | None = None,
    order_by_price: str | None = None,
    order_by_amount: str | None = None,
) -> tuple[list[dict], int]:
    """
    注文一覧をページングして返す。

    - search: 注文 ID もしくは明細の書籍タイトルの部分一致（大文字小文字を区別しない）
    - order_by_amount: 合計冊数でソート。指定時は他のソート指定より優先する
    - 何も指定されなければ created_at の降順

    Returns:
        (items, total) total は検索条件に一致した注文の総数
    """
    quantities = (
        select(
            OrderLine.order_id,
            func.sum(OrderLine.quantity).label("total_quantity"),
        )
        .group_by(OrderLine.order_id)
        .subquery()
    )

    conditions = []
    if search:
        needle = search.lower()
        conditions.append(
            or_(
                func.lower(Order.id).contains(needle, autoescape=True),
                Order.id.in_(
                    select(OrderLine.order_id)
                    .join(Book, Book.id == OrderLine.book_id)
                    .where(func.lower(Book.title).contains(needle, autoescape=True))
                ),
            )
        )

    stmt = (
        select(
            Order.id,
            Order.user_id,
            Order.total_price,
            Order.created_at,
            quantities.c.total_quantity,
        )
        .join(quantities, quantities.c.order_id == Order.id)
        .where(*conditions)
    )

    ordering = []
    if order_by_amount:
        ordering.append(_direction(quantities.c.total_quantity, order_by_amount))
    else:
        if order_by_id:
            ordering.append(_direction(Order.id, order_by_id))
        if order_by_price:
            ordering.append(_direction(Order.total_price, order_by_price))
    if not ordering:
        ordering.append(Order.created_at.desc())
    # ページ境界を安定させるための最終キー
    ordering.append(Order.id.asc())

    result = await session.execute(
        stmt.order_by(*ordering).limit(limit).offset((page - 1) * limit)
    )
    items = [
        {
            "id": row.id,
            "user_id": row.user_id,
            "total_quantity": int(row.total_quantity),
            "total_price": float(row.total_price),
            "created_at": _iso(row.created_at),
        }
        for row in result.fetchall()
    ]

    total = await session.scalar(
        select(func.count()).select_from(Order).where(*conditions)
    )
    return items, int(total or 0)


def _direction(column, direction: str):
    return column.asc() if direction == "asc" else column.desc()


# ── 統計用 ───────────────────────────────────────


async def order_totals(session: AsyncSession) -> tuple[int, Decimal]:
    """(注文数, 合計金額) を返す。"""
    row = (
        await session.execute(
            select(func.count(Order.id), func.coalesce(func.sum(Order.total_price), 0))
        )
    ).one()
    return int(row[0]), Decimal(str(row[1]))


async def stream_line_genres(session: AsyncSession) -> AsyncIterator[tuple[str, int]]:
    """
    明細ごとに (書籍の現在のジャンル ID, 数量) をストリームで返す。

    ジャンルは購入時点ではなく読み出し時点の書籍から引く。
    論理削除済みの書籍の明細は含めない。
    """
    result = await session.stream(
        select(Book.genre_id, OrderLine.quantity)
        .join(Book, Book.id == OrderLine.book_id)
        .where(Book.deleted_at.is_(None))
        .execution_options(yield_per=500)
    )
    async for row in result:
        yield row.genre_id, row.quantity
