"""
Order Service: 売上統計 (Read 側)

確定済みの注文履歴全体から統計を作る。読み取り専用でロックは取らない。
コミット途中の注文が含まれるかどうかはタイミング次第。

明細は1行ずつストリームで読み、ジャンル別の数量だけをメモリに持つ。
注文数が増えてもメモリ使用量はジャンル数にしか比例しない。

注意: ジャンルは購入時点ではなく、集計時点の書籍のジャンルで数える。
書籍のジャンルが変わると過去の売上も新しいジャンルに付け替わり、
書籍が論理削除されるとその明細はジャンル集計から外れる
（注文数と平均金額には含まれたまま）。
"""

from collections import defaultdict
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog, repository
from .repository import CENT


def rank_genres(quantities: dict[str, int]) -> list[tuple[str, int]]:
    """数量の降順、同数ならジャンル ID の昇順で並べる。"""
    return sorted(quantities.items(), key=lambda item: (-item[1], item[0]))


def average_order_value(total_orders: int, total_amount: Decimal) -> Decimal:
    if total_orders == 0:
        return Decimal("0.00")
    return (total_amount / total_orders).quantize(CENT, rounding=ROUND_HALF_UP)


async def summarize(session: AsyncSession) -> dict:
    """
    売上統計を返す。

    - best_selling_genre: 最も売れたジャンル名。売上が無ければ None
    - worst_selling_genre: 最も売れなかったジャンル名。
      売れたジャンルが2つ未満なら None（best と同じものは返さない）
    - genre_sales: 順位付きのジャンル別販売冊数
    """
    total_orders, total_amount = await repository.order_totals(session)

    quantities: dict[str, int] = defaultdict(int)
    async for genre_id, quantity in repository.stream_line_genres(session):
        quantities[genre_id] += quantity

    genre_sales = []
    for genre_id, quantity in rank_genres(quantities):
        genre = await catalog.find_genre(session, genre_id)
        genre_sales.append(
            {
                "genre_id": genre_id,
                "genre_name": genre.name if genre else None,
                "quantity": quantity,
            }
        )

    best = genre_sales[0]["genre_name"] if genre_sales else None
    worst = genre_sales[-1]["genre_name"] if len(genre_sales) > 1 else None

    return {
        "total_orders": total_orders,
        "average_order_value": float(average_order_value(total_orders, total_amount)),
        "best_selling_genre": best,
        "worst_selling_genre": worst,
        "genre_sales": genre_sales,
    }
