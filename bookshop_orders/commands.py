"""
Order Service: コマンドハンドラ (CQRS の Write 側)

注文確定コマンドを処理する。状態を変更する操作はここだけ。

1. リクエストの形を検証（空の明細・不正な数量・重複した書籍）
2. 購入者・書籍・在庫を検証（ここまでは読み取りのみ）
3. 1トランザクションで在庫減算 + 注文 + 明細を書き込む
4. コミット後に Redis Pub/Sub で OrderPlaced を発行

どこで失敗してもトランザクションはロールバックされ、
注文・明細・在庫のいずれも変更されない。
"""

import logging

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog, repository, users
from .errors import (
    BookNotFound,
    ConcurrentStockConflict,
    DuplicateLineItem,
    IdempotencyKeyConflict,
    InsufficientStock,
    InvalidRequest,
    StorageUnavailable,
    UserNotFound,
)
from .events import publish_order_placed
from .models import Order
from .repository import PricedLine

logger = logging.getLogger(__name__)

# orders.idempotency_key の列幅
MAX_IDEMPOTENCY_KEY_LENGTH = 200

# ドライバが SQLAlchemy の例外に包まない接続エラーは OSError として届く
STORAGE_ERRORS = (SQLAlchemyError, OSError)


def validate_lines(lines: list[dict]) -> list[tuple[str, int]]:
    """
    明細の形を検証し、(book_id, quantity) のリストを返す。

    Raises:
        InvalidRequest: 明細が空、book_id が空、数量が正の整数でない
        DuplicateLineItem: 同じ book_id が2回以上出てくる
    """
    if not lines:
        raise InvalidRequest("Order lines are required and must be a non-empty array")

    requested = []
    for line in lines:
        book_id = line.get("book_id")
        quantity = line.get("quantity")
        if not isinstance(book_id, str) or not book_id.strip():
            raise InvalidRequest("Each line must have a valid book_id")
        # bool は int のサブクラスなので明示的に弾く
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidRequest(
                "Each line must have an integer quantity greater than 0",
                book_id=book_id,
            )
        requested.append((book_id, quantity))

    seen: set[str] = set()
    duplicates: list[str] = []
    for book_id, _ in requested:
        if book_id in seen and book_id not in duplicates:
            duplicates.append(book_id)
        seen.add(book_id)
    if duplicates:
        raise DuplicateLineItem(duplicates)

    return requested


async def place_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    purchaser_id: str,
    lines: list[dict],
    *,
    idempotency_key: str | None = None,
    channel: str = "order_events",
    lock_timeout_ms: int = 5000,
) -> tuple[dict, bool]:
    """
    注文確定コマンド

    idempotency_key が既存の注文に使われていれば、新しい注文は作らず
    その注文を返す（在庫も減らさない）。

    Returns:
        (注文詳細, 新規作成なら True / 再送の再生なら False)
    """
    if not isinstance(purchaser_id, str) or not purchaser_id.strip():
        raise InvalidRequest("purchaser_id is required")
    requested = validate_lines(lines)
    idempotency_key = normalize_idempotency_key(idempotency_key)

    try:
        async with session.begin():
            if idempotency_key:
                existing = await repository.find_by_idempotency_key(session, idempotency_key)
                if existing:
                    return await _replay(session, existing, purchaser_id), False

            priced = await _price_lines(session, purchaser_id, requested)

            await _set_lock_timeout(session, lock_timeout_ms)
            order = await repository.commit(session, purchaser_id, priced, idempotency_key)
            order_id = order.id
    except ConcurrentStockConflict as e:
        logger.warning(
            "Stock conflict for book %s, order by %s rolled back",
            e.detail["book_id"], purchaser_id,
        )
        raise
    except IntegrityError:
        # 同じ Idempotency-Key の同時送信。先にコミットした注文を返す
        if idempotency_key:
            existing = await _read_back(
                repository.find_by_idempotency_key(session, idempotency_key)
            )
            if existing:
                return await _read_back(_replay(session, existing, purchaser_id)), False
        logger.exception("Order commit violated a constraint")
        raise StorageUnavailable() from None
    except STORAGE_ERRORS:
        logger.exception("Order commit failed")
        raise StorageUnavailable() from None

    detail = await _read_back(repository.fetch_by_id(session, order_id))
    logger.info(
        "Order %s committed: user=%s lines=%d total=%.2f",
        order_id, purchaser_id, len(priced), detail["total_price"],
    )

    await publish_order_placed(redis, channel, detail)
    return detail, True


def normalize_idempotency_key(key: str | None) -> str | None:
    """空白だけのキーはキー無しとして扱う。列幅を超えるキーは InvalidRequest。"""
    if key is None or not key.strip():
        return None
    if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise InvalidRequest(
            f"Idempotency-Key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters",
            length=len(key),
        )
    return key


async def _read_back(awaitable):
    try:
        return await awaitable
    except STORAGE_ERRORS:
        logger.exception("Order read-back failed")
        raise StorageUnavailable() from None


async def _price_lines(
    session: AsyncSession,
    purchaser_id: str,
    requested: list[tuple[str, int]],
) -> list[PricedLine]:
    """購入者・書籍・在庫を検証し、現在の価格で明細を確定する。"""
    if not await users.find_user(session, purchaser_id):
        raise UserNotFound(purchaser_id)

    book_ids = [book_id for book_id, _ in requested]
    books = {book.id: book for book in await catalog.find_books_by_ids(session, book_ids)}
    missing = [book_id for book_id in book_ids if book_id not in books]
    if missing:
        raise BookNotFound(missing)

    priced = []
    for book_id, quantity in requested:
        book = books[book_id]
        if book.stock_quantity < quantity:
            raise InsufficientStock(book.id, book.title, book.stock_quantity, quantity)
        priced.append(PricedLine(book_id=book.id, quantity=quantity, unit_price=book.price))
    return priced


async def _replay(session: AsyncSession, existing: Order, purchaser_id: str) -> dict:
    if existing.user_id != purchaser_id:
        raise IdempotencyKeyConflict(existing.idempotency_key)
    logger.info("Replaying order %s for idempotency key", existing.id)
    return await repository.fetch_by_id(session, existing.id)


async def _set_lock_timeout(session: AsyncSession, lock_timeout_ms: int) -> None:
    """在庫行のロック待ちに上限を設ける。PostgreSQL 以外では何もしない。"""
    if session.bind.dialect.name == "postgresql":
        await session.execute(text(f"SET LOCAL lock_timeout = {int(lock_timeout_ms)}"))
