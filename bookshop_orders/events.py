"""
Order Service: イベント定義と発行

注文がコミットされた事実を OrderPlaced イベントとして Redis Pub/Sub に流す。
イベントは過去形で命名し、不変として扱う。

発行はコミット後に行う。発行に失敗しても注文そのものは確定済みなので、
ログに残すだけでリクエストは失敗させない。
"""

import json
import logging
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class OrderPlacedLine(BaseModel):
    book_id: str
    quantity: int
    unit_price: float


class OrderPlaced(BaseModel):
    """注文が確定された（在庫減算と同じトランザクションでコミット済み）"""
    order_id: str
    user_id: str
    total_price: float
    lines: list[OrderPlacedLine]
    timestamp: datetime


async def publish_order_placed(
    redis: aioredis.Redis | None,
    channel: str,
    order: dict,
) -> None:
    if redis is None:
        return
    event = OrderPlaced(
        order_id=order["id"],
        user_id=order["user_id"],
        total_price=order["total_price"],
        lines=[
            OrderPlacedLine(
                book_id=item["book_id"],
                quantity=item["quantity"],
                unit_price=item["unit_price"],
            )
            for item in order["items"]
        ],
        timestamp=order["created_at"],
    )
    payload = {"event_type": "OrderPlaced", "data": event.model_dump(mode="json")}
    try:
        await redis.publish(channel, json.dumps(payload, default=str))
    except Exception:
        logger.exception("Failed to publish OrderPlaced for order %s", order["id"])
        return
    logger.info("Published OrderPlaced: %s", order["id"])
