"""
Order Service: 設定

環境変数から読み込む。DATABASE_URL だけは必須で、
それ以外はローカル開発向けのデフォルト値を持つ。
"""

import os

from pydantic import BaseModel


class Settings(BaseModel):
    database_url: str
    redis_url: str = "redis://localhost:6379"
    order_events_channel: str = "order_events"
    # 在庫行のロック待ちの上限 (PostgreSQL の lock_timeout)
    stock_lock_timeout_ms: int = 5000
    log_level: str = "INFO"
    create_schema: bool = True


def load_settings() -> Settings:
    """環境変数から Settings を組み立てる。"""
    return Settings(
        database_url=os.environ["DATABASE_URL"],
        redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
        order_events_channel=os.environ.get("ORDER_EVENTS_CHANNEL", "order_events"),
        stock_lock_timeout_ms=int(os.environ.get("STOCK_LOCK_TIMEOUT_MS", "5000")),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        create_schema=os.environ.get("CREATE_SCHEMA", "true").lower() == "true",
    )
