"""
Order Service: データベース接続

エンジンとセッションファクトリを作る。
リクエストごとに AsyncSession を1つ開き、書き込みは
そのセッションの1トランザクションにまとめる。
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .models import Base


def make_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する（開発・テスト用）。"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
