"""
Order Service: ユーザーストア（購入者の存在確認のみ）
"""

from sqlalchemy.ext.asyncio import AsyncSession

from .models import User


async def find_user(session: AsyncSession, user_id: str) -> User | None:
    return await session.get(User, user_id)
