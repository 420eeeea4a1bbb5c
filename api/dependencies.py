"""
FastAPI dependencies
"""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_session_maker


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Read-only request session"""
    async with get_session_maker()() as session:
        yield session
