"""Common FastAPI dependencies for consistent type annotations.

Usage:
    from expense_tracker.deps import DbSession

    async def my_endpoint(db: DbSession):
        # db is AsyncSession with get_db dependency injected
        ...
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from expense_tracker.database import get_db

DbSession = Annotated[AsyncSession, Depends(get_db)]

__all__ = ["DbSession"]
