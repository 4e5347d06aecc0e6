# backend/knowledge_sync/core/database/base.py
"""
SQLAlchemy base class and session dependency.

Provides the declarative base for all models. Models are registered against
this base exactly once, when ``knowledge_sync.core.database.models`` is
imported.
"""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import declarative_base

# Declarative base for all models
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency function for FastAPI to get async database session.

    Usage in FastAPI routes:
        @router.get("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_db)):
            pass

    Yields:
        AsyncSession: Async database session
    """
    from knowledge_sync.core.shared.database_service import database_service

    async with database_service.get_session() as session:
        yield session
