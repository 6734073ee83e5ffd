"""Dependency injection utilities for FastAPI."""

from typing import Annotated, AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from thermotrack.core.config import settings
from thermotrack.services.room_resolver import RoomResolver

# Database engine and session factory
engine = create_async_engine(settings.database_url, echo=settings.debug)
async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get database session."""
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def load_room_resolver(path: str | None = None) -> RoomResolver:
    """Build the room directory from ``settings.rooms_file``; empty when unset."""
    path = settings.rooms_file if path is None else path
    if not path:
        return RoomResolver([])
    return RoomResolver.from_json_file(path)


async def get_room_resolver(request: Request) -> RoomResolver:
    """Room directory loaded once at startup and stored on the app."""
    resolver = getattr(request.app.state, "room_resolver", None)
    if resolver is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Room directory not loaded",
        )
    return resolver


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
Rooms = Annotated[RoomResolver, Depends(get_room_resolver)]
