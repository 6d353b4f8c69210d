"""
Request dependencies.

Long-lived collaborators (session factory, presence registry, dispatcher,
user directory) are built once in the app lifespan and kept on app.state.
"""
from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.middleware.error_handler import DatabaseError
from app.realtime.dispatcher import DeliveryDispatcher
from app.realtime.presence import PresenceRegistry
from app.services.offer_events import OfferEventHandler
from app.services.user_directory import UserDirectory


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get a database session."""
    session_factory = request.app.state.session_factory
    if session_factory is None:
        raise DatabaseError("Database not configured. Set DATABASE_URL environment variable.")
    async with session_factory() as session:
        yield session


def get_presence(request: Request) -> PresenceRegistry:
    return request.app.state.presence


def get_dispatcher(request: Request) -> DeliveryDispatcher:
    return request.app.state.dispatcher


def get_user_directory(request: Request) -> UserDirectory:
    return request.app.state.user_directory


def get_offer_handler(request: Request) -> OfferEventHandler:
    return request.app.state.offer_handler
