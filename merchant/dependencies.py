from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from merchant.database import async_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


def get_dispatcher(request: Request):
    """The process-wide WebhookDispatcher created in the app lifespan."""
    return request.app.state.dispatcher


def get_payment_client(request: Request):
    return request.app.state.payment_client
