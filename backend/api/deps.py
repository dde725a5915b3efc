"""
SampleTrack API Dependencies

Dependency injection for DB sessions, the eCRF client and the operator.
"""

from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.session import AsyncSessionLocal
from integrations.ecrf import ECRFClient, get_ecrf_client

settings = get_settings()
security = HTTPBearer(auto_error=not settings.debug)

DEV_USER = {"sub": "dev-user", "name": "Development User"}


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_ecrf() -> AsyncGenerator[ECRFClient, None]:
    """Yield an eCRF client with an open service session."""
    async with get_ecrf_client(settings) as client:
        yield client


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Decode JWT and return user payload. Bypassed in debug mode."""
    if settings.debug:
        return dict(DEV_USER)

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    from core.security import decode_access_token

    payload = decode_access_token(credentials.credentials)
    if payload is None or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return payload
