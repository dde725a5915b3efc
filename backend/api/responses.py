"""
Glue between the domain operations and the HTTP surface.

Domain functions flush but never commit. Routers run them through
`committed()`: a ServiceError rolls the request's transaction back and is
rendered by `service_error_handler` as a ServiceResponse with an error.
"""

from collections.abc import Awaitable
from typing import TypeVar

from fastapi import Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ErrorCode, ServiceError
from core.responses import ServiceResponse

T = TypeVar("T")

HTTP_STATUS = {
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.INVALID_STATUS: status.HTTP_409_CONFLICT,
    ErrorCode.AMBIGUOUS: status.HTTP_409_CONFLICT,
    ErrorCode.DATA_MISSING: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.INVALID_DATA_FORMAT: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


async def committed(db: AsyncSession, operation: Awaitable[T]) -> T:
    try:
        result = await operation
    except ServiceError:
        await db.rollback()
        raise
    await db.commit()
    return result


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    body = ServiceResponse.from_error(exc)
    return JSONResponse(
        status_code=HTTP_STATUS.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        content=body.model_dump(mode="json"),
    )
