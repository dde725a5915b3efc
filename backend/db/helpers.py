"""
Query helpers shared by the ledger, the shipment state machine and the API.
"""

from typing import Any

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500


async def fetch_with_pagination(
    db: AsyncSession,
    query: Select,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> tuple[list[Any], int]:
    """
    Run `query` for one page (1-based) and return (rows, total_count).

    The total is computed over the unpaginated query, so callers can render
    "page X of Y" without a second round-trip of their own.
    """
    page = max(page, 1)
    page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

    total_q = select(func.count()).select_from(query.order_by(None).subquery())
    total = (await db.execute(total_q)).scalar() or 0

    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    return list(result.scalars().unique().all()), total


async def upsert_by_key(db: AsyncSession, model, key: Any, values: dict[str, Any]) -> tuple[Any, bool]:
    """Insert-or-update a row by primary key. Returns (instance, created)."""
    instance = await db.get(model, key)
    if instance is None:
        instance = model(**values)
        db.add(instance)
        await db.flush()
        return instance, True

    for column, value in values.items():
        setattr(instance, column, value)
    await db.flush()
    return instance, False
