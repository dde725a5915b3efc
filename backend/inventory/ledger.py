"""
Aliquot Ledger — durable state of every physical sample.

Every write goes through `upsert_aliquot`: the supplied columns are merged
over the stored row (columns not supplied keep their stored value, a missing
row contributes nulls), the merged row is written by id, and one history row
is appended when an audit action is given. History rows are never updated
or deleted.

Status and condition codes are compared here, never interpreted.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.helpers import DEFAULT_PAGE_SIZE, fetch_with_pagination, upsert_by_key
from db.models import ALIQUOT_COLUMNS, Aliquot, AliquotAuditAction, AliquotHistory, AliquotStatus

logger = structlog.get_logger()


@dataclass
class AliquotPage:
    """One page of aliquots plus the unpaginated total."""

    rows: list[Aliquot]
    total: int
    page: int
    page_size: int


def aliquot_as_dict(aliquot: Aliquot) -> dict[str, Any]:
    return {column: getattr(aliquot, column) for column in ALIQUOT_COLUMNS}


def _merge(row: dict[str, Any], stored: Aliquot | None) -> dict[str, Any]:
    merged = {}
    for column in ALIQUOT_COLUMNS:
        if column in row:
            merged[column] = row[column]
        elif stored is not None:
            merged[column] = getattr(stored, column)
        else:
            merged[column] = None
    return merged


async def upsert_aliquot(
    db: AsyncSession,
    row: dict[str, Any],
    history_action: AliquotAuditAction | None = None,
) -> Aliquot:
    """
    Merge `row` over the stored aliquot and write the result.

    `row` must carry `aliquot_id`; any other key outside the ledger columns
    is ignored. Does not commit.
    """
    aliquot_id = row.get("aliquot_id")
    if not aliquot_id:
        raise ValueError("aliquot_id is required to write an aliquot")

    stored = await db.get(Aliquot, aliquot_id)
    merged = _merge(row, stored)
    merged["record_timestamp"] = datetime.utcnow()

    aliquot, created = await upsert_by_key(db, Aliquot, aliquot_id, merged)

    if history_action is not None:
        db.add(
            AliquotHistory(
                aliquot_id=aliquot_id,
                task_id=merged["task_id"],
                action=AliquotAuditAction(history_action).value,
                location_id=merged["location_id"],
                status_id=merged["status_id"],
                condition_id=merged["condition_id"],
                updated=merged["updated"],
                shipment_id=merged["shipment_id"],
                record_timestamp=merged["record_timestamp"],
            )
        )
        await db.flush()

    logger.debug(
        "ledger.aliquot_written",
        aliquot_id=aliquot_id,
        created=created,
        action=history_action.value if history_action else None,
    )
    return aliquot


async def track_aliquots(
    db: AsyncSession,
    rows: Iterable[dict[str, Any]],
    action: AliquotAuditAction = AliquotAuditAction.CREATED,
) -> list[Aliquot]:
    """Batch form of `upsert_aliquot`; every row gets one history entry."""
    return [await upsert_aliquot(db, row, history_action=action) for row in rows]


async def find_aliquots_by_ids(db: AsyncSession, aliquot_ids: Iterable[str]) -> list[Aliquot]:
    ids = list(dict.fromkeys(aliquot_ids))
    if not ids:
        return []
    result = await db.execute(select(Aliquot).where(Aliquot.aliquot_id.in_(ids)))
    return list(result.scalars().all())


def missing_aliquot_ids(requested: Iterable[str], found: Iterable[Aliquot]) -> list[str]:
    """Requested ids with no matching row, in request order."""
    found_ids = {aliquot.aliquot_id for aliquot in found}
    return [aliquot_id for aliquot_id in dict.fromkeys(requested) if aliquot_id not in found_ids]


async def get_aliquot(
    db: AsyncSession,
    aliquot_id: str,
    location_id: int | None = None,
    status_id: int | None = None,
    exclude_ids: Iterable[str] | None = None,
) -> Aliquot | None:
    """Look up one aliquot, optionally constrained to a location and status."""
    query = select(Aliquot).where(Aliquot.aliquot_id == aliquot_id)
    if location_id is not None:
        query = query.where(Aliquot.location_id == location_id)
    if status_id is not None:
        query = query.where(Aliquot.status_id == status_id)
    if exclude_ids:
        query = query.where(Aliquot.aliquot_id.notin_(list(exclude_ids)))
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def list_shippable_aliquots(
    db: AsyncSession,
    location_id: int,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    patient_ref: str | None = None,
    sample_type: str | None = None,
    exclude_ids: Iterable[str] | None = None,
) -> AliquotPage:
    """AVAILABLE aliquots stored at `location_id`, ordered by patient then id."""
    query = select(Aliquot).where(
        Aliquot.location_id == location_id,
        Aliquot.status_id == AliquotStatus.AVAILABLE.value,
    )
    if patient_ref:
        query = query.where(Aliquot.patient_ref.like(f"%{patient_ref}%"))
    if sample_type:
        query = query.where(Aliquot.sample_type == sample_type)
    if exclude_ids:
        query = query.where(Aliquot.aliquot_id.notin_(list(exclude_ids)))
    query = query.order_by(Aliquot.patient_ref, Aliquot.aliquot_id)

    rows, total = await fetch_with_pagination(db, query, page, page_size)
    return AliquotPage(rows=rows, total=total, page=page, page_size=page_size)


async def aliquot_history(db: AsyncSession, aliquot_id: str) -> list[AliquotHistory]:
    result = await db.execute(
        select(AliquotHistory)
        .where(AliquotHistory.aliquot_id == aliquot_id)
        .order_by(AliquotHistory.record_timestamp, AliquotHistory.history_id)
    )
    return list(result.scalars().all())
