"""
Aliquots Router — shippable stock per location and the audit trail.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db
from core.errors import ErrorCode, ServiceError
from core.responses import ServiceResponse
from db.helpers import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from inventory.ledger import aliquot_history, get_aliquot, list_shippable_aliquots

router = APIRouter(prefix="/api/v1/aliquots", tags=["aliquots"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class AliquotResponse(BaseModel):
    aliquot_id: str
    patient_id: str | None
    patient_ref: str | None
    sample_type: str | None
    location_id: int | None
    status_id: int | None
    condition_id: str | None
    task_id: str | None
    created: datetime | None
    updated: datetime | None
    shipment_id: int | None

    model_config = {"from_attributes": True}


class AliquotHistoryResponse(BaseModel):
    history_id: int
    aliquot_id: str
    action: str
    task_id: str | None
    location_id: int | None
    status_id: int | None
    condition_id: str | None
    updated: datetime | None
    shipment_id: int | None
    record_timestamp: datetime

    model_config = {"from_attributes": True}


class AliquotPageResponse(BaseModel):
    rows: list[AliquotResponse]
    total: int
    page: int
    page_size: int


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=ServiceResponse)
async def list_aliquots(
    location_id: int,
    patient_ref: str | None = None,
    sample_type: str | None = None,
    exclude: str | None = Query(None, description="Comma-separated aliquot ids to leave out"),
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """AVAILABLE aliquots at a location, ready to be added to a shipment."""
    exclude_ids = [a.strip() for a in exclude.split(",") if a.strip()] if exclude else None
    result = await list_shippable_aliquots(
        db,
        location_id,
        page=page,
        page_size=page_size,
        patient_ref=patient_ref,
        sample_type=sample_type,
        exclude_ids=exclude_ids,
    )
    body = AliquotPageResponse(
        rows=[AliquotResponse.model_validate(r) for r in result.rows],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
    )
    return ServiceResponse.ok(body.model_dump())


@router.get("/{aliquot_id}", response_model=ServiceResponse)
async def get_aliquot_by_id(
    aliquot_id: str,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    aliquot = await get_aliquot(db, aliquot_id)
    if aliquot is None:
        raise ServiceError(ErrorCode.NOT_FOUND, f"Aliquot {aliquot_id} not found")
    return ServiceResponse.ok(AliquotResponse.model_validate(aliquot).model_dump())


@router.get("/{aliquot_id}/history", response_model=ServiceResponse)
async def get_aliquot_history(
    aliquot_id: str,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    rows = await aliquot_history(db, aliquot_id)
    return ServiceResponse.ok([AliquotHistoryResponse.model_validate(r).model_dump() for r in rows])
