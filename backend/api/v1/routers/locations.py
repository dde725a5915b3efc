"""
Locations Router — labs and clinical sites that exchange aliquots.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db, get_ecrf
from api.responses import committed
from core.config import get_settings
from core.errors import ErrorCode, ServiceError
from core.responses import ServiceResponse
from integrations.ecrf import ECRFClient
from supply_chain.locations import get_location, list_locations, populate_locations

router = APIRouter(prefix="/api/v1/locations", tags=["locations"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class LocationResponse(BaseModel):
    location_id: int
    name: str
    code: str
    is_lab: bool
    is_clinical_site: bool

    model_config = {"from_attributes": True}


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=ServiceResponse)
async def get_locations(
    labs_only: bool = True,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """List shipment locations (labs only unless `labs_only=false`)."""
    rows = await list_locations(db, labs_only=labs_only)
    return ServiceResponse.ok([LocationResponse.model_validate(r).model_dump() for r in rows])


@router.get("/{location_id}", response_model=ServiceResponse)
async def get_location_by_id(
    location_id: int,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    location = await get_location(db, location_id)
    if location is None:
        raise ServiceError(ErrorCode.NOT_FOUND, f"Location {location_id} not found")
    return ServiceResponse.ok(LocationResponse.model_validate(location).model_dump())


@router.post("/populate", response_model=ServiceResponse)
async def populate(
    db: AsyncSession = Depends(get_db),
    client: ECRFClient = Depends(get_ecrf),
    user: dict = Depends(get_current_user),
):
    """Refresh the directory from the eCRF teams listed in `lab_teams`."""
    logs = await committed(db, populate_locations(db, client, get_settings()))
    return ServiceResponse.ok(logs)
