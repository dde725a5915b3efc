"""
Tracking Router — on-demand runs of the background jobs.

Each endpoint runs the same pass the Celery beat schedule runs and returns
its background envelope ({code, message, details}).
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db, get_ecrf
from core.config import get_settings
from core.responses import BackgroundServiceResponse
from integrations.ecrf import ECRFClient
from integrations.redcap_sync import ImportContext, run_redcap_import
from inventory.aliquot_import import run_aliquot_import
from workers.tracking import run_tracking_pipeline

router = APIRouter(prefix="/api/v1/tracking", tags=["tracking"])


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/shipments", response_model=BackgroundServiceResponse)
async def track_shipments(
    db: AsyncSession = Depends(get_db),
    client: ECRFClient = Depends(get_ecrf),
    user: dict = Depends(get_current_user),
):
    """Create the eCRF shipment tracking tasks that are still missing."""
    return await run_tracking_pipeline(db, client, "shipment", settings=get_settings())


@router.post("/receptions", response_model=BackgroundServiceResponse)
async def track_receptions(
    db: AsyncSession = Depends(get_db),
    client: ECRFClient = Depends(get_ecrf),
    user: dict = Depends(get_current_user),
):
    return await run_tracking_pipeline(db, client, "reception", settings=get_settings())


@router.post("/imports/redcap", response_model=BackgroundServiceResponse)
async def import_redcap(
    client: ECRFClient = Depends(get_ecrf),
    user: dict = Depends(get_current_user),
):
    """Process the next pending RedCAP export, if any."""
    ctx = ImportContext(client=client, settings=get_settings())
    response = await run_redcap_import(ctx)
    return response.to_dict()


@router.post("/imports/aliquots", response_model=BackgroundServiceResponse)
async def import_aliquots(
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    response = await run_aliquot_import(db, settings=get_settings())
    return response.to_dict()
