"""
Shipments Router — preparation, dispatch and reception of aliquot shipments.

Every mutating endpoint commits only when the whole transition succeeded;
a rejected transition leaves nothing behind.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db
from api.responses import committed
from core.responses import ServiceResponse
from db.helpers import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from supply_chain import shipments as svc

router = APIRouter(prefix="/api/v1/shipments", tags=["shipments"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ShipmentCreate(BaseModel):
    sent_from_id: int
    sent_to_id: int | None = None
    ref: str | None = Field(None, max_length=100)


class ShipmentUpdate(BaseModel):
    ref: str | None = None
    sent_from_id: int | None = None
    sent_to_id: int | None = None
    send_date: datetime | None = None
    receiver_id: str | None = None
    reception_date: datetime | None = None
    reception_status_id: int | None = None
    reception_comments: str | None = None


class ShipmentSend(BaseModel):
    ref: str | None = None
    sent_to_id: int | None = None
    sender_id: str | None = None
    sender: str | None = None
    send_date: datetime | None = None


class ReceptionFinish(BaseModel):
    receiver_id: str | None = None
    receiver: str | None = None
    reception_date: datetime | None = None
    reception_status_id: int | None = None
    reception_comments: str | None = None


class AliquotAssign(BaseModel):
    aliquot_id: str = Field(..., min_length=1)
    patient_id: str | None = None
    patient_ref: str | None = None
    sample_type: str | None = None


class AliquotCondition(BaseModel):
    condition_id: str | None = None


class ShipmentResponse(BaseModel):
    shipment_id: int
    ref: str | None
    status_id: int
    sent_from_id: int
    sent_to_id: int | None
    sender_id: str | None
    sender: str | None
    send_date: datetime | None
    receiver_id: str | None
    receiver: str | None
    reception_date: datetime | None
    reception_status_id: int | None
    reception_comments: str | None
    last_modified: datetime

    model_config = {"from_attributes": True}


def _shipment(shipment) -> dict:
    return ShipmentResponse.model_validate(shipment).model_dump()


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=ServiceResponse)
async def list_shipments(
    active_location_id: int,
    ref: str | None = None,
    sent_from_id: int | None = None,
    sent_to_id: int | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Shipments sent from, or on their way to, the active location."""
    result = await svc.list_shipments(
        db,
        active_location_id,
        page=page,
        page_size=page_size,
        ref=ref,
        sent_from_id=sent_from_id,
        sent_to_id=sent_to_id,
    )
    return ServiceResponse.ok(
        {
            "rows": [_shipment(s) for s in result.rows],
            "total": result.total,
            "page": result.page,
            "page_size": result.page_size,
        }
    )


@router.post("/", response_model=ServiceResponse, status_code=201)
async def create_shipment(
    body: ShipmentCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    shipment = await committed(
        db,
        svc.create_shipment(
            db,
            body.sent_from_id,
            sent_to_id=body.sent_to_id,
            ref=body.ref,
            sender_id=user.get("sub"),
            sender=user.get("name"),
        ),
    )
    return ServiceResponse.ok(_shipment(shipment))


@router.get("/{shipment_id}", response_model=ServiceResponse)
async def get_shipment(
    shipment_id: int,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Shipment header, both locations and every aliquot in it."""
    details = await svc.get_shipment_details(db, shipment_id)
    return ServiceResponse.ok(
        {
            **_shipment(details.shipment),
            "sent_from": details.sent_from.name if details.sent_from else None,
            "sent_to": details.sent_to.name if details.sent_to else None,
            "aliquots": details.aliquots,
        }
    )


@router.patch("/{shipment_id}", response_model=ServiceResponse)
async def update_shipment(
    shipment_id: int,
    body: ShipmentUpdate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    shipment = await committed(db, svc.update_shipment(db, shipment_id, body.model_dump(exclude_unset=True)))
    return ServiceResponse.ok(_shipment(shipment))


@router.post("/{shipment_id}/send", response_model=ServiceResponse)
async def send_shipment(
    shipment_id: int,
    body: ShipmentSend | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    params = body.model_dump(exclude_unset=True) if body else {}
    params.setdefault("sender_id", user.get("sub"))
    params.setdefault("sender", user.get("name"))
    shipment = await committed(db, svc.send_shipment(db, shipment_id, params))
    return ServiceResponse.ok(_shipment(shipment))


@router.post("/{shipment_id}/reception", response_model=ServiceResponse)
async def start_reception(
    shipment_id: int,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    shipment = await committed(db, svc.start_reception(db, shipment_id))
    return ServiceResponse.ok(_shipment(shipment))


@router.post("/{shipment_id}/reception/finish", response_model=ServiceResponse)
async def finish_reception(
    shipment_id: int,
    body: ReceptionFinish | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    params = body.model_dump(exclude_unset=True) if body else {}
    params.setdefault("receiver_id", user.get("sub"))
    params.setdefault("receiver", user.get("name"))
    shipment = await committed(db, svc.finish_reception(db, shipment_id, params))
    return ServiceResponse.ok(_shipment(shipment))


@router.delete("/{shipment_id}", response_model=ServiceResponse)
async def delete_shipment(
    shipment_id: int,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    deleted_id = await committed(db, svc.delete_shipment(db, shipment_id))
    return ServiceResponse.ok({"shipment_id": deleted_id})


@router.post("/{shipment_id}/aliquots", response_model=ServiceResponse)
async def add_aliquot(
    shipment_id: int,
    body: AliquotAssign,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    patient = body.model_dump(exclude={"aliquot_id"}, exclude_none=True) or None
    aliquot = await committed(db, svc.add_aliquot(db, shipment_id, body.aliquot_id, patient))
    return ServiceResponse.ok({"aliquot_id": aliquot.aliquot_id, "status_id": aliquot.status_id})


@router.delete("/{shipment_id}/aliquots/{aliquot_id}", response_model=ServiceResponse)
async def remove_aliquot(
    shipment_id: int,
    aliquot_id: str,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    aliquot = await committed(db, svc.remove_aliquot(db, shipment_id, aliquot_id))
    return ServiceResponse.ok({"aliquot_id": aliquot.aliquot_id, "status_id": aliquot.status_id})


@router.put("/{shipment_id}/aliquots/{aliquot_id}/condition", response_model=ServiceResponse)
async def set_aliquot_condition(
    shipment_id: int,
    aliquot_id: str,
    body: AliquotCondition,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    row = await committed(db, svc.set_aliquot_condition(db, shipment_id, aliquot_id, body.condition_id))
    return ServiceResponse.ok({"aliquot_id": row.aliquot_id, "condition_id": row.condition_id})
