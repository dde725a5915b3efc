"""
Shipment State Machine — lifecycle of a batch of aliquots between two locations.

    PREPARING ──send──▶ SHIPPED ──start_reception──▶ RECEIVING ──finish_reception──▶ RECEIVED
        │
        └──delete (only here)

Guards:
  - update: PREPARING edits preparation fields only, RECEIVING edits
    reception fields only, any other status is INVALID_STATUS.
  - send: at least one aliquot, and ref / sender / destination present.
  - finish_reception: reception date, receiver and reception status present.

Aliquots are only ever written through the ledger (`inventory.ledger`) so
every side effect lands in the audit history. Functions here flush but never
commit; the caller owns the transaction, so a failed guard leaves nothing
behind once the caller rolls back.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ErrorCode, ServiceError
from db.helpers import DEFAULT_PAGE_SIZE, fetch_with_pagination
from db.models import (
    Aliquot,
    AliquotAuditAction,
    AliquotStatus,
    Location,
    SampleType,
    Shipment,
    ShipmentStatus,
    ShippedAliquot,
)
from inventory.ledger import aliquot_as_dict, upsert_aliquot

logger = structlog.get_logger()

# Editable fields per status (the update whitelist).
PREPARATION_FIELDS = ("ref", "sent_from_id", "sent_to_id", "send_date")
RECEPTION_FIELDS = ("receiver_id", "reception_date", "reception_status_id", "reception_comments")

# Fields a caller may supply together with the send / finish-reception transitions.
SEND_FIELDS = ("ref", "sent_to_id", "sender_id", "sender", "send_date")
FINISH_RECEPTION_FIELDS = RECEPTION_FIELDS + ("receiver",)

DATE_FIELDS = frozenset({"send_date", "reception_date"})


@dataclass
class ShipmentPage:
    rows: list[Shipment]
    total: int
    page: int
    page_size: int


@dataclass
class ShipmentDetails:
    shipment: Shipment
    sent_from: Location | None
    sent_to: Location | None
    aliquots: list[dict[str, Any]]


# ─── Helpers ────────────────────────────────────────────────────────────────


def parse_datetime(value: Any, field: str) -> datetime | None:
    """
    Accept a datetime, a date or an ISO-8601 string; anything else is INVALID_DATA_FORMAT.

    Columns are naive UTC, so offset-aware values are converted to UTC first.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ServiceError(ErrorCode.INVALID_DATA_FORMAT, f"Invalid {field}: {value}") from exc
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    raise ServiceError(ErrorCode.INVALID_DATA_FORMAT, f"Invalid {field}: {value}")


def _empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _pick(params: dict[str, Any] | None, allowed: tuple[str, ...]) -> dict[str, Any]:
    """Keep only whitelisted keys, normalizing dates."""
    picked = {}
    for key in allowed:
        if params and key in params:
            value = params[key]
            picked[key] = parse_datetime(value, key) if key in DATE_FIELDS else value
    return picked


def tracked_copy(shipment: Shipment, values: dict[str, Any]) -> set[str]:
    """Copy `values` onto the shipment; returns the fields that actually changed."""
    changed = set()
    for field, value in values.items():
        if getattr(shipment, field) != value:
            setattr(shipment, field, value)
            changed.add(field)
    if changed:
        shipment.last_modified = datetime.utcnow()
    return changed


async def get_shipment(db: AsyncSession, shipment_id: int) -> Shipment:
    shipment = await db.get(Shipment, shipment_id)
    if shipment is None:
        raise ServiceError(ErrorCode.NOT_FOUND, f"Shipment {shipment_id} not found")
    return shipment


def _require_status(shipment: Shipment, allowed: ShipmentStatus, action: str) -> None:
    if shipment.status_id != allowed.value:
        current = ShipmentStatus(shipment.status_id).name
        raise ServiceError(
            ErrorCode.INVALID_STATUS,
            f"Shipment {shipment.shipment_id} cannot be {action} in status {current}",
        )


async def _shipped_rows(db: AsyncSession, shipment_id: int) -> list[ShippedAliquot]:
    result = await db.execute(
        select(ShippedAliquot).where(ShippedAliquot.shipment_id == shipment_id).order_by(ShippedAliquot.aliquot_id)
    )
    return list(result.scalars().all())


async def _require_location(db: AsyncSession, location_id: Any, role: str) -> None:
    if await db.get(Location, location_id) is None:
        raise ServiceError(ErrorCode.NOT_FOUND, f"{role} location {location_id} not found")


def _check_route(sent_from_id: Any, sent_to_id: Any) -> None:
    if _empty(sent_from_id):
        raise ServiceError(ErrorCode.DATA_MISSING, "The location the shipment is sent from is mandatory")
    if not _empty(sent_to_id) and sent_to_id == sent_from_id:
        raise ServiceError(ErrorCode.INVALID_DATA_FORMAT, "A shipment cannot be sent to the same location")


# ─── Lifecycle ──────────────────────────────────────────────────────────────


async def create_shipment(
    db: AsyncSession,
    sent_from_id: int | None,
    sent_to_id: int | None = None,
    ref: str | None = None,
    sender_id: str | None = None,
    sender: str | None = None,
) -> Shipment:
    _check_route(sent_from_id, sent_to_id)
    await _require_location(db, sent_from_id, "Source")
    if not _empty(sent_to_id):
        await _require_location(db, sent_to_id, "Destination")

    shipment = Shipment(
        ref=ref,
        status_id=ShipmentStatus.PREPARING.value,
        sent_from_id=sent_from_id,
        sent_to_id=sent_to_id,
        sender_id=sender_id,
        sender=sender,
        last_modified=datetime.utcnow(),
    )
    db.add(shipment)
    await db.flush()

    logger.info(
        "shipment.created",
        shipment_id=shipment.shipment_id,
        sent_from_id=sent_from_id,
        sent_to_id=sent_to_id,
    )
    return shipment


async def update_shipment(db: AsyncSession, shipment_id: int, changes: dict[str, Any]) -> Shipment:
    """Apply the whitelisted subset of `changes` allowed by the current status."""
    shipment = await get_shipment(db, shipment_id)

    if shipment.status_id == ShipmentStatus.PREPARING.value:
        values = _pick(changes, PREPARATION_FIELDS)
        _check_route(values.get("sent_from_id", shipment.sent_from_id), values.get("sent_to_id", shipment.sent_to_id))
        if "sent_from_id" in values:
            await _require_location(db, values["sent_from_id"], "Source")
        if not _empty(values.get("sent_to_id")):
            await _require_location(db, values["sent_to_id"], "Destination")
    elif shipment.status_id == ShipmentStatus.RECEIVING.value:
        values = _pick(changes, RECEPTION_FIELDS)
    else:
        raise ServiceError(
            ErrorCode.INVALID_STATUS,
            f"Shipment {shipment_id} cannot be updated in status {ShipmentStatus(shipment.status_id).name}",
        )

    changed = tracked_copy(shipment, values)
    await db.flush()
    if changed:
        logger.info("shipment.updated", shipment_id=shipment_id, fields=sorted(changed))
    return shipment


async def send_shipment(db: AsyncSession, shipment_id: int, params: dict[str, Any] | None = None) -> Shipment:
    """PREPARING → SHIPPED. Every assigned aliquot becomes IN_TRANSIT as of the send date."""
    shipment = await get_shipment(db, shipment_id)
    _require_status(shipment, ShipmentStatus.PREPARING, "sent")

    shipped = await _shipped_rows(db, shipment_id)
    if not shipped:
        raise ServiceError(ErrorCode.DATA_MISSING, "A shipment cannot be sent if it doesn't contain aliquots")

    values = _pick(params, SEND_FIELDS)
    values["send_date"] = values.get("send_date") or shipment.send_date or datetime.utcnow()

    ref = values.get("ref", shipment.ref)
    sender_id = values.get("sender_id", shipment.sender_id)
    sent_to_id = values.get("sent_to_id", shipment.sent_to_id)
    if _empty(ref):
        raise ServiceError(ErrorCode.DATA_MISSING, "Shipment reference is mandatory for sending a shipment")
    if _empty(sender_id):
        raise ServiceError(ErrorCode.DATA_MISSING, "Sender id is mandatory for sending a shipment")
    if _empty(sent_to_id):
        raise ServiceError(ErrorCode.DATA_MISSING, "Destination is mandatory for sending a shipment")
    _check_route(shipment.sent_from_id, sent_to_id)
    if "sent_to_id" in values:
        await _require_location(db, sent_to_id, "Destination")

    values["status_id"] = ShipmentStatus.SHIPPED.value
    tracked_copy(shipment, values)

    for row in shipped:
        await upsert_aliquot(
            db,
            {
                "aliquot_id": row.aliquot_id,
                "status_id": AliquotStatus.IN_TRANSIT.value,
                "shipment_id": shipment_id,
                "updated": shipment.send_date,
            },
            history_action=AliquotAuditAction.SHIPPED,
        )
    await db.flush()

    logger.info("shipment.sent", shipment_id=shipment_id, aliquots=len(shipped), sender_id=sender_id)
    return shipment


async def start_reception(db: AsyncSession, shipment_id: int) -> Shipment:
    shipment = await get_shipment(db, shipment_id)
    _require_status(shipment, ShipmentStatus.SHIPPED, "put in reception")
    tracked_copy(shipment, {"status_id": ShipmentStatus.RECEIVING.value})
    await db.flush()
    logger.info("shipment.reception_started", shipment_id=shipment_id)
    return shipment


async def finish_reception(db: AsyncSession, shipment_id: int, params: dict[str, Any] | None = None) -> Shipment:
    """
    RECEIVING → RECEIVED.

    Each shipped aliquot moves to the destination. A non-empty reception
    condition makes it REJECTED (keeping the condition), otherwise it is
    AVAILABLE again. The shipment back-reference is cleared either way.
    """
    shipment = await get_shipment(db, shipment_id)
    _require_status(shipment, ShipmentStatus.RECEIVING, "marked as received")

    values = _pick(params, FINISH_RECEPTION_FIELDS)
    reception_date = values.get("reception_date", shipment.reception_date)
    receiver_id = values.get("receiver_id", shipment.receiver_id)
    reception_status_id = values.get("reception_status_id", shipment.reception_status_id)
    if _empty(reception_date):
        raise ServiceError(ErrorCode.DATA_MISSING, "Reception date is mandatory for receiving a shipment")
    if _empty(receiver_id):
        raise ServiceError(ErrorCode.DATA_MISSING, "Receiver id is mandatory for receiving a shipment")
    if _empty(reception_status_id):
        raise ServiceError(ErrorCode.DATA_MISSING, "Reception status is mandatory for receiving a shipment")

    if _empty(values.get("receiver")) and _empty(shipment.receiver):
        values["receiver"] = receiver_id
    values["status_id"] = ShipmentStatus.RECEIVED.value
    tracked_copy(shipment, values)

    rejected = 0
    for row in await _shipped_rows(db, shipment_id):
        condition = None if _empty(row.condition_id) else row.condition_id
        if condition is not None:
            rejected += 1
        await upsert_aliquot(
            db,
            {
                "aliquot_id": row.aliquot_id,
                "location_id": shipment.sent_to_id,
                "status_id": (AliquotStatus.REJECTED if condition else AliquotStatus.AVAILABLE).value,
                "condition_id": condition,
                "shipment_id": None,
                "updated": shipment.reception_date,
            },
            history_action=AliquotAuditAction.RECEIVED,
        )
    await db.flush()

    logger.info("shipment.received", shipment_id=shipment_id, rejected=rejected)
    return shipment


async def delete_shipment(db: AsyncSession, shipment_id: int) -> int:
    """Delete a PREPARING shipment, releasing its aliquots back to AVAILABLE."""
    shipment = await get_shipment(db, shipment_id)
    _require_status(shipment, ShipmentStatus.PREPARING, "deleted")

    assigned = {row.aliquot_id for row in await _shipped_rows(db, shipment_id)}
    result = await db.execute(select(Aliquot.aliquot_id).where(Aliquot.shipment_id == shipment_id))
    assigned.update(result.scalars().all())

    await db.execute(delete(ShippedAliquot).where(ShippedAliquot.shipment_id == shipment_id))
    for aliquot_id in sorted(assigned):
        await upsert_aliquot(
            db,
            {"aliquot_id": aliquot_id, "status_id": AliquotStatus.AVAILABLE.value, "shipment_id": None},
            history_action=AliquotAuditAction.UNASSIGNED,
        )
    await db.delete(shipment)
    await db.flush()

    logger.info("shipment.deleted", shipment_id=shipment_id, released=len(assigned))
    return shipment_id


# ─── Aliquot membership ─────────────────────────────────────────────────────


async def add_aliquot(
    db: AsyncSession,
    shipment_id: int,
    aliquot_id: str,
    patient: dict[str, Any] | None = None,
) -> Aliquot:
    """
    Assign an aliquot to a PREPARING shipment.

    The aliquot must be AVAILABLE at the shipment's source location. An
    aliquot never seen before is registered first when `patient` carries
    patient_id, patient_ref and sample_type.
    """
    shipment = await get_shipment(db, shipment_id)
    _require_status(shipment, ShipmentStatus.PREPARING, "modified")

    if await db.get(ShippedAliquot, (shipment_id, aliquot_id)) is not None:
        return await db.get(Aliquot, aliquot_id)

    aliquot = await db.get(Aliquot, aliquot_id)
    if aliquot is None:
        if not patient or any(_empty(patient.get(k)) for k in ("patient_id", "patient_ref", "sample_type")):
            raise ServiceError(ErrorCode.NOT_FOUND, f"Aliquot {aliquot_id} not found")
        try:
            sample_type = SampleType(patient["sample_type"]).value
        except ValueError as exc:
            raise ServiceError(
                ErrorCode.INVALID_DATA_FORMAT, f"Unknown sample type: {patient['sample_type']}"
            ) from exc
        now = datetime.utcnow()
        aliquot = await upsert_aliquot(
            db,
            {
                "aliquot_id": aliquot_id,
                "patient_id": patient["patient_id"],
                "patient_ref": patient["patient_ref"],
                "sample_type": sample_type,
                "location_id": shipment.sent_from_id,
                "status_id": AliquotStatus.AVAILABLE.value,
                "created": now,
                "updated": now,
            },
            history_action=AliquotAuditAction.CREATED,
        )
    elif aliquot.location_id != shipment.sent_from_id or aliquot.status_id != AliquotStatus.AVAILABLE.value:
        raise ServiceError(
            ErrorCode.INVALID_STATUS,
            f"Aliquot {aliquot_id} is not available at the location the shipment is sent from",
        )

    db.add(ShippedAliquot(shipment_id=shipment_id, aliquot_id=aliquot_id))
    aliquot = await upsert_aliquot(
        db,
        {"aliquot_id": aliquot_id, "status_id": AliquotStatus.IN_TRANSIT.value, "shipment_id": shipment_id},
        history_action=AliquotAuditAction.ASSIGNED,
    )
    logger.info("shipment.aliquot_added", shipment_id=shipment_id, aliquot_id=aliquot_id)
    return aliquot


async def remove_aliquot(db: AsyncSession, shipment_id: int, aliquot_id: str) -> Aliquot:
    shipment = await get_shipment(db, shipment_id)
    _require_status(shipment, ShipmentStatus.PREPARING, "modified")

    row = await db.get(ShippedAliquot, (shipment_id, aliquot_id))
    if row is None:
        raise ServiceError(ErrorCode.NOT_FOUND, f"Aliquot {aliquot_id} is not part of shipment {shipment_id}")
    await db.delete(row)

    aliquot = await upsert_aliquot(
        db,
        {"aliquot_id": aliquot_id, "status_id": AliquotStatus.AVAILABLE.value, "shipment_id": None},
        history_action=AliquotAuditAction.UNASSIGNED,
    )
    logger.info("shipment.aliquot_removed", shipment_id=shipment_id, aliquot_id=aliquot_id)
    return aliquot


async def set_aliquot_condition(
    db: AsyncSession, shipment_id: int, aliquot_id: str, condition_id: str | None
) -> ShippedAliquot:
    """Record the condition an aliquot arrived in (empty = undamaged)."""
    shipment = await get_shipment(db, shipment_id)
    _require_status(shipment, ShipmentStatus.RECEIVING, "inspected")

    row = await db.get(ShippedAliquot, (shipment_id, aliquot_id))
    if row is None:
        raise ServiceError(ErrorCode.NOT_FOUND, f"Aliquot {aliquot_id} is not part of shipment {shipment_id}")
    row.condition_id = None if _empty(condition_id) else condition_id
    await db.flush()
    return row


# ─── Queries ────────────────────────────────────────────────────────────────


async def list_shipments(
    db: AsyncSession,
    active_location_id: int,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    ref: str | None = None,
    sent_from_id: int | None = None,
    sent_to_id: int | None = None,
) -> ShipmentPage:
    """
    Shipments visible from a location: everything it sends, plus whatever is
    sent to it once the sender has stopped preparing.
    """
    query = select(Shipment).where(
        or_(
            Shipment.sent_from_id == active_location_id,
            (Shipment.sent_to_id == active_location_id)
            & (Shipment.status_id != ShipmentStatus.PREPARING.value),
        )
    )
    if ref:
        query = query.where(Shipment.ref.like(f"%{ref}%"))
    if sent_from_id is not None:
        query = query.where(Shipment.sent_from_id == sent_from_id)
    if sent_to_id is not None:
        query = query.where(Shipment.sent_to_id == sent_to_id)
    query = query.order_by(Shipment.shipment_id.desc())

    rows, total = await fetch_with_pagination(db, query, page, page_size)
    return ShipmentPage(rows=rows, total=total, page=page, page_size=page_size)


async def count_shipped_aliquots(db: AsyncSession, shipment_id: int) -> int:
    result = await db.execute(
        select(func.count()).select_from(ShippedAliquot).where(ShippedAliquot.shipment_id == shipment_id)
    )
    return result.scalar() or 0


async def get_shipment_details(db: AsyncSession, shipment_id: int) -> ShipmentDetails:
    shipment = await get_shipment(db, shipment_id)
    result = await db.execute(
        select(ShippedAliquot, Aliquot)
        .join(Aliquot, Aliquot.aliquot_id == ShippedAliquot.aliquot_id)
        .where(ShippedAliquot.shipment_id == shipment_id)
        .order_by(Aliquot.patient_ref, Aliquot.aliquot_id)
    )
    aliquots = []
    for shipped, aliquot in result.all():
        row = aliquot_as_dict(aliquot)
        row["reception_condition_id"] = shipped.condition_id
        row["shipment_task_id"] = shipped.shipment_task_id
        row["reception_task_id"] = shipped.reception_task_id
        aliquots.append(row)

    return ShipmentDetails(
        shipment=shipment,
        sent_from=await db.get(Location, shipment.sent_from_id),
        sent_to=await db.get(Location, shipment.sent_to_id) if shipment.sent_to_id else None,
        aliquots=aliquots,
    )
