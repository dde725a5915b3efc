"""
Reconciliation Scanner — what still has to be mirrored in the eCRF.

Both scans are pure set differences over the ledger:

  untracked shipments:  shipment SHIPPED or RECEIVED, shipped aliquot with no
                        shipment-tracking task id yet
  untracked receptions: shipment RECEIVED, shipment-tracking task id set,
                        no reception-tracking task id yet

Nothing here writes. Results are detached snapshots (plain dataclasses), so
they stay valid across the per-patient commits and rollbacks of the
synchronizer.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Aliquot, Shipment, ShipmentStatus, ShippedAliquot


class TrackingKind(str, Enum):
    SHIPMENT = "shipment"
    RECEPTION = "reception"


@dataclass(frozen=True)
class ShipmentSnapshot:
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

    @classmethod
    def of(cls, shipment: Shipment) -> "ShipmentSnapshot":
        return cls(
            shipment_id=shipment.shipment_id,
            ref=shipment.ref,
            status_id=shipment.status_id,
            sent_from_id=shipment.sent_from_id,
            sent_to_id=shipment.sent_to_id,
            sender_id=shipment.sender_id,
            sender=shipment.sender,
            send_date=shipment.send_date,
            receiver_id=shipment.receiver_id,
            receiver=shipment.receiver,
            reception_date=shipment.reception_date,
            reception_status_id=shipment.reception_status_id,
            reception_comments=shipment.reception_comments,
        )


@dataclass(frozen=True)
class PendingPatient:
    patient_id: str
    patient_ref: str | None
    tracking_task_id: str | None = None  # shipment-tracking task, reception scans only


@dataclass
class UntrackedShipment:
    shipment: ShipmentSnapshot
    patients: list[PendingPatient] = field(default_factory=list)


@dataclass(frozen=True)
class PendingAliquot:
    aliquot_id: str
    sample_type: str | None
    condition_id: str | None
    shipment_task_id: str | None


async def _scan(db: AsyncSession, query) -> list[UntrackedShipment]:
    result = await db.execute(query)
    grouped: dict[int, UntrackedShipment] = {}
    for shipment, patient_id, patient_ref, task_id in result.all():
        entry = grouped.get(shipment.shipment_id)
        if entry is None:
            entry = grouped[shipment.shipment_id] = UntrackedShipment(shipment=ShipmentSnapshot.of(shipment))
        entry.patients.append(PendingPatient(patient_id=patient_id, patient_ref=patient_ref, tracking_task_id=task_id))
    return list(grouped.values())


async def untracked_shipments(db: AsyncSession) -> list[UntrackedShipment]:
    """Shipments with patients not yet tracked, by send date, shipment id, then patient id."""
    query = (
        select(Shipment, Aliquot.patient_id, Aliquot.patient_ref, ShippedAliquot.shipment_task_id)
        .join(ShippedAliquot, ShippedAliquot.shipment_id == Shipment.shipment_id)
        .join(Aliquot, Aliquot.aliquot_id == ShippedAliquot.aliquot_id)
        .where(
            Shipment.status_id.in_([ShipmentStatus.SHIPPED.value, ShipmentStatus.RECEIVED.value]),
            ShippedAliquot.shipment_task_id.is_(None),
        )
        .group_by(Shipment.shipment_id, Aliquot.patient_id, Aliquot.patient_ref, ShippedAliquot.shipment_task_id)
        .order_by(Shipment.send_date, Shipment.shipment_id, Aliquot.patient_id)
    )
    return await _scan(db, query)


async def untracked_receptions(db: AsyncSession) -> list[UntrackedShipment]:
    """Received shipments whose patients were tracked as shipped but not as received."""
    query = (
        select(Shipment, Aliquot.patient_id, Aliquot.patient_ref, ShippedAliquot.shipment_task_id)
        .join(ShippedAliquot, ShippedAliquot.shipment_id == Shipment.shipment_id)
        .join(Aliquot, Aliquot.aliquot_id == ShippedAliquot.aliquot_id)
        .where(
            Shipment.status_id == ShipmentStatus.RECEIVED.value,
            ShippedAliquot.shipment_task_id.isnot(None),
            ShippedAliquot.reception_task_id.is_(None),
        )
        .group_by(Shipment.shipment_id, Aliquot.patient_id, Aliquot.patient_ref, ShippedAliquot.shipment_task_id)
        .order_by(Shipment.reception_date, Shipment.shipment_id, Aliquot.patient_id, ShippedAliquot.shipment_task_id)
    )
    return await _scan(db, query)


async def pending_aliquots(
    db: AsyncSession,
    kind: TrackingKind,
    shipment_id: int,
    patient_id: str,
    shipment_task_id: str | None = None,
) -> list[PendingAliquot]:
    """The aliquots of one patient in one shipment still waiting for `kind` tracking."""
    query = (
        select(Aliquot.aliquot_id, Aliquot.sample_type, ShippedAliquot.condition_id, ShippedAliquot.shipment_task_id)
        .join(ShippedAliquot, ShippedAliquot.aliquot_id == Aliquot.aliquot_id)
        .where(ShippedAliquot.shipment_id == shipment_id, Aliquot.patient_id == patient_id)
        .order_by(Aliquot.aliquot_id)
    )
    if kind is TrackingKind.SHIPMENT:
        query = query.where(ShippedAliquot.shipment_task_id.is_(None))
    else:
        query = query.where(ShippedAliquot.shipment_task_id.isnot(None), ShippedAliquot.reception_task_id.is_(None))
        if shipment_task_id is not None:
            query = query.where(ShippedAliquot.shipment_task_id == shipment_task_id)

    result = await db.execute(query)
    return [
        PendingAliquot(aliquot_id=a_id, sample_type=s_type, condition_id=cond, shipment_task_id=task_id)
        for a_id, s_type, cond, task_id in result.all()
    ]


async def pending_aliquot_ids(
    db: AsyncSession,
    kind: TrackingKind,
    shipment_id: int,
    patient_id: str,
    shipment_task_id: str | None = None,
) -> list[str]:
    return [a.aliquot_id for a in await pending_aliquots(db, kind, shipment_id, patient_id, shipment_task_id)]
