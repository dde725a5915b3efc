"""
SampleTrack Database Models

5 tables for the biospecimen shipment ledger.

Tables:
  1. locations          - Labs and clinical sites participating in shipments
  2. shipments          - Batch transfers of aliquots between two locations
  3. aliquots           - Current state of every physical sample
  4. shipped_aliquots   - Shipment membership + remote tracking back-references
  5. aliquots_history   - Append-only audit trail of every aliquot state change

Status / condition codes are opaque numeric (or short string) identifiers.
The enums below are the directory the application resolves them with.
"""

from datetime import datetime
from enum import Enum, IntEnum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from db.session import Base


class ShipmentStatus(IntEnum):
    PREPARING = 1
    SHIPPED = 2
    RECEIVING = 3
    RECEIVED = 4


class AliquotStatus(IntEnum):
    AVAILABLE = 1
    IN_TRANSIT = 2
    REJECTED = 3
    USED = 4


class SampleType(str, Enum):
    WHOLE_BLOOD = "WHOLE_BLOOD"
    PLASMA = "PLASMA"
    PBMC = "PBMC"
    SERUM = "SERUM"


class AliquotAuditAction(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    ASSIGNED = "ASSIGNED"
    UNASSIGNED = "UNASSIGNED"
    SHIPPED = "SHIPPED"
    RECEIVED = "RECEIVED"
    SHIPMENT_TRACKED = "SHIPMENT_TRACKED"
    RECEPTION_TRACKED = "RECEPTION_TRACKED"


# ─── 1. Locations ───────────────────────────────────────────────────────────


class Location(Base):
    __tablename__ = "locations"

    location_id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    code = Column(String(100), nullable=False, unique=True)
    is_lab = Column(Boolean, nullable=False, default=False)
    is_clinical_site = Column(Boolean, nullable=False, default=False)


# ─── 2. Shipments ───────────────────────────────────────────────────────────


class Shipment(Base):
    __tablename__ = "shipments"

    shipment_id = Column(Integer, primary_key=True, autoincrement=True)
    ref = Column(String(100))
    status_id = Column(Integer, nullable=False, default=ShipmentStatus.PREPARING.value)
    sent_from_id = Column(Integer, ForeignKey("locations.location_id"), nullable=False)
    sent_to_id = Column(Integer, ForeignKey("locations.location_id"))
    sender_id = Column(String(50))
    sender = Column(String(255))
    send_date = Column(DateTime)
    receiver_id = Column(String(50))
    receiver = Column(String(255))
    reception_date = Column(DateTime)
    reception_status_id = Column(Integer)
    reception_comments = Column(Text)
    last_modified = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_shipments_sent_from", "sent_from_id"),
        Index("ix_shipments_sent_to", "sent_to_id"),
        Index("ix_shipments_status", "status_id"),
        CheckConstraint("status_id IN (1, 2, 3, 4)", name="ck_shipment_status"),
    )


# ─── 3. Aliquots ────────────────────────────────────────────────────────────


class Aliquot(Base):
    __tablename__ = "aliquots"

    aliquot_id = Column(String(100), primary_key=True)
    patient_id = Column(String(50))
    patient_ref = Column(String(100))
    sample_type = Column(String(20))
    location_id = Column(Integer, ForeignKey("locations.location_id"))
    status_id = Column(Integer)
    condition_id = Column(String(50))
    task_id = Column(String(50))
    created = Column(DateTime)
    updated = Column(DateTime)
    shipment_id = Column(Integer, ForeignKey("shipments.shipment_id"))
    record_timestamp = Column(DateTime)

    __table_args__ = (
        Index("ix_aliquots_location_status", "location_id", "status_id"),
        Index("ix_aliquots_shipment", "shipment_id"),
        Index("ix_aliquots_patient", "patient_id"),
    )


# Columns of the aliquot row the ledger merges on every write.
ALIQUOT_COLUMNS = (
    "aliquot_id",
    "patient_id",
    "patient_ref",
    "sample_type",
    "location_id",
    "status_id",
    "condition_id",
    "task_id",
    "created",
    "updated",
    "shipment_id",
    "record_timestamp",
)


# ─── 4. Shipped aliquots ────────────────────────────────────────────────────


class ShippedAliquot(Base):
    __tablename__ = "shipped_aliquots"

    shipment_id = Column(Integer, ForeignKey("shipments.shipment_id"), primary_key=True)
    aliquot_id = Column(String(100), ForeignKey("aliquots.aliquot_id"), primary_key=True)
    condition_id = Column(String(50))
    shipment_task_id = Column(String(50))
    reception_task_id = Column(String(50))

    __table_args__ = (Index("ix_shipped_aliquots_aliquot", "aliquot_id"),)


# ─── 5. Aliquot history ─────────────────────────────────────────────────────


class AliquotHistory(Base):
    __tablename__ = "aliquots_history"

    history_id = Column(Integer, primary_key=True, autoincrement=True)
    aliquot_id = Column(String(100), nullable=False)
    task_id = Column(String(50))
    action = Column(String(30), nullable=False)
    location_id = Column(Integer)
    status_id = Column(Integer)
    condition_id = Column(String(50))
    updated = Column(DateTime)
    shipment_id = Column(Integer)
    record_timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_aliquots_history_aliquot", "aliquot_id", "record_timestamp"),)
