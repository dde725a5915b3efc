"""
Initial schema - shipment ledger (5 tables)

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # 1. Locations
    op.create_table(
        "locations",
        sa.Column("location_id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(100), nullable=False, unique=True),
        sa.Column("is_lab", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_clinical_site", sa.Boolean, nullable=False, server_default=sa.false()),
    )

    # 2. Shipments
    op.create_table(
        "shipments",
        sa.Column("shipment_id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("ref", sa.String(100)),
        sa.Column("status_id", sa.Integer, nullable=False, server_default="1"),
        sa.Column("sent_from_id", sa.Integer, sa.ForeignKey("locations.location_id"), nullable=False),
        sa.Column("sent_to_id", sa.Integer, sa.ForeignKey("locations.location_id")),
        sa.Column("sender_id", sa.String(50)),
        sa.Column("sender", sa.String(255)),
        sa.Column("send_date", sa.DateTime),
        sa.Column("receiver_id", sa.String(50)),
        sa.Column("receiver", sa.String(255)),
        sa.Column("reception_date", sa.DateTime),
        sa.Column("reception_status_id", sa.Integer),
        sa.Column("reception_comments", sa.Text),
        sa.Column("last_modified", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("status_id IN (1, 2, 3, 4)", name="ck_shipment_status"),
    )
    op.create_index("ix_shipments_sent_from", "shipments", ["sent_from_id"])
    op.create_index("ix_shipments_sent_to", "shipments", ["sent_to_id"])
    op.create_index("ix_shipments_status", "shipments", ["status_id"])

    # 3. Aliquots
    op.create_table(
        "aliquots",
        sa.Column("aliquot_id", sa.String(100), primary_key=True),
        sa.Column("patient_id", sa.String(50)),
        sa.Column("patient_ref", sa.String(100)),
        sa.Column("sample_type", sa.String(20)),
        sa.Column("location_id", sa.Integer, sa.ForeignKey("locations.location_id")),
        sa.Column("status_id", sa.Integer),
        sa.Column("condition_id", sa.String(50)),
        sa.Column("task_id", sa.String(50)),
        sa.Column("created", sa.DateTime),
        sa.Column("updated", sa.DateTime),
        sa.Column("shipment_id", sa.Integer, sa.ForeignKey("shipments.shipment_id")),
        sa.Column("record_timestamp", sa.DateTime),
    )
    op.create_index("ix_aliquots_location_status", "aliquots", ["location_id", "status_id"])
    op.create_index("ix_aliquots_shipment", "aliquots", ["shipment_id"])
    op.create_index("ix_aliquots_patient", "aliquots", ["patient_id"])

    # 4. Shipped aliquots
    op.create_table(
        "shipped_aliquots",
        sa.Column("shipment_id", sa.Integer, sa.ForeignKey("shipments.shipment_id"), primary_key=True),
        sa.Column("aliquot_id", sa.String(100), sa.ForeignKey("aliquots.aliquot_id"), primary_key=True),
        sa.Column("condition_id", sa.String(50)),
        sa.Column("shipment_task_id", sa.String(50)),
        sa.Column("reception_task_id", sa.String(50)),
    )
    op.create_index("ix_shipped_aliquots_aliquot", "shipped_aliquots", ["aliquot_id"])

    # 5. Aliquot history (append-only)
    op.create_table(
        "aliquots_history",
        sa.Column("history_id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("aliquot_id", sa.String(100), nullable=False),
        sa.Column("task_id", sa.String(50)),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("location_id", sa.Integer),
        sa.Column("status_id", sa.Integer),
        sa.Column("condition_id", sa.String(50)),
        sa.Column("updated", sa.DateTime),
        sa.Column("shipment_id", sa.Integer),
        sa.Column("record_timestamp", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_aliquots_history_aliquot", "aliquots_history", ["aliquot_id", "record_timestamp"])


def downgrade() -> None:
    tables = [
        "aliquots_history",
        "shipped_aliquots",
        "aliquots",
        "shipments",
        "locations",
    ]
    for table in tables:
        op.drop_table(table)
