"""
Unit Tests — Aliquot ledger (merge-on-write upserts and the audit trail).
"""

from datetime import datetime

import pytest


@pytest.mark.asyncio
class TestUpsertAliquot:
    async def test_new_aliquot_missing_columns_are_null(self, test_db):
        from db.models import AliquotAuditAction
        from inventory.ledger import aliquot_history, upsert_aliquot

        aliquot = await upsert_aliquot(
            test_db, {"aliquot_id": "ALQ-NEW", "patient_ref": "ONCOIVD_009"}, AliquotAuditAction.CREATED
        )
        await test_db.commit()

        assert aliquot.patient_ref == "ONCOIVD_009"
        assert aliquot.location_id is None
        assert aliquot.status_id is None
        assert aliquot.record_timestamp is not None

        history = await aliquot_history(test_db, "ALQ-NEW")
        assert [h.action for h in history] == ["CREATED"]

    async def test_partial_update_keeps_stored_columns(self, test_db, seeded_db):
        """Columns not supplied keep their stored value."""
        from db.models import AliquotStatus
        from inventory.ledger import get_aliquot, upsert_aliquot

        await upsert_aliquot(test_db, {"aliquot_id": "ALQ-001", "status_id": AliquotStatus.USED.value})
        await test_db.commit()

        aliquot = await get_aliquot(test_db, "ALQ-001")
        assert aliquot.status_id == AliquotStatus.USED.value
        assert aliquot.patient_id == "CASE-1"
        assert aliquot.sample_type == "PLASMA"
        assert aliquot.location_id == seeded_db["lab_id"]

    async def test_explicit_none_clears_a_column(self, test_db, seeded_db):
        from inventory.ledger import get_aliquot, upsert_aliquot

        await upsert_aliquot(test_db, {"aliquot_id": "ALQ-001", "condition_id": "BROKEN"})
        await upsert_aliquot(test_db, {"aliquot_id": "ALQ-001", "condition_id": None})
        await test_db.commit()

        assert (await get_aliquot(test_db, "ALQ-001")).condition_id is None

    async def test_no_action_means_no_history_row(self, test_db, seeded_db):
        from inventory.ledger import aliquot_history, upsert_aliquot

        await upsert_aliquot(test_db, {"aliquot_id": "ALQ-002", "task_id": "T-1"})
        await test_db.commit()

        history = await aliquot_history(test_db, "ALQ-002")
        assert [h.action for h in history] == ["CREATED"]

    async def test_history_snapshots_merged_row(self, test_db, seeded_db):
        """The audit row carries the merged values, not only the supplied ones."""
        from db.models import AliquotAuditAction
        from inventory.ledger import aliquot_history, upsert_aliquot

        await upsert_aliquot(
            test_db, {"aliquot_id": "ALQ-003", "task_id": "TASK-9"}, history_action=AliquotAuditAction.UPDATED
        )
        await test_db.commit()

        history = await aliquot_history(test_db, "ALQ-003")
        assert [h.action for h in history] == ["CREATED", "UPDATED"]
        last = history[-1]
        assert last.task_id == "TASK-9"
        assert last.location_id == seeded_db["lab_id"]
        assert last.status_id == 1

    async def test_two_disjoint_writes_equal_one_combined_write(self, test_db, seeded_db):
        from db.models import ALIQUOT_COLUMNS, AliquotStatus
        from inventory.ledger import aliquot_as_dict, get_aliquot, upsert_aliquot

        identity = {"patient_id": "CASE-7", "patient_ref": "ONCOIVD_007", "sample_type": "SERUM"}
        placement = {
            "location_id": seeded_db["lab_id"],
            "status_id": AliquotStatus.AVAILABLE.value,
            "condition_id": "HEMOLYZED",
            "task_id": "T-77",
            "created": datetime(2026, 2, 1, 9, 30),
            "updated": datetime(2026, 2, 2, 11, 0),
        }

        await upsert_aliquot(test_db, {"aliquot_id": "ALQ-900", **identity})
        await upsert_aliquot(test_db, {"aliquot_id": "ALQ-900", **placement})
        await upsert_aliquot(test_db, {"aliquot_id": "ALQ-901", **identity, **placement})
        await test_db.commit()

        split = aliquot_as_dict(await get_aliquot(test_db, "ALQ-900"))
        combined = aliquot_as_dict(await get_aliquot(test_db, "ALQ-901"))
        for column in ALIQUOT_COLUMNS:
            if column in ("aliquot_id", "record_timestamp"):
                continue
            assert split[column] == combined[column], column

    async def test_missing_id_rejected(self, test_db):
        from inventory.ledger import upsert_aliquot

        with pytest.raises(ValueError):
            await upsert_aliquot(test_db, {"patient_ref": "ONCOIVD_001"})

    async def test_batch_tracking_audits_every_row(self, test_db, seeded_db):
        from db.models import AliquotAuditAction
        from inventory.ledger import aliquot_history, track_aliquots

        written = await track_aliquots(
            test_db,
            [{"aliquot_id": "ALQ-001", "task_id": "T-1"}, {"aliquot_id": "ALQ-002", "task_id": "T-1"}],
            action=AliquotAuditAction.UPDATED,
        )
        await test_db.commit()

        assert [a.aliquot_id for a in written] == ["ALQ-001", "ALQ-002"]
        for aliquot_id in ("ALQ-001", "ALQ-002"):
            actions = [h.action for h in await aliquot_history(test_db, aliquot_id)]
            assert actions == ["CREATED", "UPDATED"]


@pytest.mark.asyncio
class TestLedgerQueries:
    async def test_missing_ids_in_request_order(self, test_db, seeded_db):
        from inventory.ledger import find_aliquots_by_ids, missing_aliquot_ids

        requested = ["ALQ-X", "ALQ-001", "ALQ-Y", "ALQ-001"]
        found = await find_aliquots_by_ids(test_db, requested)

        assert [a.aliquot_id for a in found] == ["ALQ-001"]
        assert missing_aliquot_ids(requested, found) == ["ALQ-X", "ALQ-Y"]

    async def test_find_by_empty_ids(self, test_db):
        from inventory.ledger import find_aliquots_by_ids

        assert await find_aliquots_by_ids(test_db, []) == []

    async def test_get_aliquot_constraints(self, test_db, seeded_db):
        from db.models import AliquotStatus
        from inventory.ledger import get_aliquot

        lab_id = seeded_db["lab_id"]
        assert await get_aliquot(test_db, "ALQ-001", location_id=lab_id) is not None
        assert await get_aliquot(test_db, "ALQ-001", location_id=seeded_db["site_id"]) is None
        assert await get_aliquot(test_db, "ALQ-001", status_id=AliquotStatus.REJECTED.value) is None
        assert await get_aliquot(test_db, "ALQ-001", exclude_ids=["ALQ-001"]) is None

    async def test_shippable_filters_and_order(self, test_db, seeded_db):
        from db.models import AliquotStatus
        from inventory.ledger import list_shippable_aliquots, upsert_aliquot

        await upsert_aliquot(test_db, {"aliquot_id": "ALQ-002", "status_id": AliquotStatus.IN_TRANSIT.value})
        await upsert_aliquot(
            test_db,
            {
                "aliquot_id": "ALQ-000",
                "patient_ref": "ONCOIVD_002",
                "sample_type": "PBMC",
                "location_id": seeded_db["lab_id"],
                "status_id": AliquotStatus.AVAILABLE.value,
                "created": datetime(2026, 3, 1),
            },
        )
        await test_db.commit()

        page = await list_shippable_aliquots(test_db, seeded_db["lab_id"])
        assert [a.aliquot_id for a in page.rows] == ["ALQ-001", "ALQ-000", "ALQ-003"]
        assert page.total == 3

        plasma = await list_shippable_aliquots(test_db, seeded_db["lab_id"], sample_type="PLASMA")
        assert [a.aliquot_id for a in plasma.rows] == ["ALQ-001", "ALQ-003"]

        by_ref = await list_shippable_aliquots(test_db, seeded_db["lab_id"], patient_ref="_002")
        assert {a.aliquot_id for a in by_ref.rows} == {"ALQ-000", "ALQ-003"}

        excluded = await list_shippable_aliquots(test_db, seeded_db["lab_id"], exclude_ids=["ALQ-001"])
        assert "ALQ-001" not in [a.aliquot_id for a in excluded.rows]

    async def test_shippable_pagination(self, test_db, seeded_db):
        from inventory.ledger import list_shippable_aliquots

        first = await list_shippable_aliquots(test_db, seeded_db["lab_id"], page=1, page_size=2)
        second = await list_shippable_aliquots(test_db, seeded_db["lab_id"], page=2, page_size=2)

        assert first.total == second.total == 3
        assert len(first.rows) == 2
        assert len(second.rows) == 1
