"""
Test Configuration — Fixtures for async DB, test client, the fake eCRF and seed data.

Every test gets its own in-memory SQLite database: the code under test
commits and rolls back freely, so nothing is shared between tests.
"""

from datetime import datetime

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from api.deps import get_current_user, get_db, get_ecrf
from api.main import app
from db.session import Base
from tests.fakes import LAB_ID, OTHER_LAB_ID, SITE_ID, FakeECRFClient

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def test_engine():
    """A fresh in-memory database with every table created."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    session = AsyncSession(test_engine, expire_on_commit=False)
    yield session
    await session.close()


@pytest.fixture
def mock_user():
    """Mock authenticated operator."""
    return {"sub": "user-42", "name": "Test Operator"}


@pytest.fixture
def fake_ecrf():
    return FakeECRFClient()


@pytest.fixture
async def client(test_db, mock_user, fake_ecrf):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    async def override_get_ecrf():
        yield fake_ecrf

    def override_get_current_user():
        return mock_user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ecrf] = override_get_ecrf
    app.dependency_overrides[get_current_user] = override_get_current_user

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def seeded_db(test_db):
    """Two labs and a clinical site, with three aliquots stored at the first lab."""
    from db.models import AliquotAuditAction, AliquotStatus, Location
    from inventory.ledger import upsert_aliquot

    test_db.add_all(
        [
            Location(location_id=LAB_ID, name="Central Biobank", code="ONCOIVD_LAB", is_lab=True),
            Location(location_id=SITE_ID, name="Hospital Site", code="ONCOIVD_SITE", is_clinical_site=True),
            Location(location_id=OTHER_LAB_ID, name="Analysis Lab", code="ONCOIVD_LAB2", is_lab=True),
        ]
    )
    await test_db.flush()

    sampled = datetime(2026, 3, 2, 9, 30)
    aliquots = [
        ("ALQ-001", "CASE-1", "ONCOIVD_001", "PLASMA"),
        ("ALQ-002", "CASE-1", "ONCOIVD_001", "SERUM"),
        ("ALQ-003", "CASE-2", "ONCOIVD_002", "PLASMA"),
    ]
    for aliquot_id, patient_id, patient_ref, sample_type in aliquots:
        await upsert_aliquot(
            test_db,
            {
                "aliquot_id": aliquot_id,
                "patient_id": patient_id,
                "patient_ref": patient_ref,
                "sample_type": sample_type,
                "location_id": LAB_ID,
                "status_id": AliquotStatus.AVAILABLE.value,
                "created": sampled,
                "updated": sampled,
            },
            history_action=AliquotAuditAction.CREATED,
        )
    await test_db.commit()

    return {
        "lab_id": LAB_ID,
        "site_id": SITE_ID,
        "other_lab_id": OTHER_LAB_ID,
        "aliquot_ids": [a[0] for a in aliquots],
    }
