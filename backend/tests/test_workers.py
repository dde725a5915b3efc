import asyncio

from sqlalchemy.ext.asyncio import create_async_engine

from core.config import Settings
from db.session import Base
from tests.fakes import FakeECRFClient


def _file_db(tmp_path) -> str:
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}"

    async def _create() -> None:
        engine = create_async_engine(db_url, echo=False)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()

    asyncio.run(_create())
    return db_url


def test_beat_schedule_points_at_registered_tasks():
    import workers.imports  # noqa: F401
    import workers.tracking  # noqa: F401
    from workers.celery_app import celery_app

    scheduled = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
    assert scheduled == {
        "workers.tracking.track_pending_shipments",
        "workers.tracking.track_pending_receptions",
        "workers.imports.import_redcap",
        "workers.imports.import_aliquots",
    }
    assert scheduled <= set(celery_app.tasks)


def test_tracking_task_runs_one_pass(tmp_path, monkeypatch):
    from workers.tracking import track_pending_shipments

    db_url = _file_db(tmp_path)
    fake = FakeECRFClient()
    monkeypatch.setattr("core.config.get_settings", lambda: Settings(database_url=db_url))
    monkeypatch.setattr("integrations.ecrf.get_ecrf_client", lambda settings=None: fake)

    result = track_pending_shipments.apply().get()

    assert result == {"code": "idle", "message": "No shipments pending to be tracked.", "details": []}


def test_aliquot_import_task_without_files(tmp_path, monkeypatch):
    from workers.imports import import_aliquots

    db_url = _file_db(tmp_path)
    drop_dir = tmp_path / "aliquots"
    drop_dir.mkdir()
    monkeypatch.setattr("core.config.get_settings", lambda: Settings(database_url=db_url))

    result = import_aliquots.apply(kwargs={"data_dir": str(drop_dir)}).get()

    assert result["code"] == "idle"


def test_redcap_import_task_without_files(tmp_path, monkeypatch):
    from workers.imports import import_redcap

    fake = FakeECRFClient()
    monkeypatch.setattr("core.config.get_settings", lambda: Settings(redcap_data_dir=str(tmp_path)))
    monkeypatch.setattr("integrations.ecrf.get_ecrf_client", lambda settings=None: fake)

    result = import_redcap.apply().get()

    assert result["code"] == "idle"
    assert result["message"] == "No RedCAP data files (*.csv) pending to import."
