"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from core.config import get_settings
from core.logging_config import configure_logging

settings = get_settings()

celery_app = Celery(
    "sampletrack",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.tracking.*": {"queue": "sync"},
        "workers.imports.*": {"queue": "imports"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Every job is a full reconciliation scan, so a missed or overlapping
    # run is picked up by the next one.
    beat_schedule={
        # ── eCRF tracking ───────────────────────────────────────────
        "track-pending-shipments-10m": {
            "task": "workers.tracking.track_pending_shipments",
            "schedule": crontab(minute="*/10"),
            "options": {"queue": "sync"},
        },
        "track-pending-receptions-10m": {
            "task": "workers.tracking.track_pending_receptions",
            "schedule": crontab(minute="5-59/10"),  # Offset from shipments
            "options": {"queue": "sync"},
        },
        # ── Partner files ──────────────────────────────────────────
        "import-redcap-hourly": {
            "task": "workers.imports.import_redcap",
            "schedule": crontab(minute=15),
            "options": {"queue": "imports"},
        },
        "import-aliquots-30m": {
            "task": "workers.imports.import_aliquots",
            "schedule": crontab(minute="*/30"),
            "options": {"queue": "imports"},
        },
    },
)


@worker_process_init.connect
def _setup_worker_logging(**_kwargs) -> None:
    configure_logging()


# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
