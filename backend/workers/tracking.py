"""
eCRF Tracking Workers — mirror shipments and receptions in the eCRF.

Workers:
  1. track_pending_shipments: SHIPMENT_TRACKING task per shipped (shipment, patient)
  2. track_pending_receptions: RECEPTION_TRACKING task per received (shipment, patient)

Both return the background envelope as a dict. Remote errors are never
retried here: the next beat run rescans and picks up what is still pending.
"""

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()


async def run_tracking_pipeline(db, client, kind: str, settings=None) -> dict:
    """Run one tracking pass against an already opened eCRF client."""
    from core.config import get_settings
    from supply_chain.reconciliation import TrackingKind
    from supply_chain.tracking import TrackingContext, track_pending_receptions, track_pending_shipments

    ctx = TrackingContext(client=client, settings=settings or get_settings())
    if TrackingKind(kind) is TrackingKind.SHIPMENT:
        response = await track_pending_shipments(db, ctx)
    else:
        response = await track_pending_receptions(db, ctx)
    return response.to_dict()


def _run(task, kind: str) -> dict:
    import asyncio

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    run_id = task.request.id or "manual"
    logger.info("tracking.run.started", kind=kind, run_id=run_id)

    async def _track():
        from core.config import get_settings
        from integrations.ecrf import get_ecrf_client

        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db, get_ecrf_client(settings) as client:
                result = await run_tracking_pipeline(db, client, kind, settings=settings)
                logger.info("tracking.run.completed", kind=kind, run_id=run_id, code=result["code"])
                return result
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_track())
    except Exception as exc:
        logger.error("tracking.run.failed", kind=kind, run_id=run_id, error=str(exc))
        raise


@celery_app.task(name="workers.tracking.track_pending_shipments", bind=True, acks_late=True)
def track_pending_shipments(self):
    """Scheduled via Celery Beat (every 10 minutes)."""
    return _run(self, "shipment")


@celery_app.task(name="workers.tracking.track_pending_receptions", bind=True, acks_late=True)
def track_pending_receptions(self):
    """Scheduled via Celery Beat (every 10 minutes, offset by 5)."""
    return _run(self, "reception")
