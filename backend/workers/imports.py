"""
Partner File Import Workers.

Workers:
  1. import_redcap: first pending RedCAP export (*.csv) → eCRF patient data
  2. import_aliquots: first pending processed-samples sheet (*.xlsx) → aliquot ledger
"""

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(name="workers.imports.import_redcap", bind=True, acks_late=True)
def import_redcap(self, data_dir: str | None = None):
    """Scheduled via Celery Beat (hourly)."""
    import asyncio

    run_id = self.request.id or "manual"
    logger.info("imports.redcap.started", run_id=run_id)

    async def _import():
        from core.config import get_settings
        from integrations.ecrf import get_ecrf_client
        from integrations.redcap_sync import ImportContext, run_redcap_import

        settings = get_settings()
        async with get_ecrf_client(settings) as client:
            ctx = ImportContext(client=client, settings=settings)
            response = await run_redcap_import(ctx, data_dir)
        return response.to_dict()

    try:
        result = asyncio.run(_import())
    except Exception as exc:
        logger.error("imports.redcap.failed", run_id=run_id, error=str(exc))
        raise
    logger.info("imports.redcap.completed", run_id=run_id, code=result["code"])
    return result


@celery_app.task(name="workers.imports.import_aliquots", bind=True, acks_late=True)
def import_aliquots(self, data_dir: str | None = None):
    """Scheduled via Celery Beat (every 30 minutes)."""
    import asyncio

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    run_id = self.request.id or "manual"
    logger.info("imports.aliquots.started", run_id=run_id)

    async def _import():
        from core.config import get_settings
        from inventory.aliquot_import import run_aliquot_import

        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                response = await run_aliquot_import(db, data_dir, settings=settings)
                return response.to_dict()
        finally:
            await engine.dispose()

    try:
        result = asyncio.run(_import())
    except Exception as exc:
        logger.error("imports.aliquots.failed", run_id=run_id, error=str(exc))
        raise
    logger.info("imports.aliquots.completed", run_id=run_id, code=result["code"])
    return result
