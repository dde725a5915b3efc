"""
Aliquot import — register processed samples in the ledger.

Takes the first pending `*.xlsx` from the aliquots drop directory and writes
every new aliquot through the ledger (audited CREATED, status AVAILABLE at
the processing location). Each sample is committed on its own; a sample
whose aliquots are all known already is skipped.

The file is deleted when every sample succeeded and renamed to `.error`
otherwise.
"""

from pathlib import Path

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, get_settings
from core.errors import ErrorCode, ServiceError
from core.responses import BackgroundServiceResponse, BackgroundStatus
from db.models import AliquotAuditAction, AliquotStatus, SampleType
from integrations.aliquot_loader import SampleBatch, load_aliquot_data
from inventory.ledger import find_aliquots_by_ids, upsert_aliquot
from supply_chain.locations import ensure_location

logger = structlog.get_logger()

PROCESSING_SUFFIX = ".processing"
ERROR_SUFFIX = ".error"


class _AlreadyLoaded(Exception):
    pass


def _validate(batch: SampleBatch) -> None:
    if batch.error:
        raise ServiceError(ErrorCode.INVALID_DATA_FORMAT, batch.error)
    for row in batch.aliquots:
        if row.sample_type not in SampleType.__members__:
            raise ServiceError(
                ErrorCode.INVALID_DATA_FORMAT,
                f"Unknown sample type '{row.sample_type}' for aliquot {row.aliquot_id}",
            )
        if not row.location_code:
            raise ServiceError(ErrorCode.DATA_MISSING, f"Location not informed for aliquot {row.aliquot_id}")


async def import_sample(db: AsyncSession, batch: SampleBatch) -> int:
    """Write the sample's new aliquots; returns how many were created."""
    _validate(batch)

    known = {a.aliquot_id for a in await find_aliquots_by_ids(db, [r.aliquot_id for r in batch.aliquots])}
    new_rows = [row for row in batch.aliquots if row.aliquot_id not in known]
    if not new_rows:
        raise _AlreadyLoaded()

    for row in new_rows:
        location = await ensure_location(db, row.location_code, is_lab=True)
        await upsert_aliquot(
            db,
            {
                "aliquot_id": row.aliquot_id,
                "patient_id": batch.patient_id,
                "patient_ref": batch.patient_ref,
                "sample_type": row.sample_type,
                "location_id": location.location_id,
                "status_id": AliquotStatus.AVAILABLE.value,
                "condition_id": None,
                "created": batch.sample_date,
                "updated": batch.sample_date,
            },
            history_action=AliquotAuditAction.CREATED,
        )
    return len(new_rows)


async def run_aliquot_import(
    db: AsyncSession,
    data_dir: str | Path | None = None,
    settings: Settings | None = None,
) -> BackgroundServiceResponse:
    settings = settings or get_settings()
    directory = Path(data_dir or settings.aliquots_data_dir)
    pending = sorted(directory.glob("*.xlsx")) if directory.is_dir() else []
    if not pending:
        msg = "No Aliquots data files (*.xlsx) pending to import."
        logger.info("aliquots.idle")
        return BackgroundServiceResponse(code=BackgroundStatus.IDLE, message=msg)

    source = pending[0]
    response = BackgroundServiceResponse()
    response.add_details(f"Importing aliquots from file {source.name}")

    processing = source.with_name(source.name + PROCESSING_SUFFIX)
    try:
        processing.unlink(missing_ok=True)
        source.rename(processing)
    except OSError as exc:
        msg = f"Error renaming {source} to {processing}. Verify the directory is writable."
        logger.error("aliquots.file_rename_failed", path=str(source), error=str(exc))
        return BackgroundServiceResponse(code=BackgroundStatus.ERROR, message=msg)

    try:
        batches = load_aliquot_data(processing)
    except ServiceError as exc:
        logger.error("aliquots.file_invalid", path=str(processing), error=exc.message)
        processing.rename(source.with_name(source.name + ERROR_SUFFIX))
        response.code = BackgroundStatus.ERROR
        response.message = f"Error loading aliquots file {source.name}: {exc.message}"
        return response

    errors = successful = skipped = 0
    for batch in batches:
        name = batch.display_name
        try:
            created = await import_sample(db, batch)
            await db.commit()
        except _AlreadyLoaded:
            await db.rollback()
            skipped += 1
            response.add_details(f"Sample {name} skipped. Aliquots already loaded")
            logger.info("aliquots.sample_skipped", sample=name)
            continue
        except Exception as exc:
            await db.rollback()
            errors += 1
            message = exc.message if isinstance(exc, ServiceError) else str(exc)
            response.add_details(f"Sample {name}: ERROR {message}")
            logger.error("aliquots.sample_failed", sample=name, error=message)
            continue

        successful += 1
        response.add_details(f"Sample {name}: Imported successfully.")
        logger.info("aliquots.sample_imported", sample=name, aliquots=created)

    counts = f"Errors: {errors}, Successful: {successful}, Skipped: {skipped}, Total samples processed: {len(batches)}"
    if errors:
        response.code = BackgroundStatus.ERROR
        response.message = f"Aliquots import process finished. {counts}"
        processing.rename(source.with_name(source.name + ERROR_SUFFIX))
    else:
        response.code = BackgroundStatus.SUCCESS
        response.message = f"Aliquots import process finished successfully. {counts}"
        processing.unlink(missing_ok=True)

    logger.info("aliquots.file_imported", path=str(source), errors=errors, successful=successful, skipped=skipped)
    return response
