"""
Remote Tracking Synchronizer — mirror shipments and receptions in the eCRF.

For every shipment the scanner reports, each patient is handled on its own:

  1. locate the patient's admission and reuse (or create) the tracking task
     for this shipment
  2. push the info form, the aliquot table and one status form per sample type
  3. write the task id back into the patient's shipped_aliquots rows that are
     still untracked, with one history row per aliquot actually updated

A failure for one patient is rolled back, counted and reported as a detail
line; its siblings continue. A task created during a failed attempt is
deleted best-effort. Nothing is retried in-invocation: the next scheduled
run picks up whatever is still untracked.
"""

from dataclasses import dataclass, field
from datetime import datetime

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ErrorCode, ServiceError
from core.responses import BackgroundServiceResponse, BackgroundStatus
from db.models import AliquotAuditAction, ShippedAliquot
from integrations.ecrf.context import ECRFContext
from integrations.ecrf.models import RemoteTask
from integrations.ecrf.questions import Question, QuestionType, question_for
from inventory.ledger import upsert_aliquot
from supply_chain.locations import list_locations
from supply_chain.reconciliation import (
    PendingAliquot,
    PendingPatient,
    ShipmentSnapshot,
    TrackingKind,
    UntrackedShipment,
    pending_aliquots,
    untracked_receptions,
    untracked_shipments,
)

logger = structlog.get_logger()

# ─── Remote layout ──────────────────────────────────────────────────────────

TRACKING_TASKS = {
    TrackingKind.SHIPMENT: "SHIPMENT_TRACKING",
    TrackingKind.RECEPTION: "RECEPTION_TRACKING",
}
INFO_FORMS = {
    TrackingKind.SHIPMENT: "SHIPMENT_INFO",
    TrackingKind.RECEPTION: "RECEPTION_INFO",
}
ALIQUOTS_FORM = "SHIPPED_ALIQUOTS"
ALIQUOTS_TABLE = "ALIQUOTS_TABLE"
SHIPMENT_ID_ITEM = "SHIPMENT_ID"

ALIQUOT_STATUS = {
    TrackingKind.SHIPMENT: "IN_TRANSIT",
    TrackingKind.RECEPTION: "RECEIVED",
}

WRITE_BACK = {
    TrackingKind.SHIPMENT: (ShippedAliquot.shipment_task_id, AliquotAuditAction.SHIPMENT_TRACKED),
    TrackingKind.RECEPTION: (ShippedAliquot.reception_task_id, AliquotAuditAction.RECEPTION_TRACKED),
}

IDLE_MESSAGES = {
    TrackingKind.SHIPMENT: "No shipments pending to be tracked.",
    TrackingKind.RECEPTION: "No shipment receptions pending be tracked.",
}
SUMMARY_LABELS = {
    TrackingKind.SHIPMENT: "Shipments",
    TrackingKind.RECEPTION: "Shipment receptions",
}


def status_form_code(sample_type: str) -> str:
    return f"{sample_type}_STATUS_FORM"


# ─── Context & result ───────────────────────────────────────────────────────


@dataclass
class TrackingContext(ECRFContext):
    """Invocation-scoped state for one tracking run."""

    location_codes: dict[int, str] = field(default_factory=dict, init=False, repr=False)


@dataclass
class TrackingResult:
    kind: TrackingKind
    successful: int = 0
    failed: int = 0
    no_pending: int = 0
    details: list[str] = field(default_factory=list)

    @property
    def scanned(self) -> int:
        return self.successful + self.failed + self.no_pending

    def to_response(self) -> BackgroundServiceResponse:
        if self.scanned == 0:
            return BackgroundServiceResponse(code=BackgroundStatus.IDLE, message=IDLE_MESSAGES[self.kind])

        if self.failed:
            code = BackgroundStatus.ERROR
        elif self.successful:
            code = BackgroundStatus.SUCCESS
        else:
            code = BackgroundStatus.IDLE
        message = f"{SUMMARY_LABELS[self.kind]} updated successfully: {self.successful}, Errors: {self.failed}"
        return BackgroundServiceResponse(code=code, message=message, details=list(self.details))


class _NothingPending(Exception):
    """Internal signal: the patient had no aliquots left to track."""


# ─── Entry points ───────────────────────────────────────────────────────────


async def track_pending_shipments(db: AsyncSession, ctx: TrackingContext) -> BackgroundServiceResponse:
    """Create a SHIPMENT_TRACKING task for every (shipment, patient) not yet tracked."""
    scanned = await untracked_shipments(db)
    result = await _track(db, ctx, TrackingKind.SHIPMENT, scanned)
    return result.to_response()


async def track_pending_receptions(db: AsyncSession, ctx: TrackingContext) -> BackgroundServiceResponse:
    """Create a RECEPTION_TRACKING task for every received (shipment, patient) not yet tracked."""
    scanned = await untracked_receptions(db)
    result = await _track(db, ctx, TrackingKind.RECEPTION, scanned)
    return result.to_response()


async def _track(
    db: AsyncSession,
    ctx: TrackingContext,
    kind: TrackingKind,
    scanned: list[UntrackedShipment],
) -> TrackingResult:
    result = TrackingResult(kind=kind)
    if not scanned:
        await db.commit()
        logger.info("tracking.idle", kind=kind.value)
        return result

    ctx.location_codes = {loc.location_id: loc.code for loc in await list_locations(db, labs_only=False)}
    await db.commit()

    for entry in scanned:
        shipment = entry.shipment
        ok = errors = skipped = 0
        for patient in entry.patients:
            try:
                await _track_patient(db, ctx, kind, shipment, patient)
            except _NothingPending:
                skipped += 1
                continue
            except Exception as exc:
                errors += 1
                message = exc.message if isinstance(exc, ServiceError) else str(exc)
                logger.error(
                    "tracking.patient_failed",
                    kind=kind.value,
                    shipment_id=shipment.shipment_id,
                    patient_ref=patient.patient_ref,
                    error=message,
                )
                result.details.append(
                    f"ERROR Patient {patient.patient_ref}: Shipment with ID {shipment.shipment_id} "
                    f"failed to be tracked in eCRF: {message}"
                )
                continue
            ok += 1
            result.details.append(
                f"Patient {patient.patient_ref}: Shipment with ID {shipment.shipment_id} tracked successfully in eCRF"
            )

        if errors:
            result.failed += 1
        elif ok:
            result.successful += 1
        else:
            result.no_pending += 1
        if ok or errors:
            result.details.append(
                f"SHIPMENT {shipment.shipment_id} updated: patients success: {ok}, errors: {errors}"
            )

    logger.info(
        "tracking.finished",
        kind=kind.value,
        successful=result.successful,
        failed=result.failed,
        no_pending=result.no_pending,
    )
    return result


# ─── Per patient ────────────────────────────────────────────────────────────


async def _track_patient(
    db: AsyncSession,
    ctx: TrackingContext,
    kind: TrackingKind,
    shipment: ShipmentSnapshot,
    patient: PendingPatient,
) -> None:
    aliquots = await pending_aliquots(
        db, kind, shipment.shipment_id, patient.patient_id, shipment_task_id=patient.tracking_task_id
    )
    # Remote calls run outside the local transaction
    await db.commit()
    if not aliquots:
        logger.debug("tracking.nothing_pending", shipment_id=shipment.shipment_id, patient_id=patient.patient_id)
        raise _NothingPending()

    admission_id = await _admission_id(ctx, kind, patient)
    task, created = await _find_or_create_task(ctx, kind, admission_id, shipment.shipment_id)

    try:
        await _push_forms(ctx, kind, task, shipment, aliquots)
        updated = await _write_back(db, kind, shipment.shipment_id, [a.aliquot_id for a in aliquots], task.task_id)
        await db.commit()
    except Exception:
        await db.rollback()
        if created:
            await _delete_task(ctx, task.task_id)
        raise

    if not updated:
        # A concurrent run tracked these aliquots first
        if created:
            await _delete_task(ctx, task.task_id)
        raise _NothingPending()

    logger.info(
        "tracking.patient_tracked",
        kind=kind.value,
        shipment_id=shipment.shipment_id,
        patient_ref=patient.patient_ref,
        task_id=task.task_id,
        aliquots=len(updated),
        reused=not created,
    )


async def _admission_id(ctx: TrackingContext, kind: TrackingKind, patient: PendingPatient) -> str:
    if kind is TrackingKind.RECEPTION:
        shipment_task = await ctx.client.task_get(patient.tracking_task_id)
        return shipment_task.admission_id

    admission = await ctx.find_admission(patient.patient_id)
    if admission is None:
        raise ServiceError(
            ErrorCode.NOT_FOUND,
            f"The patient has no admission in the project {ctx.project_code}",
        )
    return admission.admission_id


async def _find_or_create_task(
    ctx: TrackingContext,
    kind: TrackingKind,
    admission_id: str,
    shipment_id: int,
) -> tuple[RemoteTask, bool]:
    """Reuse the tracking task already recorded for this shipment, else insert one."""
    task_code = TRACKING_TASKS[kind]
    info_form = INFO_FORMS[kind]
    for candidate in await ctx.client.task_list(admission_id, task_code):
        task = await ctx.client.task_get(candidate.task_id)
        form = task.find_form(info_form)
        if form is None:
            continue
        summary = await ctx.client.form_get_summary(form.form_id)
        question = summary.find_question(SHIPMENT_ID_ITEM)
        if question is not None and question.answer == str(shipment_id):
            logger.debug("tracking.task_reused", task_id=task.task_id, shipment_id=shipment_id)
            return task, False

    task_id = await ctx.client.task_insert_by_task_code(admission_id, task_code)
    try:
        task = await ctx.client.task_get(task_id)
    except Exception:
        await _delete_task(ctx, task_id)
        raise
    logger.info("tracking.task_created", kind=kind.value, task_id=task_id, shipment_id=shipment_id)
    return task, True


async def _delete_task(ctx: TrackingContext, task_id: str) -> None:
    try:
        await ctx.client.task_delete(task_id)
    except Exception as exc:
        logger.warning("tracking.compensation_failed", task_id=task_id, error=str(exc))
    else:
        logger.info("tracking.task_deleted", task_id=task_id)


# ─── Remote forms ───────────────────────────────────────────────────────────


async def _form_id(ctx: TrackingContext, task: RemoteTask, form_code: str) -> str:
    form = task.find_form(form_code)
    if form is not None:
        return form.form_id
    return await ctx.client.form_insert(task.task_id, form_code)


def _date(value: datetime | None) -> str | None:
    return value.strftime("%Y-%m-%d") if value else None


def _info_questions(ctx: TrackingContext, kind: TrackingKind, shipment: ShipmentSnapshot) -> list[Question]:
    codes = ctx.location_codes
    questions = [
        question_for(QuestionType.NUMERICAL, SHIPMENT_ID_ITEM, shipment.shipment_id),
        question_for(QuestionType.TEXT, "SHIPMENT_REF", shipment.ref),
        question_for(QuestionType.TEXT, "SENT_FROM", codes.get(shipment.sent_from_id)),
        question_for(QuestionType.TEXT, "SENT_TO", codes.get(shipment.sent_to_id)),
        question_for(QuestionType.DATE, "SEND_DATE", _date(shipment.send_date)),
        question_for(QuestionType.TEXT, "SENDER", shipment.sender),
    ]
    if kind is TrackingKind.RECEPTION:
        questions += [
            question_for(QuestionType.DATE, "RECEPTION_DATE", _date(shipment.reception_date)),
            question_for(QuestionType.TEXT, "RECEIVER", shipment.receiver),
            question_for(QuestionType.TEXT, "RECEPTION_STATUS", shipment.reception_status_id),
            question_for(QuestionType.TEXT_AREA, "RECEPTION_COMMENTS", shipment.reception_comments),
        ]
    return questions


def _aliquot_rows(kind: TrackingKind, aliquots: list[PendingAliquot]) -> list[Question]:
    questions: list[Question] = []
    for row, aliquot in enumerate(aliquots, start=1):
        questions.append(
            question_for(QuestionType.TEXT, "ALIQUOT_ID", aliquot.aliquot_id, array_ref=ALIQUOTS_TABLE, row=row)
        )
        questions.append(
            question_for(QuestionType.TEXT, "SAMPLE_TYPE", aliquot.sample_type, array_ref=ALIQUOTS_TABLE, row=row)
        )
        if kind is TrackingKind.RECEPTION:
            questions.append(
                question_for(
                    QuestionType.TEXT, "ALIQUOT_CONDITION", aliquot.condition_id, array_ref=ALIQUOTS_TABLE, row=row
                )
            )
    return questions


def _status_questions(
    ctx: TrackingContext,
    kind: TrackingKind,
    shipment: ShipmentSnapshot,
    aliquots: list[PendingAliquot],
) -> list[Question]:
    location_id = shipment.sent_to_id if kind is TrackingKind.RECEPTION else shipment.sent_from_id
    questions = [
        question_for(QuestionType.VERTICAL_RADIO, "ALIQUOT_STATUS", ALIQUOT_STATUS[kind]),
        question_for(QuestionType.TEXT, "ALIQUOT_LOCATION", ctx.location_codes.get(location_id)),
        question_for(QuestionType.NUMERICAL, "NUM_ALIQUOTS", len(aliquots)),
    ]
    if kind is TrackingKind.RECEPTION:
        rejected = sum(1 for a in aliquots if a.condition_id)
        questions.append(question_for(QuestionType.NUMERICAL, "NUM_REJECTED", rejected))
    return questions


async def _push_forms(
    ctx: TrackingContext,
    kind: TrackingKind,
    task: RemoteTask,
    shipment: ShipmentSnapshot,
    aliquots: list[PendingAliquot],
) -> None:
    client = ctx.client

    info_form_id = await _form_id(ctx, task, INFO_FORMS[kind])
    await client.form_set_all_answers(info_form_id, _info_questions(ctx, kind, shipment), True)

    aliquots_form_id = await _form_id(ctx, task, ALIQUOTS_FORM)
    await client.form_set_all_answers(aliquots_form_id, _aliquot_rows(kind, aliquots), True)

    by_type: dict[str, list[PendingAliquot]] = {}
    for aliquot in aliquots:
        if aliquot.sample_type:
            by_type.setdefault(aliquot.sample_type, []).append(aliquot)
    for sample_type, group in by_type.items():
        form_id = await _form_id(ctx, task, status_form_code(sample_type))
        await client.form_set_all_answers(form_id, _status_questions(ctx, kind, shipment, group), True)


# ─── Local write-back ───────────────────────────────────────────────────────


async def _write_back(
    db: AsyncSession,
    kind: TrackingKind,
    shipment_id: int,
    aliquot_ids: list[str],
    task_id: str,
) -> list[str]:
    """Set the task id on rows still untracked; audit exactly the rows updated."""
    column, action = WRITE_BACK[kind]
    updated: list[str] = []
    for aliquot_id in aliquot_ids:
        result = await db.execute(
            update(ShippedAliquot)
            .where(
                ShippedAliquot.shipment_id == shipment_id,
                ShippedAliquot.aliquot_id == aliquot_id,
                column.is_(None),
            )
            .values({column.key: task_id})
        )
        if result.rowcount != 1:
            continue
        await upsert_aliquot(db, {"aliquot_id": aliquot_id, "task_id": task_id}, history_action=action)
        updated.append(aliquot_id)
    return updated
