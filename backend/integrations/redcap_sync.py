"""
RedCAP → eCRF patient sync.

Pushes the normalized records produced by `redcap_loader` into the eCRF,
one patient at a time. The import stops at the first patient that fails and
keeps the `.processing` file so the operator can inspect it.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

import structlog

from core.errors import ErrorCode, ServiceError
from core.responses import BackgroundServiceResponse, BackgroundStatus
from integrations.ecrf.context import ECRFContext
from integrations.ecrf.models import ContactData, RemoteAdmission, RemoteCase, RemoteTask
from integrations.ecrf.questions import Question, QuestionType, question_for
from integrations.field_mapping import (
    array_key,
    form_codes,
    form_complete_flag,
    form_is_closed,
    form_mappings,
    get_field,
    task_codes,
    task_data_is_empty,
)
from integrations.redcap_loader import PatientRecord, load_redcap_data

logger = structlog.get_logger()

PARTICIPANT_REF = "PARTICIPANT_REF"
PROCESSING_SUFFIX = ".processing"


@dataclass
class ImportContext(ECRFContext):
    """Invocation-scoped state for one RedCAP import."""

    def today(self) -> datetime:
        return datetime.now(ZoneInfo(self.settings.default_timezone))


def _gender(value: Any, default: str = "") -> str:
    code = str(value).strip() if value is not None else ""
    if code == "1":
        return "M"
    if code == "2":
        return "F"
    return default


# ─── Patient, admission ─────────────────────────────────────────────────────


async def find_patient(ctx: ImportContext, patient_ref: str) -> RemoteCase | None:
    cases = await ctx.client.case_search(patient_ref)
    if not cases:
        return None
    if len(cases) > 1:
        raise ServiceError(
            ErrorCode.AMBIGUOUS,
            f"Multiple patients found with reference {patient_ref}. Please specify a unique patient.",
        )
    return cases[0]


async def create_patient(ctx: ImportContext, patient_ref: str, data: PatientRecord) -> RemoteCase:
    contact = ContactData(
        birthdate=data.get("birthdate") or None,
        gender=_gender(data.get("gender"), default="F"),
        identifiers={PARTICIPANT_REF: patient_ref},
    )
    case = await ctx.client.case_insert(contact)
    if case is None:
        raise ServiceError(ErrorCode.DATA_MISSING, f"Unable to create patient with reference {patient_ref}")
    logger.info("redcap.patient_created", patient_ref=patient_ref, case_id=case.case_id)
    return case


async def update_patient_contact(ctx: ImportContext, case: RemoteCase, data: PatientRecord) -> bool:
    """Push birthdate/gender only when they differ from the eCRF copy."""
    birthdate = data.get("birthdate") or None
    gender = _gender(data.get("gender"))
    if (case.birthdate or None) == birthdate and case.gender == gender:
        return False

    await ctx.client.case_set_contact(case.case_id, ContactData(birthdate=birthdate, gender=gender))
    logger.info("redcap.contact_updated", case_id=case.case_id)
    return True


async def ensure_admission(ctx: ImportContext, case_id: str) -> RemoteAdmission:
    admission = await ctx.find_admission(case_id)
    if admission is not None:
        return admission

    subscription_id = await ctx.subscription_id()
    admission = await ctx.client.admission_create(case_id, subscription_id, ctx.today())
    ctx.remember_admission(admission)
    logger.info("redcap.admission_created", case_id=case_id, admission_id=admission.admission_id)
    return admission


# ─── Tasks, forms ───────────────────────────────────────────────────────────


async def _ensure_task(ctx: ImportContext, admission_id: str, task_code: str) -> RemoteTask:
    tasks = await ctx.client.task_list(admission_id, task_code)
    if tasks:
        return await ctx.client.task_get(tasks[0].task_id)
    task_id = await ctx.client.task_insert_by_task_code(admission_id, task_code)
    return await ctx.client.task_get(task_id)


async def _ensure_form(ctx: ImportContext, task: RemoteTask, form_code: str) -> str:
    form = task.find_form(form_code)
    if form is not None:
        return form.form_id
    form_id = await ctx.client.form_insert(task.task_id, form_code)
    summary = await ctx.client.form_get_summary(form_id)
    return summary.form_id


def build_form_questions(form_code: str, data: PatientRecord) -> list[Question]:
    """Questions for every mapped item of the form; table items expand per row."""
    questions: list[Question] = []
    for item_code, mapping in form_mappings(form_code).items():
        if mapping.array_ref:
            continue
        if mapping.question_type is QuestionType.ARRAY:
            rows = data.get(array_key(form_code, item_code)) or []
            for row, row_data in enumerate(rows, start=1):
                for row_item, value in row_data.items():
                    row_mapping = get_field(form_code, row_item)
                    questions.append(
                        question_for(row_mapping.question_type, row_item, value, array_ref=item_code, row=row)
                    )
            continue
        questions.append(question_for(mapping.question_type, item_code, data.get(mapping.source)))
    return questions


async def update_patient_data(ctx: ImportContext, patient_ref: str, data: PatientRecord) -> None:
    """Create or update the patient's case, admission, tasks and forms."""
    await ctx.subscription_id()

    case = await find_patient(ctx, patient_ref)
    if case is None:
        case = await create_patient(ctx, patient_ref, data)
    else:
        await update_patient_contact(ctx, case, data)

    admission = await ensure_admission(ctx, case.case_id)

    for task_code in task_codes():
        if task_data_is_empty(task_code, data):
            continue
        task = await _ensure_task(ctx, admission.admission_id, task_code)
        for form_code in form_codes(task_code):
            form_id = await _ensure_form(ctx, task, form_code)
            questions = build_form_questions(form_code, data)
            if not questions:
                continue
            closed = form_is_closed(form_complete_flag(form_code, data))
            await ctx.client.form_set_all_answers(form_id, questions, closed)

    logger.info("redcap.patient_updated", patient_ref=patient_ref, case_id=case.case_id)


# ─── File run ───────────────────────────────────────────────────────────────


async def run_redcap_import(ctx: ImportContext, data_dir: str | Path | None = None) -> BackgroundServiceResponse:
    """Import the first pending export file found in `data_dir`."""
    directory = Path(data_dir or ctx.settings.redcap_data_dir)
    pending = sorted(directory.glob("*.csv")) if directory.is_dir() else []
    if not pending:
        return BackgroundServiceResponse(
            code=BackgroundStatus.IDLE, message="No RedCAP data files (*.csv) pending to import."
        )

    source = pending[0]
    processing = source.with_name(source.name + PROCESSING_SUFFIX)
    try:
        processing.unlink(missing_ok=True)
        source.rename(processing)
    except OSError as exc:
        logger.error("redcap.file_rename_failed", path=str(source), error=str(exc))
        return BackgroundServiceResponse(
            code=BackgroundStatus.IDLE,
            message=f"Error renaming {source} to {processing}. Verify the directory is writable.",
        )

    response = BackgroundServiceResponse()
    try:
        patients = load_redcap_data(processing)
    except ServiceError as exc:
        logger.error("redcap.file_invalid", path=str(processing), error=exc.message)
        response.code = BackgroundStatus.ERROR
        response.message = f"Error loading RedCAP data file {source.name}: {exc.message}"
        return response

    for patient_ref, data in patients.items():
        try:
            await update_patient_data(ctx, patient_ref, data)
        except Exception as exc:
            message = exc.message if isinstance(exc, ServiceError) else str(exc)
            error_msg = f"Error importing RedCAP data for patient {patient_ref}: {message}"
            logger.error("redcap.patient_failed", patient_ref=patient_ref, error=message)
            response.code = BackgroundStatus.ERROR
            response.message = error_msg
            response.add_details(f"Patient {patient_ref}: ERROR")
            return response
        logger.info("redcap.patient_imported", patient_ref=patient_ref)

    response.code = BackgroundStatus.SUCCESS
    response.add_details(f"RedCAP data imported successfully. Total patients processed: {len(patients)}")
    processing.unlink(missing_ok=True)
    logger.info("redcap.file_imported", path=str(source), patients=len(patients))
    return response
