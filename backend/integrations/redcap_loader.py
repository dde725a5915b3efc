"""
RedCAP export loader.

Reads the `;`-delimited CSV exported by the partner RedCAP project and turns
it into one normalized record per patient:

  - rows of the same patient (one per RedCAP event) are merged
  - option values are translated with the mapping table
  - table columns (`field`, `field_2`, `field_3`, ...) become a list of row
    dicts stored under `FORM@ARRAY`
  - checkbox columns (`field___1`, `field___2`, ...) become the list of
    selected option ids
"""

import csv
from pathlib import Path
from typing import Any

import structlog

from core.errors import ErrorCode, ServiceError
from integrations.field_mapping import FieldMapping, all_mappings, array_key

logger = structlog.get_logger()

STUDY_REF_COLUMN = "study_ref"
DROPPED_COLUMNS = (STUDY_REF_COLUMN, "redcap_event_name")
PATIENT_REF_FORMAT = "ONCOIVD_%03d"
BOM = "\ufeff"

PatientRecord = dict[str, Any]


def patient_ref_for(study_ref: str) -> str:
    try:
        return PATIENT_REF_FORMAT % int(str(study_ref).strip())
    except ValueError as exc:
        raise ServiceError(ErrorCode.INVALID_DATA_FORMAT, f"Invalid study_ref value: '{study_ref}'") from exc


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def merge_patient_rows(new: PatientRecord, prev: PatientRecord, patient_ref: str) -> PatientRecord:
    """
    Merge one more export row into the patient's record.

    New keys are added, an empty new value never overwrites, and two
    different non-empty values for the same key are an error.
    """
    merged = dict(prev)
    for key, value in new.items():
        if key not in prev:
            merged[key] = value
            continue
        if _is_empty(value):
            continue
        prev_value = prev[key]
        if not _is_empty(prev_value) and prev_value != value:
            raise ServiceError(
                ErrorCode.DATA_MISSING,
                f"Patient: {patient_ref}. Conflicting data in different lines for key '{key}': "
                f"previous value '{prev_value}', new value '{value}'",
            )
        merged[key] = value
    return merged


def collect_selected_options(column: str, data: PatientRecord) -> list[str]:
    """Option ids whose `column___N` flag is set to 1."""
    selected = []
    option_id = 1
    while f"{column}___{option_id}" in data:
        if str(data[f"{column}___{option_id}"]).strip() == "1":
            selected.append(str(option_id))
        option_id += 1
    return selected


def _drop_checkbox_columns(column: str, data: PatientRecord) -> None:
    option_id = 1
    while data.pop(f"{column}___{option_id}", None) is not None:
        option_id += 1


def _row_column(source: str, row: int) -> str:
    return source if row == 1 else f"{source}_{row}"


def _extract_table(items: list[FieldMapping], raw: PatientRecord, record: PatientRecord) -> list[dict[str, Any]]:
    rows: dict[int, dict[str, Any]] = {}
    for item in items:
        row = 1
        column = _row_column(item.source, row)
        while column in raw or f"{column}___1" in raw:
            if item.is_multi_option:
                value = collect_selected_options(column, raw)
                _drop_checkbox_columns(column, record)
            else:
                value = item.translate(raw.get(column))
            record.pop(column, None)
            rows.setdefault(row, {})[item.item_code] = value
            row += 1
            column = _row_column(item.source, row)

    return [rows[ix] for ix in sorted(rows) if any(not _is_empty(v) for v in rows[ix].values())]


def normalize_patient(raw: PatientRecord) -> PatientRecord:
    """Apply value translation, then collapse tables and checkboxes."""
    record = dict(raw)
    tables: dict[str, list[FieldMapping]] = {}
    checkboxes: list[FieldMapping] = []

    for mapping in all_mappings():
        if mapping.array_ref:
            tables.setdefault(array_key(mapping.form_code, mapping.array_ref), []).append(mapping)
            continue
        if mapping.is_multi_option:
            checkboxes.append(mapping)
        elif mapping.source and mapping.source in record:
            record[mapping.source] = mapping.translate(record[mapping.source])

    for key, items in tables.items():
        record[key] = _extract_table(items, raw, record)

    for mapping in checkboxes:
        record[mapping.source] = collect_selected_options(mapping.source, raw)
        _drop_checkbox_columns(mapping.source, record)

    return record


def load_redcap_data(path: str | Path) -> dict[str, PatientRecord]:
    """Parse one export file into {patient_ref: record}, in file order."""
    path = Path(path)
    raw_patients: dict[str, PatientRecord] = {}

    with path.open(newline="", encoding="utf-8-sig") as handle:
        reader = csv.reader(handle, delimiter=";")
        header = next(reader, None)
        if not header:
            raise ServiceError(ErrorCode.INVALID_DATA_FORMAT, f"Error reading header from file: {path}")
        header[0] = header[0].lstrip(BOM)
        if header[0] != STUDY_REF_COLUMN:
            raise ServiceError(
                ErrorCode.INVALID_DATA_FORMAT,
                f'The first column of the RedCAP CSV file must be "{STUDY_REF_COLUMN}". Found: {header[0]}',
            )

        for line in reader:
            if not line:
                continue
            if len(line) != len(header):
                raise ServiceError(
                    ErrorCode.INVALID_DATA_FORMAT,
                    f"Row length does not match header length in file: {path}",
                )
            row = dict(zip(header, line))
            patient_ref = patient_ref_for(row[STUDY_REF_COLUMN])
            for column in DROPPED_COLUMNS:
                row.pop(column, None)

            if patient_ref in raw_patients:
                raw_patients[patient_ref] = merge_patient_rows(row, raw_patients[patient_ref], patient_ref)
            else:
                raw_patients[patient_ref] = row

    logger.info("redcap.file_loaded", path=str(path), patients=len(raw_patients))
    return {ref: normalize_patient(raw) for ref, raw in raw_patients.items()}
