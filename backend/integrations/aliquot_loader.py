"""
Processed-samples spreadsheet loader.

The biobank lab delivers one `.xlsx` per processing run, one row per aliquot:

    patient_ref | patient_id | sample_date | sample_type | aliquot_id | location

Rows are grouped into samples (one patient, one extraction date). A sample
whose rows cannot be parsed carries an error instead of raising, so the
import can report it and carry on with the next one.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import pandas as pd
import structlog

from core.errors import ErrorCode, ServiceError

logger = structlog.get_logger()

REQUIRED_COLUMNS = ("patient_ref", "patient_id", "sample_date", "sample_type", "aliquot_id", "location")


@dataclass
class AliquotRow:
    aliquot_id: str
    sample_type: str
    location_code: str


@dataclass
class SampleBatch:
    patient_ref: str
    patient_id: str
    sample_date: datetime | None
    aliquots: list[AliquotRow] = field(default_factory=list)
    error: str | None = None

    @property
    def display_name(self) -> str:
        if self.sample_date is None:
            return self.patient_ref
        return f"{self.patient_ref} ({self.sample_date:%Y-%m-%d})"


def _normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    out = df.copy()
    out.columns = [str(c).strip().lower().replace(" ", "_") for c in out.columns]
    return out


def read_aliquot_sheet(path: str | Path) -> pd.DataFrame:
    """Read the first worksheet as text, with normalized column names."""
    df = pd.read_excel(path, dtype=str, keep_default_na=False, engine="openpyxl")
    df = _normalize_columns(df)
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ServiceError(
            ErrorCode.INVALID_DATA_FORMAT,
            f"Missing columns in aliquots file {Path(path).name}: {', '.join(missing)}",
        )
    for column in REQUIRED_COLUMNS:
        df[column] = df[column].astype(str).str.strip()
    # Fully blank lines at the end of the sheet
    return df[(df[list(REQUIRED_COLUMNS)] != "").any(axis=1)]


def group_samples(df: pd.DataFrame) -> list[SampleBatch]:
    """One batch per (patient_ref, sample_date), in sheet order."""
    df = df.assign(_sample_ts=pd.to_datetime(df["sample_date"], errors="coerce"))
    batches: list[SampleBatch] = []
    for (patient_ref, raw_date), rows in df.groupby(["patient_ref", "sample_date"], sort=False):
        sample_ts = rows["_sample_ts"].iloc[0]
        batch = SampleBatch(
            patient_ref=patient_ref,
            patient_id=rows["patient_id"].iloc[0],
            sample_date=None if pd.isna(sample_ts) else sample_ts.to_pydatetime(),
        )
        if not patient_ref:
            batch.error = "Patient reference is empty"
        elif not batch.patient_id:
            batch.error = "Patient id is empty"
        elif batch.sample_date is None:
            batch.error = f"Invalid sample date '{raw_date}'"
        elif rows["patient_id"].nunique() > 1:
            batch.error = "Different patient ids informed for the same patient reference"
        elif (rows["aliquot_id"] == "").any():
            batch.error = "Aliquot id is empty"

        batch.aliquots = [
            AliquotRow(aliquot_id=r.aliquot_id, sample_type=r.sample_type.upper(), location_code=r.location)
            for r in rows.itertuples(index=False)
        ]
        batches.append(batch)
    return batches


def load_aliquot_data(path: str | Path) -> list[SampleBatch]:
    batches = group_samples(read_aliquot_sheet(path))
    logger.info("aliquots.file_loaded", path=str(path), samples=len(batches))
    return batches
