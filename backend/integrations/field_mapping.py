"""
RedCAP column → eCRF form item mapping.

Tasks group forms; every form has a "complete" flag column in the export
("" = no data, 0 = incomplete, 1 = unverified, 2 = complete) and a set of
items. An item maps one export column to one question of the form. Items
inside a table carry `array_ref`, the ARRAY item of the same form that owns
the rows.

The table is built once at import and exposed read-only.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from core.errors import ErrorCode, ServiceError
from integrations.ecrf.questions import MULTI_OPTION_TYPES, QuestionType

YES_NO_UNKNOWN = {"1": "1", "0": "2", "99": "3"}
YES_NO_PAST = {"1": "1", "0": "2", "2": "3"}
FREQUENCY = {"1": "1", "2": "2", "0": "3"}
TREATED = {"1": "1", "99": "2"}


@dataclass(frozen=True)
class FieldMapping:
    form_code: str
    item_code: str
    source: str
    question_type: QuestionType
    array_ref: str | None = None
    value_mapping: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_multi_option(self) -> bool:
        return self.question_type in MULTI_OPTION_TYPES

    def translate(self, value: Any) -> Any:
        """Map a raw export value onto the eCRF option value."""
        if not self.value_mapping or value is None:
            return value
        return self.value_mapping.get(str(value), value)


TASK_FORMS: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        "PATIENT_PROFILE_REPORT": (
            "PROFILE_PATHOLOGIES_TREATMENTS",
            "PROFILE_HABITS_STATUS",
            "PROFILE_DIETARY_HABITS",
            "CANCER_TEST",
        ),
        "COLONOSCOPY_REPORT": ("COLONOSCOPY_RESULTS",),
        "ANATOMOPATHOLOGICAL_REPORT": ("LESION_DESC", "ADENO_CHARACT"),
        "BIOCHEMICAL_REPORT": ("BIOCHEMICAL",),
    }
)

COMPLETE_FLAGS: Mapping[str, str] = MappingProxyType(
    {
        "PROFILE_PATHOLOGIES_TREATMENTS": "other_patologies_and_treatments_complete",
        "PROFILE_HABITS_STATUS": "habitsgeneral_status_complete",
        "PROFILE_DIETARY_HABITS": "dietary_habits_complete",
        "CANCER_TEST": "cancer_test_complete",
        "COLONOSCOPY_RESULTS": "colonoscopy_results_complete",
        "LESION_DESC": "lesion_description_complete",
        "ADENO_CHARACT": "adenocarcinoma_characteristics_complete",
        "BIOCHEMICAL": "biochemical_parameters_complete",
    }
)

B = QuestionType.BOOLEAN
R = QuestionType.VERTICAL_RADIO
C = QuestionType.VERTICAL_CHECK
T = QuestionType.TEXT
TA = QuestionType.TEXT_AREA
D = QuestionType.DATE
N = QuestionType.NUMERICAL
A = QuestionType.ARRAY

# form code -> [(item code, source column, type, extras)]
_RAW: dict[str, list[tuple]] = {
    "PROFILE_PATHOLOGIES_TREATMENTS": [
        ("HYPERTENSION", "hypertension", B),
        ("HYPERTENSION_DRUG_Q", "hypertension_drug_q", R, {"value_mapping": YES_NO_UNKNOWN}),
        ("HYPERTENSION_DRUG", "hypertension_drug", R),
        ("HYPER_ACEINH", "hyper_aceinh", R),
        ("HYPER_CALCHAN", "hyper_calchan", R),
        ("HYPER_BETACLOCK", "hyper_betaclock", R),
        ("HYPER_DIURE", "hyper_diure", R),
        ("CARDIAC_DISEASE", "cardiac_disease", B),
        ("CARDIAC_DISEASE_DRUG_Q", "cardiac_disease_drug_q", R, {"value_mapping": YES_NO_UNKNOWN}),
        ("CARDIAC_DISEASE_DRUG", "cardiac_disease_drug", R),
        ("CHOLESTEROL", "cholesterol", B),
        ("CHOLESTEROL_DRUG_Q", "cholesterol_drug_q", R, {"value_mapping": YES_NO_UNKNOWN}),
        ("CHOLESTEROL_DRUG", "cholesterol_drug", R),
        ("CHOLESTEROL_STATINS", "cholesterol_statins", R),
        ("ASTHMA", "asthma", B),
        ("ASTHMA_DRUG_Q", "asthma_drug_q", R, {"value_mapping": YES_NO_UNKNOWN}),
        ("ASTHMA_DRUG", "asthma_drug", R),
        ("AUTOIMMUNE_DISEASE", "autoinmune_disease", B),
        ("AUTOIMMUNE_DISEASE_DRUG_Q", "autoinmune_disease_drug_q", R, {"value_mapping": YES_NO_UNKNOWN}),
        ("AUTOIMMUNE_DISEASE_DRUG", "autoinmune_disease_drug", T),
        ("INFLAMMATORY_INTESTINAL", "inflammatory_intestinal", B),
        ("INFLAMMATORY_INTESTINAL_DRUG_Q", "inflammatory_intestinal_drug_q", R, {"value_mapping": YES_NO_UNKNOWN}),
        ("OSTEOPOROSIS", "osteoporosis", B),
        ("OSTEOPOROSIS_DRUG_Q", "osteoporosis_drug_q", R, {"value_mapping": YES_NO_UNKNOWN}),
        ("TRANSPLANT", "transplant", B),
        ("TRANSPLANT_DRUG_Q", "transplant_drug_q", R, {"value_mapping": YES_NO_UNKNOWN}),
        ("INFECTIONS", "infections", R, {"value_mapping": YES_NO_PAST}),
        ("SPECIF_INF", "specif_inf", C),
        ("INFECTIONS_OTHER", "sepcif_othinf", T),
        ("DIABETES", "diabetes", B),
        ("DIABETES_TIME", "diabetes_time", R),
        ("DIABETES_ANTECEDENTS", "diabetes_antecedents", B),
        ("DIABETES_INJECTED_INSULIN", "diabetes_injected_insulin", B),
    ],
    "PROFILE_HABITS_STATUS": [
        ("JOB", "job", R),
        ("JOB_SHIFT", "job_shift", R),
        ("JOB_HOURS", "job_hours", N),
        ("ALCOHOL", "alcohol", B),
        ("ALCOHOL_TYPE", "alcohol_type", R),
        ("ALCOHOL_FREQUENCY", "alcohol_frequency", R),
        ("STRESS", "stress", B),
        ("STRESS_REASON", "stress_reason", R),
        ("SAD", "sad", B),
        ("EXERCISE", "exercise", B),
        ("EXERCISE_SPECIFY", "exercise_specify", R),
        ("EXERCISE_SPECIFY_OTHER", "exercise_specify_other", T),
        ("EXERCISE_FREQUENCY", "exercise_frequency", R),
        ("SMOKING", "smoking", R, {"value_mapping": YES_NO_PAST}),
        ("SMOKING_EX_TIME", "smoking_ex_time", R),
    ],
    "PROFILE_DIETARY_HABITS": [
        ("DIET", "diet", B),
        ("DIET_SPECIFY", "diet_specify", T),
        ("WEIGHT_CHANGE6M", "weight_change6m", B),
        ("WEIGHT_CHANGE6M_HOW", "weight_change6m_how", R),
        ("WEIGHT_CHANGE6M_KG", "weight_change6m_kg", N),
        ("MAX_WEIGHT", "max_weight", N),
        ("FEEDING_PROBLEMS", "feeding_problems", B),
        ("DIET_MILK", "diet_milk", R, {"value_mapping": FREQUENCY}),
        ("DIET_FISH", "diet_fish", R, {"value_mapping": FREQUENCY}),
        ("DIET_VEGETABLES", "diet_vegetables", R, {"value_mapping": FREQUENCY}),
        ("DIET_FRUIT", "diet_fruit", R, {"value_mapping": FREQUENCY}),
        (
            "DIET_FASTFOOD",
            "diet_fastfood",
            R,
            {"value_mapping": {"1": "1", "2": "2", "3": "3", "4": "4", "0": "5"}},
        ),
        ("DIET_SWEETS", "diet_sweets", R, {"value_mapping": FREQUENCY}),
        ("DIET_PREPARATION", "diet_preparation", R),
    ],
    "CANCER_TEST": [
        ("NEOADJUVANT", "neoadjuvant", B),
        ("NEOADJ_TTM", "neoadj_ttm", R, {"value_mapping": TREATED}),
        ("NEOADJQT_SCHEMA", "neoadjqt_schema", R),
        ("NEOQT_FIRST_CYCLE_DATE", "neoqt_first_cycle_date", D),
        ("NEOQT_LAST_CYCLE_DATE", "neoqt_last_cycle_date", D),
        ("ADJUVANT", "adjuvant", B),
        ("ADJ_TTM", "adj_ttm", R, {"value_mapping": TREATED}),
        ("QT_FIRST_CYCLE_DATE", "qt_first_cycle_date", D),
        ("QT_LAST_CYCLE_DATE", "qt_last_cycle_date", D),
        ("RECURRENCE", "recurrence", B),
        ("RECURRENCE_DATE", "recurrence_date", D),
        ("RECURRENCE_TYPE", "recurrence_type", R),
    ],
    "COLONOSCOPY_RESULTS": [
        ("EXTRACTION_DATE", "extraction_date", D),
        ("NUMBER_REMOVED_POLYPS", "number_removed_polyps", N),
        ("POLYPS_TABLE", "", A),
        ("POLYP_LOCATION", "extraction_location", R, {"array_ref": "POLYPS_TABLE"}),
        ("MUCOSAL_DESC", "mucosal_desc", C),
        ("INFLAMMATORY_BOWEL", "inflammatory_bowel", R),
        ("COLONOSCOPY_OTHER_DATA", "colonoscopy_other_data", TA),
    ],
    "LESION_DESC": [
        ("POLYPS_NUMBER", "polyps_extracted", N),
        ("POLYPS_TABLE", "", A),
        ("POLYOP_SIZE", "polyop_size", R, {"array_ref": "POLYPS_TABLE"}),
        ("POLYOP_DIAGNOSE", "polyop_diagnose", R, {"array_ref": "POLYPS_TABLE"}),
        ("NON_NEOPLASTIC_TYPE", "non_neoplastic_type", R, {"array_ref": "POLYPS_TABLE"}),
        ("NEOPLASTIC_TYPE", "neoplastic_type", R, {"array_ref": "POLYPS_TABLE"}),
        ("NEOPLASTIC_HISTOLOGY", "neoplastic_histology", R, {"array_ref": "POLYPS_TABLE"}),
        ("ADENOMA_MALIGNANCY", "adenoma_malignancy", R, {"array_ref": "POLYPS_TABLE"}),
        ("NEOPLASTIC_DYSPLASIA", "neoplastic_dysplasia", R, {"array_ref": "POLYPS_TABLE"}),
        ("SERRATED_TYPE", "serrated_type", R, {"array_ref": "POLYPS_TABLE"}),
        ("POLYOP_OTHER", "polyop_other", T, {"array_ref": "POLYPS_TABLE"}),
    ],
    "ADENO_CHARACT": [
        ("PT", "pt", R),
        ("PN", "pn", R),
        ("PM", "pm", R),
        ("METASTASIS_LOCATION", "metastasis_loc", C),
        ("SPECIFOTHER_METLOC", "specifother_metloc", TA),
    ],
    "BIOCHEMICAL": [
        ("BLOOD_TEST", "blood_test", B),
        ("DATE_BLOOD", "date_blood", D),
        ("LEUKOCYTES", "leukocityes", N),
        ("PLATELETS", "platelets", N),
        ("HEMOGLOBIN", "hemoglobin", N),
        ("GLUCOSE", "glucose", N),
        ("UREA", "urea", N),
        ("CREATININA", "creatinina", N),
        ("SODIUM", "sodium", N),
        ("POTASSIUM", "potassium", N),
        ("BILIRUBIN", "bilirubin", N),
        ("ALT", "alt", N),
        ("AST", "ast", N),
        ("CHOLESTEROL_TOTAL", "cholesterol_total", N),
        ("HDL", "hdl", N),
        ("LDL", "ldl", N),
        ("TRIGLYCERIDES", "triglycerides", N),
        ("CEA", "cea", N),
        ("CEA199", "cea199", N),
    ],
}


def _build(raw: dict[str, list[tuple]]) -> Mapping[str, Mapping[str, FieldMapping]]:
    table = {}
    for form_code, items in raw.items():
        form = {}
        for item in items:
            item_code, source, qtype = item[:3]
            extras = dict(item[3]) if len(item) > 3 else {}
            if "value_mapping" in extras:
                extras["value_mapping"] = MappingProxyType(dict(extras["value_mapping"]))
            form[item_code] = FieldMapping(form_code, item_code, source, qtype, **extras)
        table[form_code] = MappingProxyType(form)
    return MappingProxyType(table)


FIELD_MAPPINGS: Mapping[str, Mapping[str, FieldMapping]] = _build(_RAW)


# ─── Lookups ────────────────────────────────────────────────────────────────


def task_codes() -> tuple[str, ...]:
    return tuple(TASK_FORMS)


def form_codes(task_code: str) -> tuple[str, ...]:
    return TASK_FORMS.get(task_code, ())


def form_mappings(form_code: str) -> Mapping[str, FieldMapping]:
    return FIELD_MAPPINGS.get(form_code, MappingProxyType({}))


def get_field(form_code: str, item_code: str) -> FieldMapping:
    mapping = FIELD_MAPPINGS.get(form_code, {}).get(item_code)
    if mapping is None:
        raise ServiceError(
            ErrorCode.DATA_MISSING,
            f"RedCAP field mapping not found for form {form_code} and item {item_code}",
        )
    return mapping


def all_mappings():
    """Every item of every form, in task/form order."""
    for task_code in task_codes():
        for form_code in form_codes(task_code):
            yield from form_mappings(form_code).values()


def array_key(form_code: str, array_item: str) -> str:
    """Key under which a form's table rows are stored in an imported record."""
    return f"{form_code}@{array_item}"


def form_complete_flag(form_code: str, data: Mapping[str, Any]) -> str:
    column = COMPLETE_FLAGS.get(form_code)
    if column is None:
        raise ServiceError(ErrorCode.DATA_MISSING, f"Complete flag not found for form {form_code}")
    value = data.get(column)
    return "" if value is None else str(value).strip()


def task_data_is_empty(task_code: str, data: Mapping[str, Any]) -> bool:
    """True when none of the task's forms has anything filled in."""
    return all(form_complete_flag(form_code, data) == "" for form_code in form_codes(task_code))


def form_is_closed(complete_flag: str) -> bool:
    return complete_flag in ("1", "2")
