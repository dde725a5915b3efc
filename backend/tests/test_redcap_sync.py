"""
Tests — RedCAP → eCRF patient sync against the in-memory eCRF.
"""

import pytest

from core.errors import ErrorCode, ServiceError
from integrations.redcap_sync import ImportContext, build_form_questions, run_redcap_import, update_patient_data
from tests.fakes import FakeECRFClient

BIOCHEMICAL_ONLY = {
    "birthdate": "1960-02-01",
    "gender": "1",
    "glucose": "5.4",
    "urea": "31",
    "biochemical_parameters_complete": "2",
}


@pytest.fixture
def ecrf():
    return FakeECRFClient()


@pytest.fixture
def ctx(ecrf):
    return ImportContext(client=ecrf)


class TestBuildQuestions:
    def test_scalar_items(self):
        questions = {q.item_code: q for q in build_form_questions("BIOCHEMICAL", BIOCHEMICAL_ONLY)}

        assert questions["GLUCOSE"].answer == "5.4"
        assert questions["UREA"].answer == "31"
        assert questions["LDL"].answer is None

    def test_table_rows_expand(self):
        data = {
            "polyps_extracted": "2",
            "LESION_DESC@POLYPS_TABLE": [{"POLYOP_SIZE": "1", "POLYOP_OTHER": "flat"}, {"POLYOP_SIZE": "3"}],
        }
        questions = build_form_questions("LESION_DESC", data)

        rows = [(q.row, q.item_code, q.answer) for q in questions if q.array_ref == "POLYPS_TABLE"]
        assert rows == [(1, "POLYOP_SIZE", "1"), (1, "POLYOP_OTHER", "flat"), (2, "POLYOP_SIZE", "3")]
        assert all(q.item_code != "POLYPS_TABLE" for q in questions)

    def test_checkbox_item(self):
        questions = {q.item_code: q for q in build_form_questions("ADENO_CHARACT", {"metastasis_loc": ["1", "4"]})}
        assert questions["METASTASIS_LOCATION"].answer == "1|4"


@pytest.mark.asyncio
class TestUpdatePatientData:
    async def test_new_patient_gets_case_admission_and_task(self, ctx, ecrf):
        await update_patient_data(ctx, "ONCOIVD_001", BIOCHEMICAL_ONLY)

        (case,) = ecrf.cases.values()
        assert case.identifiers == {"PARTICIPANT_REF": "ONCOIVD_001"}
        assert case.gender == "M"
        assert case.birthdate == "1960-02-01"

        (admission,) = ecrf.admissions
        assert admission.case_id == case.case_id
        assert admission.subscription_id == "SUB-1"

        (task,) = ecrf.tasks_with_code("BIOCHEMICAL_REPORT")
        assert task.admission_id == admission.admission_id
        assert ecrf.form_answers(task.task_id, "BIOCHEMICAL")["GLUCOSE"] == "5.4"
        form = task.find_form("BIOCHEMICAL")
        assert ecrf.closed[form.form_id] is True

        assert ecrf.tasks_with_code("PATIENT_PROFILE_REPORT") == []
        assert ecrf.tasks_with_code("COLONOSCOPY_REPORT") == []

    async def test_missing_gender_defaults_on_creation(self, ctx, ecrf):
        await update_patient_data(ctx, "ONCOIVD_002", {"biochemical_parameters_complete": ""})

        (case,) = ecrf.cases.values()
        assert case.gender == "F"
        assert ecrf.tasks == {}

    async def test_incomplete_form_left_open(self, ctx, ecrf):
        await update_patient_data(ctx, "ONCOIVD_001", {**BIOCHEMICAL_ONLY, "biochemical_parameters_complete": "0"})

        (task,) = ecrf.tasks_with_code("BIOCHEMICAL_REPORT")
        assert ecrf.closed[task.find_form("BIOCHEMICAL").form_id] is False

    async def test_reimport_reuses_everything(self, ecrf):
        await update_patient_data(ImportContext(client=ecrf), "ONCOIVD_001", BIOCHEMICAL_ONLY)
        await update_patient_data(ImportContext(client=ecrf), "ONCOIVD_001", {**BIOCHEMICAL_ONLY, "glucose": "6.0"})

        assert ecrf.count("case_insert") == 1
        assert ecrf.count("admission_create") == 1
        assert ecrf.count("task_insert_by_task_code") == 1
        assert ecrf.count("form_insert") == 1
        assert ecrf.count("case_set_contact") == 0

        (task,) = ecrf.tasks_with_code("BIOCHEMICAL_REPORT")
        assert ecrf.form_answers(task.task_id, "BIOCHEMICAL")["GLUCOSE"] == "6.0"

    async def test_contact_updated_when_changed(self, ctx, ecrf):
        ecrf.add_case("CASE-9", "ONCOIVD_009", birthdate="1950-01-01", gender="F")

        await update_patient_data(ctx, "ONCOIVD_009", BIOCHEMICAL_ONLY)

        assert ecrf.count("case_insert") == 0
        assert ecrf.count("admission_create") == 0
        assert ecrf.cases["CASE-9"].gender == "M"
        assert ecrf.cases["CASE-9"].birthdate == "1960-02-01"

    async def test_ambiguous_reference(self, ctx, ecrf):
        ecrf.add_case("CASE-A", "ONCOIVD_001")
        ecrf.add_case("CASE-B", "ONCOIVD_001")

        with pytest.raises(ServiceError) as exc_info:
            await update_patient_data(ctx, "ONCOIVD_001", BIOCHEMICAL_ONLY)
        assert exc_info.value.code == ErrorCode.AMBIGUOUS

    async def test_missing_subscription(self, ctx, ecrf):
        ecrf.failures["subscription_get"] = "Program not found"

        with pytest.raises(ServiceError) as exc_info:
            await update_patient_data(ctx, "ONCOIVD_001", BIOCHEMICAL_ONLY)

        assert exc_info.value.code == ErrorCode.DATA_MISSING
        assert "Unable to find subscription for project" in exc_info.value.message
        assert "Program not found" in exc_info.value.message
        assert ecrf.cases == {}


def _export(directory, *rows, name="export.csv"):
    header = "study_ref;redcap_event_name;birthdate;gender;glucose;biochemical_parameters_complete"
    path = directory / name
    path.write_text("\n".join([header, *rows]) + "\n", encoding="utf-8")
    return path


@pytest.mark.asyncio
class TestRunImport:
    async def test_no_files_is_idle(self, ctx, tmp_path):
        response = await run_redcap_import(ctx, tmp_path)

        assert response.code.value == "idle"
        assert response.message == "No RedCAP data files (*.csv) pending to import."

    async def test_successful_file_is_removed(self, ctx, ecrf, tmp_path):
        _export(tmp_path, "1;baseline;1960-02-01;1;5.4;2", "2;baseline;1971-10-10;2;;")

        response = await run_redcap_import(ctx, tmp_path)

        assert response.code.value == "success"
        assert response.details == ["RedCAP data imported successfully. Total patients processed: 2"]
        assert list(tmp_path.iterdir()) == []
        assert len(ecrf.cases) == 2

    async def test_patient_error_stops_and_keeps_file(self, ctx, ecrf, tmp_path):
        _export(tmp_path, "1;baseline;1960-02-01;1;5.4;2", "2;baseline;1971-10-10;2;;")
        ecrf.failures["case_insert"] = "Duplicated identifier"

        response = await run_redcap_import(ctx, tmp_path)

        assert response.code.value == "error"
        assert response.message == "Error importing RedCAP data for patient ONCOIVD_001: Duplicated identifier"
        assert response.details == ["Patient ONCOIVD_001: ERROR"]
        assert ecrf.count("case_insert") == 1
        assert (tmp_path / "export.csv.processing").exists()

    async def test_unreadable_file(self, ctx, tmp_path):
        (tmp_path / "broken.csv").write_text("record_id;glucose\n1;5.4\n", encoding="utf-8")

        response = await run_redcap_import(ctx, tmp_path)

        assert response.code.value == "error"
        assert response.message.startswith("Error loading RedCAP data file broken.csv")

    async def test_only_first_file_per_run(self, ctx, tmp_path):
        _export(tmp_path, "1;baseline;1960-02-01;1;5.4;2", name="a.csv")
        _export(tmp_path, "2;baseline;1971-10-10;2;;", name="b.csv")

        await run_redcap_import(ctx, tmp_path)

        assert [p.name for p in tmp_path.iterdir()] == ["b.csv"]
