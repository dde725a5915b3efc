"""
Unit Tests — RedCAP export loader (merging, tables, checkboxes, file format).
"""

import pytest

from core.errors import ErrorCode, ServiceError
from integrations.redcap_loader import (
    collect_selected_options,
    load_redcap_data,
    merge_patient_rows,
    normalize_patient,
    patient_ref_for,
)


def _write_csv(path, header, *rows, bom=False):
    lines = [";".join(header)] + [";".join(r) for r in rows]
    text = "\n".join(lines) + "\n"
    path.write_text(("\ufeff" if bom else "") + text, encoding="utf-8")
    return path


class TestPatientRef:
    def test_zero_padded(self):
        assert patient_ref_for("7") == "ONCOIVD_007"
        assert patient_ref_for(" 1234 ") == "ONCOIVD_1234"

    def test_not_a_number(self):
        with pytest.raises(ServiceError) as exc_info:
            patient_ref_for("abc")
        assert exc_info.value.code == ErrorCode.INVALID_DATA_FORMAT


class TestMergeRows:
    def test_new_keys_are_added(self):
        merged = merge_patient_rows({"b": "2"}, {"a": "1"}, "ONCOIVD_001")
        assert merged == {"a": "1", "b": "2"}

    def test_empty_never_overwrites(self):
        merged = merge_patient_rows({"a": ""}, {"a": "1"}, "ONCOIVD_001")
        assert merged == {"a": "1"}

    def test_empty_is_filled(self):
        merged = merge_patient_rows({"a": "1"}, {"a": ""}, "ONCOIVD_001")
        assert merged == {"a": "1"}

    def test_conflict_is_an_error(self):
        with pytest.raises(ServiceError) as exc_info:
            merge_patient_rows({"a": "2"}, {"a": "1"}, "ONCOIVD_001")
        assert exc_info.value.code == ErrorCode.DATA_MISSING
        assert "Conflicting data" in exc_info.value.message
        assert "ONCOIVD_001" in exc_info.value.message

    def test_previous_record_not_mutated(self):
        prev = {"a": "1"}
        merge_patient_rows({"b": "2"}, prev, "ONCOIVD_001")
        assert prev == {"a": "1"}


class TestNormalize:
    def test_checkbox_columns_collapse(self):
        raw = {"specif_inf___1": "1", "specif_inf___2": "0", "specif_inf___3": "1"}
        assert collect_selected_options("specif_inf", raw) == ["1", "3"]

        record = normalize_patient(raw)
        assert record["specif_inf"] == ["1", "3"]
        assert "specif_inf___1" not in record

    def test_value_translation(self):
        record = normalize_patient({"smoking": "0", "glucose": "5.4"})
        assert record["smoking"] == "2"
        assert record["glucose"] == "5.4"

    def test_table_columns_become_rows(self):
        raw = {
            "polyop_size": "1",
            "polyop_size_2": "3",
            "polyop_size_3": "",
            "polyop_other": "first",
            "polyop_other_2": "",
            "polyop_other_3": "",
        }
        record = normalize_patient(raw)

        rows = record["LESION_DESC@POLYPS_TABLE"]
        assert rows == [
            {"POLYOP_SIZE": "1", "POLYOP_OTHER": "first"},
            {"POLYOP_SIZE": "3", "POLYOP_OTHER": ""},
        ]
        assert "polyop_size_2" not in record

    def test_single_column_table(self):
        raw = {"extraction_location": "2", "extraction_location_2": "4"}
        record = normalize_patient(raw)
        assert record["COLONOSCOPY_RESULTS@POLYPS_TABLE"] == [{"POLYP_LOCATION": "2"}, {"POLYP_LOCATION": "4"}]
        assert record["LESION_DESC@POLYPS_TABLE"] == []


class TestLoadFile:
    def test_rows_of_a_patient_are_merged(self, tmp_path):
        path = _write_csv(
            tmp_path / "export.csv",
            ["study_ref", "redcap_event_name", "birthdate", "glucose", "biochemical_parameters_complete"],
            ["1", "baseline", "1960-02-01", "", ""],
            ["1", "followup", "", "5.4", "2"],
            ["2", "baseline", "1971-10-10", "", ""],
        )
        patients = load_redcap_data(path)

        assert list(patients) == ["ONCOIVD_001", "ONCOIVD_002"]
        first = patients["ONCOIVD_001"]
        assert first["birthdate"] == "1960-02-01"
        assert first["glucose"] == "5.4"
        assert first["biochemical_parameters_complete"] == "2"
        assert "redcap_event_name" not in first
        assert "study_ref" not in first

    def test_leading_bom_is_ignored(self, tmp_path):
        path = _write_csv(tmp_path / "bom.csv", ["study_ref", "glucose"], ["3", "4.1"], bom=True)
        assert load_redcap_data(path)["ONCOIVD_003"]["glucose"] == "4.1"

    def test_first_column_must_be_study_ref(self, tmp_path):
        path = _write_csv(tmp_path / "bad.csv", ["record_id", "glucose"], ["3", "4.1"])
        with pytest.raises(ServiceError) as exc_info:
            load_redcap_data(path)
        assert exc_info.value.code == ErrorCode.INVALID_DATA_FORMAT

    def test_short_row(self, tmp_path):
        path = _write_csv(tmp_path / "short.csv", ["study_ref", "glucose", "urea"], ["3", "4.1"])
        with pytest.raises(ServiceError) as exc_info:
            load_redcap_data(path)
        assert "Row length" in exc_info.value.message

    def test_conflicting_rows(self, tmp_path):
        path = _write_csv(tmp_path / "conflict.csv", ["study_ref", "glucose"], ["3", "4.1"], ["3", "4.2"])
        with pytest.raises(ServiceError) as exc_info:
            load_redcap_data(path)
        assert exc_info.value.code == ErrorCode.DATA_MISSING
