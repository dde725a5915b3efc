"""
Unit Tests — RedCAP → eCRF field mapping table.
"""

import pytest

from core.errors import ErrorCode, ServiceError
from integrations.ecrf.questions import QuestionType
from integrations.field_mapping import (
    FIELD_MAPPINGS,
    TASK_FORMS,
    array_key,
    form_complete_flag,
    form_is_closed,
    form_mappings,
    get_field,
    task_codes,
    task_data_is_empty,
)


class TestMappingTable:
    def test_every_form_has_a_complete_flag(self):
        for task_code in task_codes():
            for form_code in TASK_FORMS[task_code]:
                assert form_complete_flag(form_code, {}) == ""

    def test_every_task_form_has_items(self):
        for forms in TASK_FORMS.values():
            for form_code in forms:
                assert form_mappings(form_code), form_code

    def test_table_items_point_at_an_array_of_the_same_form(self):
        for form_code, items in FIELD_MAPPINGS.items():
            for mapping in items.values():
                if mapping.array_ref:
                    assert items[mapping.array_ref].question_type is QuestionType.ARRAY

    def test_table_is_read_only(self):
        with pytest.raises(TypeError):
            FIELD_MAPPINGS["BIOCHEMICAL"] = {}
        with pytest.raises(TypeError):
            FIELD_MAPPINGS["BIOCHEMICAL"]["GLUCOSE"] = None

    def test_unknown_item(self):
        with pytest.raises(ServiceError) as exc_info:
            get_field("BIOCHEMICAL", "NOPE")
        assert exc_info.value.code == ErrorCode.DATA_MISSING

    def test_unknown_form_complete_flag(self):
        with pytest.raises(ServiceError):
            form_complete_flag("NOPE", {})


class TestTranslation:
    def test_value_mapping(self):
        mapping = get_field("PROFILE_PATHOLOGIES_TREATMENTS", "HYPERTENSION_DRUG_Q")
        assert mapping.translate("0") == "2"
        assert mapping.translate("99") == "3"
        assert mapping.translate("7") == "7"
        assert mapping.translate(None) is None

    def test_no_mapping_passes_through(self):
        assert get_field("BIOCHEMICAL", "GLUCOSE").translate("5.4") == "5.4"

    def test_checkbox_detection(self):
        assert get_field("PROFILE_PATHOLOGIES_TREATMENTS", "SPECIF_INF").is_multi_option
        assert not get_field("PROFILE_PATHOLOGIES_TREATMENTS", "INFECTIONS").is_multi_option


class TestFlags:
    @pytest.mark.parametrize("flag,closed", [("", False), ("0", False), ("1", True), ("2", True)])
    def test_form_is_closed(self, flag, closed):
        assert form_is_closed(flag) is closed

    def test_task_data_is_empty(self):
        assert task_data_is_empty("BIOCHEMICAL_REPORT", {"biochemical_parameters_complete": ""})
        assert not task_data_is_empty("BIOCHEMICAL_REPORT", {"biochemical_parameters_complete": "0"})
        assert not task_data_is_empty("ANATOMOPATHOLOGICAL_REPORT", {"lesion_description_complete": " 2 "})

    def test_array_key(self):
        assert array_key("LESION_DESC", "POLYPS_TABLE") == "LESION_DESC@POLYPS_TABLE"
