"""Tests for studio_core.script_analysis — breakdown recovery and defaults."""

import json
import logging

import pytest

from studio_core.json_repair import ParseFailure
from studio_core.schemas import DEFAULT_CONCEPT, DEFAULT_LOGLINE
from studio_core.script_analysis import coerce_script_analysis, parse_script_analysis


def _full_payload() -> dict:
    return {
        "characters": [{"name": "Mara", "gender": "female", "visualPrompt": "wiry scavenger"}],
        "scenes": [{"visualPrompt": "ruined mall at dusk", "narratorLines": []}],
        "tasks": [{"title": "Lock casting"}],
        "modules": {"logline": "A scavenger guards the last shelter.", "concept": "Survival drama", "tone": "bleak"},
        "metadata": {"hookScore": 8, "audience": "Adults", "suggestedTitles": ["Last Shelter"]},
    }


class TestParseScriptAnalysis:
    def test_complete_payload_is_preserved(self):
        analysis = parse_script_analysis(json.dumps(_full_payload()))

        assert analysis.characters[0]["name"] == "Mara"
        assert analysis.scenes[0]["visualPrompt"] == "ruined mall at dusk"
        assert analysis.tasks == [{"title": "Lock casting"}]
        assert analysis.modules.logline == "A scavenger guards the last shelter."
        assert analysis.metadata.hook_score == 8
        assert analysis.metadata.suggested_titles == ["Last Shelter"]

    def test_serializes_with_wire_names(self):
        dumped = parse_script_analysis(json.dumps(_full_payload())).model_dump(by_alias=True)

        assert dumped["metadata"]["hookScore"] == 8
        assert dumped["metadata"]["suggestedTitles"] == ["Last Shelter"]
        assert dumped["modules"]["tone"] == "bleak"

    def test_empty_object_gets_defaults(self):
        analysis = parse_script_analysis("{}")

        assert analysis.characters == []
        assert analysis.scenes == []
        assert analysis.tasks == []
        assert analysis.modules.logline == DEFAULT_LOGLINE
        assert analysis.modules.concept == DEFAULT_CONCEPT
        assert analysis.metadata.hook_score == 5
        assert analysis.metadata.audience == "General"
        assert analysis.metadata.suggested_titles == ["Untitled Production"]

    def test_invalid_metadata_fields_fall_back(self):
        payload = {"metadata": {"hookScore": "high", "audience": "", "suggestedTitles": "One"}}
        analysis = parse_script_analysis(json.dumps(payload))

        assert analysis.metadata.hook_score == 5
        assert analysis.metadata.audience == "General"
        assert analysis.metadata.suggested_titles == ["Untitled Production"]

    def test_boolean_hook_score_is_not_numeric(self):
        analysis = parse_script_analysis('{"metadata": {"hookScore": true}}')
        assert analysis.metadata.hook_score == 5

    def test_non_object_list_items_are_dropped(self):
        analysis = parse_script_analysis('{"characters": [{"name": "Mara"}, "Jonah", 3]}')
        assert analysis.characters == [{"name": "Mara"}]

    def test_recovers_messy_model_output(self):
        raw = (
            "```json\n"
            '{"characters": [{"name": "Mara"}], '
            '"scenes": [{"dialogue": "She whispers "run" now"}]}\n'
            "```"
        )
        analysis = parse_script_analysis(raw)
        assert analysis.scenes[0]["dialogue"] == 'She whispers "run" now'

    def test_truncated_response_is_logged_and_completed(self, caplog):
        raw = '{"characters": [{"name": "Mara"}], "scenes": [{"id": 1}'
        with caplog.at_level(logging.WARNING, logger="studio_core.script_analysis"):
            analysis = parse_script_analysis(raw)

        assert analysis.scenes == [{"id": 1}]
        assert any("possible_truncation" in record.message for record in caplog.records)

    def test_top_level_array_is_rejected(self):
        with pytest.raises(ParseFailure):
            parse_script_analysis("[1, 2, 3]")

    def test_unrecoverable_response_raises(self):
        with pytest.raises(ParseFailure):
            parse_script_analysis("I'm sorry, I can't help with that.")


class TestCoerceScriptAnalysis:
    def test_rejects_non_object(self):
        with pytest.raises(TypeError):
            coerce_script_analysis(["not", "an", "object"])

    def test_non_string_logline_is_stringified(self):
        analysis = coerce_script_analysis({"modules": {"logline": 42}})
        assert analysis.modules.logline == "42"
        assert analysis.modules.concept == DEFAULT_CONCEPT
