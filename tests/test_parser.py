"""
Tests for chartguard.parser -- the model-output parser boundary.

A battery of malformed and partial model outputs: none may yield a
command, and all must fail with ParseError.
"""

from __future__ import annotations

import json

import pytest

from chartguard.errors import GovernanceError, ParseError
from chartguard.models import FlagAbnormalResult
from chartguard.parser import CommandParseError, extract_json_object, parse_command

_FLAG = {
    "kind": "flag_abnormal_result",
    "commandId": "cmd-p1",
    "confidence": 0.92,
    "observationId": "obs-7",
    "severity": "critical",
    "interpretation": "Lactate 5.1 mmol/L",
}

_DEFAULTS = {"subjectId": "Patient/1", "sourceModel": "test-model"}


class TestWellFormedOutput:
    def test_bare_json(self):
        command = parse_command(json.dumps(_FLAG), _DEFAULTS)
        assert isinstance(command, FlagAbnormalResult)
        assert command.command_id == "cmd-p1"

    def test_json_in_code_fence_with_prose(self):
        text = f"Here is the proposal:\n```json\n{json.dumps(_FLAG, indent=2)}\n```\nThanks."
        assert parse_command(text, _DEFAULTS).observation_id == "obs-7"

    def test_json_embedded_in_prose(self):
        text = f"Sure. {json.dumps(_FLAG)} Let me know if you need more."
        assert parse_command(text, _DEFAULTS).severity == "critical"

    def test_model_output_wins_over_defaults(self):
        command = parse_command(json.dumps({**_FLAG, "sourceModel": "other"}), _DEFAULTS)
        assert command.source_model == "other"

    def test_first_object_is_used(self):
        text = json.dumps(_FLAG) + "\n" + json.dumps({"kind": "nonsense"})
        assert parse_command(text, _DEFAULTS).command_id == "cmd-p1"


class TestMalformedOutput:
    @pytest.mark.parametrize("text", [
        "",
        "   \n",
        "I cannot help with that.",
        "[1, 2, 3]",
        '{"kind": "flag_abnormal_result", "confidence": 0.9',
        '```json\n{"kind": "flag_abnormal_result",}\n```',
        "{'kind': 'flag_abnormal_result'}",
    ])
    def test_unparseable_output_raises(self, text):
        with pytest.raises(ParseError):
            parse_command(text, _DEFAULTS)

    def test_truncated_object_does_not_yield_nested_child(self):
        text = '{"kind": "propose_problem_update", "condition": {"code": "I10", "system": "ICD-10-CM"}'
        with pytest.raises(ParseError) as excinfo:
            extract_json_object(text)
        assert not isinstance(excinfo.value, CommandParseError)

    def test_non_text_input_raises(self):
        with pytest.raises(ParseError):
            extract_json_object(None)

    def test_valid_json_invalid_command(self):
        with pytest.raises(CommandParseError) as excinfo:
            parse_command(json.dumps({**_FLAG, "confidence": 3}), _DEFAULTS)
        assert excinfo.value.error.field == "confidence"

    def test_missing_fields_not_guessed(self):
        with pytest.raises(CommandParseError) as excinfo:
            parse_command(json.dumps(_FLAG))
        assert excinfo.value.error.field in ("source_model", "subject_id")

    def test_parse_error_is_a_governance_error(self):
        assert issubclass(CommandParseError, GovernanceError)
