"""
Tests for chartguard.validation -- candidate command validation.

Covers: valid commands of every kind, camelCase and snake_case input,
the malformed-input battery (non-mappings, missing and unknown kinds,
wrong types, out-of-range confidence), error field paths, and
immutability of validated commands.
"""

from __future__ import annotations

import pytest

from chartguard.errors import ValidationError
from chartguard.models import (
    COMMAND_TYPES,
    CommandKind,
    CreateNoteDraft,
    FlagAbnormalResult,
)
from chartguard.validation import command_id_of, subject_id_of, validate


_KIND_FIELDS = {
    "flag_abnormal_result": {
        "observationId": "obs-1", "severity": "high", "interpretation": "K+ 6.1",
    },
    "create_note_draft": {
        "encounterId": "enc-1", "noteType": "progress", "content": "Stable.",
    },
    "propose_problem_update": {
        "action": "add",
        "condition": {"code": "E11.9", "system": "ICD-10-CM", "display": "T2DM"},
    },
    "suggest_billing_codes": {
        "encounterId": "enc-1",
        "suggestedCodes": [{"code": "99213", "system": "CPT", "confidence": 0.8}],
    },
    "suggest_medication_change": {
        "action": "start",
        "medication": {"code": "197361", "system": "RxNorm"},
        "rationale": "BP persistently elevated",
    },
    "queue_referral_letter": {
        "referringPractitionerId": "pr-1", "specialty": "cardiology",
        "urgency": "routine", "reasonForReferral": "murmur",
        "clinicalSummary": "Systolic murmur on exam.",
    },
    "summarize_patient_history": {
        "summaryType": "medication", "summary": "On metformin.",
    },
}


def _make_raw(kind: str = "flag_abnormal_result", **overrides) -> dict:
    raw = {
        "kind": kind,
        "commandId": "cmd-1",
        "confidence": 0.9,
        "sourceModel": "test-model",
        "subjectId": "Patient/1",
        **_KIND_FIELDS[kind],
    }
    raw.update(overrides)
    return raw


# ---------------------------------------------------------------------------
# 1. Valid input
# ---------------------------------------------------------------------------

class TestValidCommands:
    @pytest.mark.parametrize("kind", sorted(_KIND_FIELDS))
    def test_every_kind_validates(self, kind):
        result = validate(_make_raw(kind))
        assert result.ok, result.error
        assert result.command.command_kind is CommandKind(kind)
        assert isinstance(result.command, COMMAND_TYPES[CommandKind(kind)])

    def test_fixture_covers_every_kind(self):
        assert set(_KIND_FIELDS) == {k.value for k in CommandKind}

    def test_snake_case_input_accepted(self):
        result = validate({
            "kind": "create_note_draft",
            "command_id": "cmd-snake",
            "confidence": 0.7,
            "source_model": "m",
            "subject_id": "Patient/2",
            "encounter_id": "enc-2",
            "note_type": "discharge",
            "content": "Discharged home.",
        })
        assert result.ok, result.error
        assert isinstance(result.command, CreateNoteDraft)
        assert result.command.command_id == "cmd-snake"

    def test_command_id_generated_when_absent(self):
        raw = _make_raw()
        del raw["commandId"]
        result = validate(raw)
        assert result.ok
        assert result.command.command_id.startswith("cmd-")

    def test_integer_confidence_bounds_accepted(self):
        assert validate(_make_raw(confidence=0)).ok
        assert validate(_make_raw(confidence=1)).ok

    def test_created_at_normalized_to_utc(self):
        result = validate(_make_raw(createdAt="2026-01-01T10:00:00+02:00"))
        assert result.ok
        assert result.command.created_at.utcoffset().total_seconds() == 0
        assert result.command.created_at.hour == 8

    def test_flag_defaults_to_no_approval(self):
        command = validate(_make_raw()).command
        assert isinstance(command, FlagAbnormalResult)
        assert command.requires_approval is False

    def test_sequences_become_tuples(self):
        command = validate(_make_raw(suggestedActions=["repeat lab"])).command
        assert command.suggested_actions == ("repeat lab",)

    def test_validated_command_is_frozen(self):
        command = validate(_make_raw()).command
        with pytest.raises(Exception):
            command.confidence = 0.1


# ---------------------------------------------------------------------------
# 2. Malformed input battery
# ---------------------------------------------------------------------------

class TestMalformedInput:
    @pytest.mark.parametrize("raw", [None, 42, "a string", ["kind"], b"bytes"])
    def test_non_mapping_never_raises(self, raw):
        result = validate(raw)
        assert not result.ok
        assert result.error.field == ""

    def test_missing_kind(self):
        raw = _make_raw()
        del raw["kind"]
        result = validate(raw)
        assert result.error == ValidationError("kind", "field required")

    @pytest.mark.parametrize("kind", ["delete_patient", "", 7, "FLAG_ABNORMAL_RESULT"])
    def test_unknown_kind(self, kind):
        raw = _make_raw()
        raw["kind"] = kind
        result = validate(raw)
        assert not result.ok
        assert result.error.field == "kind"
        assert "unsupported command kind" in result.error.reason

    @pytest.mark.parametrize("confidence", [-0.01, 1.01, 5, float("nan"), float("inf")])
    def test_confidence_out_of_range_rejected(self, confidence):
        result = validate(_make_raw(confidence=confidence))
        assert not result.ok
        assert result.error.field == "confidence"

    @pytest.mark.parametrize("confidence", [True, "0.9", None, [0.9]])
    def test_confidence_wrong_type_rejected(self, confidence):
        result = validate(_make_raw(confidence=confidence))
        assert not result.ok
        assert result.error.field == "confidence"

    def test_missing_required_kind_field(self):
        raw = _make_raw()
        del raw["observationId"]
        result = validate(raw)
        assert result.error.field == "observation_id"

    def test_missing_subject(self):
        raw = _make_raw()
        del raw["subjectId"]
        assert validate(raw).error.field == "subject_id"

    def test_empty_source_model(self):
        assert validate(_make_raw(sourceModel="")).error.field == "source_model"

    def test_severity_outside_enumeration(self):
        assert validate(_make_raw(severity="catastrophic")).error.field == "severity"

    def test_nested_error_reports_dotted_path(self):
        raw = _make_raw(
            "suggest_billing_codes",
            suggestedCodes=[{"code": "99213", "system": "CPT", "confidence": 1.5}],
        )
        result = validate(raw)
        assert result.error.field == "suggested_codes.0.confidence"

    def test_billing_codes_must_not_be_empty(self):
        result = validate(_make_raw("suggest_billing_codes", suggestedCodes=[]))
        assert result.error.field == "suggested_codes"

    def test_billing_code_system_enumeration(self):
        raw = _make_raw(
            "suggest_billing_codes",
            suggestedCodes=[{"code": "X", "system": "SNOMED", "confidence": 0.5}],
        )
        assert validate(raw).error.field == "suggested_codes.0.system"

    def test_requires_approval_wrong_type(self):
        result = validate(_make_raw(requiresApproval={"yes": True}))
        assert result.error.field == "requires_approval"

    def test_out_of_range_confidence_reason_is_readable(self):
        result = validate(_make_raw(confidence=2.0))
        assert "Value error" not in result.error.reason
        assert "[0, 1]" in result.error.reason


# ---------------------------------------------------------------------------
# 3. Raw id extraction
# ---------------------------------------------------------------------------

class TestRawExtraction:
    def test_command_id_of_camel_and_snake(self):
        assert command_id_of({"commandId": "a"}) == "a"
        assert command_id_of({"command_id": "b"}) == "b"

    def test_command_id_of_ignores_non_strings(self):
        assert command_id_of({"commandId": 12}) is None
        assert command_id_of("not a mapping") is None

    def test_subject_id_of(self):
        assert subject_id_of({"subjectId": "Patient/9"}) == "Patient/9"
        assert subject_id_of([]) == ""

