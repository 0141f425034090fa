"""
Candidate command validation.

``validate()`` is the single entry point that turns an untrusted,
JSON-like mapping into a typed ``Command``.  It never raises: malformed
input -- missing fields, wrong types, unknown kinds, out-of-range
confidence, values outside a kind's enumerations -- comes back as a
``ValidationError(field, reason)`` inside a ``ValidationResult``.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Optional

import pydantic
from pydantic import TypeAdapter
from pydantic.alias_generators import to_snake

from chartguard.errors import ValidationError
from chartguard.models import Command, CommandKind

_COMMAND_ADAPTER: TypeAdapter[Command] = TypeAdapter(Command)

_KIND_ERRORS = {"union_tag_invalid", "union_tag_not_found", "model_attributes_type"}
_KNOWN_KINDS = frozenset(k.value for k in CommandKind)


class ValidationResult:
    """Outcome of ``validate()``: exactly one of ``command`` / ``error`` is set."""

    def __init__(
        self,
        command: Optional[Command] = None,
        error: Optional[ValidationError] = None,
    ) -> None:
        self.command = command
        self.error = error

    @property
    def ok(self) -> bool:
        return self.error is None

    def __repr__(self) -> str:
        if self.ok:
            return f"ValidationResult(ok, kind={self.command.kind})"
        return f"ValidationResult(error={self.error!s})"


def validate(raw: Any) -> ValidationResult:
    """Validate a raw candidate command.

    Args:
        raw: JSON-like structure produced by an upstream agent.

    Returns:
        A ``ValidationResult``.  On failure ``error.field`` names the first
        offending field as a dotted snake_case path.
    """
    if not isinstance(raw, Mapping):
        return ValidationResult(
            error=ValidationError(
                field="", reason=f"expected a mapping, got {type(raw).__name__}"
            )
        )

    kind = raw.get("kind")
    if kind is None:
        return ValidationResult(error=ValidationError("kind", "field required"))
    if not isinstance(kind, str) or kind not in _KNOWN_KINDS:
        return ValidationResult(
            error=ValidationError("kind", f"unsupported command kind {kind!r}")
        )

    try:
        command = _COMMAND_ADAPTER.validate_python(dict(raw))
    except pydantic.ValidationError as exc:
        return ValidationResult(error=_first_error(exc, kind))
    except (TypeError, ValueError) as exc:
        return ValidationResult(error=ValidationError("", str(exc)))
    return ValidationResult(command=command)


def command_id_of(raw: Any) -> Optional[str]:
    """Best-effort extraction of a command id from raw input (for auditing rejects)."""
    if not isinstance(raw, Mapping):
        return None
    for key in ("command_id", "commandId"):
        value = raw.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def subject_id_of(raw: Any) -> str:
    if not isinstance(raw, Mapping):
        return ""
    for key in ("subject_id", "subjectId"):
        value = raw.get(key)
        if isinstance(value, str):
            return value
    return ""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _first_error(exc: pydantic.ValidationError, kind: str) -> ValidationError:
    errors = exc.errors()
    if not errors:
        return ValidationError("", str(exc))
    first = errors[0]
    loc = list(first.get("loc", ()))
    # discriminated unions prefix the location with the tag
    if loc and loc[0] == kind:
        loc = loc[1:]
    if not loc and first.get("type") in _KIND_ERRORS:
        return ValidationError("kind", first.get("msg", "invalid kind"))
    field = ".".join(to_snake(p) if isinstance(p, str) else str(p) for p in loc)
    reason = first.get("msg", "invalid value")
    if reason.startswith("Value error, "):
        reason = reason[len("Value error, "):]
    return ValidationError(field, reason)
