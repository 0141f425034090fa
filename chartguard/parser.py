"""
Model-output parser boundary.

Turns the raw text an upstream model produced into a validated
``Command``.  Models wrap JSON in prose or Markdown code fences, truncate
output, or emit several objects; this module accepts the first complete
JSON object it can find and fails with ``ParseError`` on anything else.
It never guesses at missing fields.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Mapping, Optional

from chartguard.errors import ParseError, ValidationError
from chartguard.models import Command
from chartguard.validation import validate

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class CommandParseError(ParseError):
    """Model output parsed as JSON but is not a valid candidate command."""

    def __init__(self, error: ValidationError) -> None:
        super().__init__(f"Model output is not a valid command: {error}")
        self.error = error


def extract_json_object(text: str) -> dict[str, Any]:
    """Return the first complete JSON object embedded in ``text``.

    Code-fenced blocks are tried first, then the first balanced ``{...}``
    span of the raw text.

    Raises:
        ParseError: If no complete JSON object can be found.
    """
    if not isinstance(text, str):
        raise ParseError(f"expected model output text, got {type(text).__name__}")
    if not text.strip():
        raise ParseError("model output is empty")

    candidates = [m.group(1) for m in _FENCE_RE.finditer(text)]
    candidates.append(text)
    decoder = json.JSONDecoder()
    last_error: Optional[str] = None
    for candidate in candidates:
        start = candidate.find("{")
        if start == -1:
            continue
        # decode from the outermost brace only; a truncated object must not
        # yield one of its children
        try:
            value, _ = decoder.raw_decode(candidate, start)
        except json.JSONDecodeError as exc:
            last_error = exc.msg
            continue
        return value

    if last_error is not None:
        raise ParseError(f"model output contains malformed or truncated JSON: {last_error}")
    raise ParseError("model output contains no JSON object")


def parse_command(text: str, defaults: Optional[Mapping[str, Any]] = None) -> Command:
    """Parse model output into a validated command.

    Args:
        text: Raw model output.
        defaults: Fields the caller knows independently of the model (e.g.
            ``subject_id``, ``source_model``).  Values present in the model
            output win.

    Raises:
        ParseError: If no JSON object can be extracted.
        CommandParseError: If the object fails validation.
    """
    payload = extract_json_object(text)
    raw = {**dict(defaults or {}), **payload}
    result = validate(raw)
    if not result.ok:
        logger.warning("Rejected model output: %s", result.error)
        raise CommandParseError(result.error)
    return result.command
