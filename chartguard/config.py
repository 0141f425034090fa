"""
Safety Policy Configuration.

The safety policy is *configuration*, not code: which kinds are blocked,
the minimum confidence, which kinds need single or dual sign-off,
restricted hours, and how long an approval may stay pending.  Each
deployment supplies its own values in YAML; this module validates them into
an immutable ``SafetyPolicy`` and serves it through ``PolicyProvider``.

**Hot reload:** ``PolicyProvider.reload()`` swaps the active policy
atomically.  Callers take one ``current()`` snapshot per evaluation, so a
reload never changes the policy mid-evaluation.

DISCLAIMER: Policy values are workflow routing parameters.  They are not
clinical protocols or prescribing rules.
"""

from __future__ import annotations

import logging
import re
import threading
from datetime import time
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chartguard.models import CommandKind, Role

logger = logging.getLogger(__name__)


_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw])\s*$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}
_CLOCK_RE = re.compile(r"^\s*([01]?\d|2[0-3]):([0-5]\d)\s*$")


def parse_duration(value: Any) -> int:
    """Convert ``"24h"``, ``"7d"``, ``"2w"`` or a number of seconds to seconds.

    Raises:
        ValueError: If the value is not a positive duration.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = int(value)
    elif isinstance(value, str):
        match = _DURATION_RE.match(value)
        if match is None:
            raise ValueError(
                f"invalid duration {value!r}; expected e.g. '30m', '24h', '7d'"
            )
        seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    else:
        raise ValueError(f"invalid duration: {value!r}")
    if seconds <= 0:
        raise ValueError(f"duration must be positive, got {value!r}")
    return seconds


# ---------------------------------------------------------------------------
# Restricted hours
# ---------------------------------------------------------------------------

class RestrictedHours(BaseModel):
    """A daily window during which commands are blocked.

    ``start`` and ``end`` are times of day compared against the evaluation
    timestamp as given (UTC unless the caller passes an aware local time).
    A window with ``start > end`` wraps midnight, e.g. 22:00-06:00.
    """

    model_config = ConfigDict(frozen=True)

    start: time
    end: time
    exempt_kinds: frozenset[CommandKind] = Field(
        default_factory=frozenset,
        description="Kinds that may still be routed during the window.",
    )

    @field_validator("start", "end", mode="before")
    @classmethod
    def clock_time(cls, v: Any) -> Any:
        # YAML 1.1 reads an unquoted 22:00 as the base-60 integer 1320
        if isinstance(v, time):
            return v
        if not isinstance(v, str):
            raise ValueError(
                f"expected a quoted \"HH:MM\" time of day, got {v!r}"
            )
        match = _CLOCK_RE.match(v)
        if match is None:
            raise ValueError(f"invalid time of day {v!r}; expected \"HH:MM\"")
        return time(int(match.group(1)), int(match.group(2)))

    @model_validator(mode="after")
    def window_not_empty(self) -> "RestrictedHours":
        if self.start == self.end:
            raise ValueError("restricted_hours start and end must differ")
        return self

    def contains(self, moment: time) -> bool:
        moment = moment.replace(tzinfo=None)
        if self.start < self.end:
            return self.start <= moment < self.end
        return moment >= self.start or moment < self.end


# ---------------------------------------------------------------------------
# Safety policy
# ---------------------------------------------------------------------------

# Kinds that change the chart or a claim.  Flags and history summaries are
# informational and may auto-execute.
APPROVAL_REQUIRED_KINDS: frozenset[CommandKind] = frozenset({
    CommandKind.CREATE_NOTE_DRAFT,
    CommandKind.PROPOSE_PROBLEM_UPDATE,
    CommandKind.SUGGEST_BILLING_CODES,
    CommandKind.SUGGEST_MEDICATION_CHANGE,
    CommandKind.QUEUE_REFERRAL_LETTER,
})


class SafetyPolicy(BaseModel):
    """Immutable safety policy evaluated by ``chartguard.policy_engine``."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="default", min_length=1)
    min_confidence: float = Field(
        default=0.5,
        ge=0,
        le=1,
        description="Commands below this confidence are blocked outright.",
    )
    blocked_kinds: frozenset[CommandKind] = Field(
        default_factory=frozenset,
        description="Kinds that may never reach the record store.",
    )
    dual_approval_kinds: frozenset[CommandKind] = Field(
        default_factory=frozenset,
        description="Kinds that need sign-off from several distinct approvers.",
    )
    approval_required_kinds: frozenset[CommandKind] = Field(
        default_factory=lambda: APPROVAL_REQUIRED_KINDS,
        description=(
            "Kinds that always need human sign-off, whatever the producer's "
            "requires_approval flag says."
        ),
    )
    required_approvers: int = Field(
        default=2,
        ge=2,
        description="Distinct approvers needed for a dual-approval kind.",
    )
    restricted_hours: Optional[RestrictedHours] = None
    quiet_hours: Optional[RestrictedHours] = Field(
        default=None,
        description=(
            "Window during which commands still route normally but carry a "
            "warning; ``exempt_kinds`` are not warned."
        ),
    )
    approval_ttl: int = Field(
        default=24 * 3600,
        description="Seconds a pending approval lives before it expires.",
    )
    approval_ttl_overrides: dict[CommandKind, int] = Field(
        default_factory=dict,
        description="Per-kind TTL in seconds (e.g. billing codes may wait a week).",
    )
    approver_roles: dict[CommandKind, frozenset[Role]] = Field(
        default_factory=dict,
        description=(
            "Roles allowed to resolve approvals for a kind.  Kinds not listed "
            "may be resolved by any role holding the resolve permission."
        ),
    )

    @field_validator("approval_ttl", mode="before")
    @classmethod
    def ttl_is_duration(cls, v: Any) -> int:
        return parse_duration(v)

    @field_validator("approval_ttl_overrides", mode="before")
    @classmethod
    def overrides_are_durations(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        return {kind: parse_duration(ttl) for kind, ttl in v.items()}

    @model_validator(mode="after")
    def blocked_and_dual_disjoint(self) -> "SafetyPolicy":
        overlap = self.blocked_kinds & self.dual_approval_kinds
        if overlap:
            names = sorted(k.value for k in overlap)
            raise ValueError(
                f"kinds cannot be both blocked and dual-approval: {names}"
            )
        return self

    def ttl_for(self, kind: CommandKind) -> int:
        """Return the approval TTL (seconds) for a command kind."""
        return self.approval_ttl_overrides.get(kind, self.approval_ttl)


DEFAULT_POLICY = SafetyPolicy(
    name="default",
    min_confidence=0.5,
    blocked_kinds=frozenset(),
    dual_approval_kinds=frozenset(),
    restricted_hours=None,
    approval_ttl=24 * 3600,
)
"""Built-in policy used when no configuration file is supplied.

Blocks nothing by kind; every chart-changing kind needs one approval and the
confidence floor is 0.5.  Deployments should always supply their
own policy.
"""


# ---------------------------------------------------------------------------
# Policy provider (hot reload)
# ---------------------------------------------------------------------------

class PolicyProvider:
    """Holds the active ``SafetyPolicy`` and swaps it atomically on reload.

    The provider is an injected handle, not a module-level singleton;
    every pipeline instance receives its own (or a shared) provider.
    """

    def __init__(
        self,
        policy: SafetyPolicy = DEFAULT_POLICY,
        path: str | Path | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._policy = policy
        self._path = Path(path) if path is not None else None
        self._generation = 0

    @classmethod
    def from_yaml(cls, path: str | Path) -> "PolicyProvider":
        return cls(load_policy_from_yaml(path), path=path)

    def current(self) -> SafetyPolicy:
        """Return the active policy snapshot."""
        with self._lock:
            return self._policy

    @property
    def generation(self) -> int:
        """Number of times the policy has been replaced."""
        return self._generation

    def update(self, policy: SafetyPolicy) -> None:
        with self._lock:
            self._policy = policy
            self._generation += 1
        logger.info("Safety policy '%s' activated (generation %d)", policy.name, self._generation)

    def reload(self) -> SafetyPolicy:
        """Re-read the policy file and activate it.

        A file that fails validation leaves the active policy untouched.

        Raises:
            ValueError: If the provider was not created from a file.
        """
        if self._path is None:
            raise ValueError("PolicyProvider has no backing file to reload from")
        policy = load_policy_from_yaml(self._path)
        self.update(policy)
        return policy


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_policy_from_yaml(path: str | Path) -> SafetyPolicy:
    """Load a safety policy from a YAML file.

    The file must contain a top-level ``safety_policy`` mapping::

        safety_policy:
          name: "clinic-alpha"
          min_confidence: 0.6
          blocked_kinds: [suggest_medication_change]
          dual_approval_kinds: [propose_problem_update]
          restricted_hours: {start: "22:00", end: "06:00",
                             exempt_kinds: [flag_abnormal_result]}
          approval_ttl: 24h
          approval_ttl_overrides: {suggest_billing_codes: 7d}

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If the policy fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Policy file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "safety_policy" not in raw:
        raise ValueError(
            "YAML file must contain a top-level 'safety_policy' mapping."
        )
    data = raw["safety_policy"]
    if not isinstance(data, dict):
        raise ValueError("'safety_policy' must be a mapping.")

    policy = SafetyPolicy.model_validate(data)
    logger.debug("Loaded safety policy '%s' from %s", policy.name, path)
    return policy
