"""
Synthetic Scenario: AI Command Governance Walkthrough
=====================================================

This script drives the ChartGuard governance pipeline through the five
reference scenarios using entirely synthetic data.  No real patient data,
PHI, or PII is used.

Scenarios demonstrated:
  A. Low-confidence proposal is blocked
  B. Confident flag that needs no sign-off is auto-executed
  C. Note draft is queued, approved by a clinician, then executed
  D. Billing proposal is never reviewed and times out
  E. Medication change is rejected with a documented reason

Afterwards the script prints a reviewer summary, verifies the audit hash
chain and exports the (redacted) audit trail.

DISCLAIMER: This is a synthetic demonstration.  This software is not a
medical device and all AI proposals require review by licensed
professionals.

Usage:
    python examples/governance_scenario.py
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

from chartguard.config import DEFAULT_POLICY, PolicyProvider
from chartguard.executor import CommandExecutor
from chartguard.models import Decision, Role
from chartguard.pipeline import GovernancePipeline
from chartguard.record_store import InMemoryRecordStore


class _Clock:
    """Manually advanced clock so the timeout scenario runs instantly."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _command(kind: str, command_id: str, **fields) -> dict:
    return {
        "kind": kind,
        "commandId": command_id,
        "sourceModel": "synthetic-llm-v1",
        "subjectId": "Patient/synthetic-001",
        **fields,
    }


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _banner("ChartGuard Synthetic Scenario: AI Command Governance")
    print("DISCLAIMER: All data in this demo is entirely synthetic.\n")

    policy_file = Path(__file__).parent / "safety_policy.yaml"
    if policy_file.exists():
        provider = PolicyProvider.from_yaml(policy_file)
    else:
        provider = PolicyProvider(DEFAULT_POLICY)
    policy = provider.current()
    print(f"Active policy: {policy.name} (min confidence {policy.min_confidence})")

    clock = _Clock(datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc))
    records = InMemoryRecordStore(subjects={"Patient/synthetic-001"})
    pipeline = GovernancePipeline(
        executor=CommandExecutor(records),
        policy=provider,
        clock=clock,
    )

    # ------------------------------------------------------------------
    _banner("Scenario A: low confidence is blocked")
    outcome = pipeline.submit(_command(
        "flag_abnormal_result", "cmd-demo-a",
        confidence=0.3, observationId="obs-1", severity="high",
        interpretation="Potassium above reference range",
    ))
    print(f"Outcome: {outcome.status.value} ({outcome.reason})")

    # ------------------------------------------------------------------
    _banner("Scenario B: confident flag auto-executes")
    outcome = pipeline.submit(_command(
        "flag_abnormal_result", "cmd-demo-b",
        confidence=0.9, requiresApproval=False, observationId="obs-2",
        severity="critical", interpretation="Troponin elevated",
        suggestedActions=["Repeat troponin in 3 hours"],
    ))
    print(f"Outcome: {outcome.status.value} -> {outcome.resource_id}")

    # ------------------------------------------------------------------
    _banner("Scenario C: note draft queued, approved, executed")
    outcome = pipeline.submit(_command(
        "create_note_draft", "cmd-demo-c",
        confidence=0.85, encounterId="enc-1", noteType="progress",
        content="Synthetic progress note. Patient stable.",
    ))
    print(f"Outcome: {outcome.status.value}, approval {outcome.approval_id}")
    resolution = pipeline.resolve_approval(
        outcome.approval_id, Decision.APPROVE, "dr_synthetic_001",
    )
    print(f"Resolution: {resolution.status.value} -> {resolution.resource_id}")

    # ------------------------------------------------------------------
    _banner("Scenario D: billing proposal times out")
    outcome = pipeline.submit(_command(
        "suggest_billing_codes", "cmd-demo-d",
        confidence=0.8, encounterId="enc-1",
        suggestedCodes=[{"code": "99213", "system": "CPT", "confidence": 0.8}],
    ))
    print(f"Outcome: {outcome.status.value}, approval {outcome.approval_id}")
    clock.advance(timedelta(days=8))
    expired = pipeline.sweep_expired()
    print(f"Sweep expired: {[r.id for r in expired]}")

    # ------------------------------------------------------------------
    _banner("Scenario E: medication change rejected")
    outcome = pipeline.submit(_command(
        "suggest_medication_change", "cmd-demo-e",
        confidence=0.75, action="start",
        medication={"code": "197361", "system": "RxNorm", "display": "Amlodipine 5 mg"},
        rationale="Persistent elevated blood pressure readings",
    ))
    print(f"Outcome: {outcome.status.value}, approval {outcome.approval_id}")
    summary = pipeline.review_summary(outcome.approval_id)
    print(json.dumps(summary.to_dict(), indent=2, default=str))
    resolution = pipeline.resolve_approval(
        outcome.approval_id, Decision.REJECT, "dr_synthetic_002",
        note="insufficient evidence", actor_role=Role.PHARMACIST,
    )
    print(f"Resolution: {resolution.status.value}, note: {resolution.record.resolution_note}")

    # ------------------------------------------------------------------
    _banner("Audit trail")
    valid, broken_at = pipeline.audit_log.verify_chain()
    print(f"Chain verification: valid={valid}, broken_at={broken_at}")
    export = pipeline.export_audit(Role.AUDITOR, subject_id="Patient/synthetic-001")
    print(json.dumps(export["export_metadata"], indent=2))
    for event in pipeline.query_audit(subject_id="Patient/synthetic-001"):
        print(f"  {event.sequence:>3} {event.event_type.value:<18} {event.command_id}")


if __name__ == "__main__":
    main()
