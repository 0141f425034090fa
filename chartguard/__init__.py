"""
ChartGuard AI Command Governance Pipeline
=========================================

A Python framework that stands between autonomous AI agents and a clinical
record store.  Every candidate command an agent proposes is validated,
routed by a configurable safety policy, held for clinician sign-off where
required, executed idempotently, and recorded in an append-only,
hash-chained audit trail.

DISCLAIMER: This software is not a medical device.  It does not evaluate
the clinical appropriateness of AI proposals; it enforces that no proposal
reaches a patient record without passing the configured policy and, where
required, explicit review by licensed healthcare professionals.
"""

__version__ = "0.1.0"
