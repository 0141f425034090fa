"""
Role-Based Access Control (RBAC) for ChartGuard.

Gates who may resolve approvals and who may read or export the audit
trail.  Per-kind approver roles come from the safety policy
(``SafetyPolicy.approver_roles``); the table below is the coarse
permission layer underneath.

**Roles:**

* PRACTITIONER       -- licensed clinician; resolves clinical proposals.
* NURSE              -- may sign off note drafts where policy allows.
* PHARMACIST         -- may sign off medication proposals where policy allows.
* BILLING_SPECIALIST -- may sign off billing-code proposals where policy allows.
* ADMIN              -- manages policy, exports audit.
* AUDITOR            -- read-only audit access and export.
* SYSTEM             -- the pipeline itself (submission, sweeps).

DISCLAIMER: This is an in-process access layer.  Production deployments
should back actor identity with an enterprise identity provider.
"""

from __future__ import annotations

from chartguard.config import SafetyPolicy
from chartguard.models import CommandKind, Role


# ---------------------------------------------------------------------------
# Permission definitions
# ---------------------------------------------------------------------------

_REVIEWERS = (Role.PRACTITIONER, Role.NURSE, Role.PHARMACIST, Role.BILLING_SPECIALIST)

# Maps (role, action) -> allowed
_PERMISSIONS: dict[tuple[Role, str], bool] = {
    **{(r, "resolve_approval"): True for r in _REVIEWERS},
    **{(r, "view_approval"): True for r in _REVIEWERS},
    **{(r, "query_audit"): True for r in _REVIEWERS},
    (Role.ADMIN, "view_approval"): True,
    (Role.ADMIN, "manage_policy"): True,
    (Role.ADMIN, "query_audit"): True,
    (Role.ADMIN, "export_audit"): True,
    (Role.AUDITOR, "view_approval"): True,
    (Role.AUDITOR, "query_audit"): True,
    (Role.AUDITOR, "export_audit"): True,
    (Role.SYSTEM, "submit_command"): True,
    (Role.SYSTEM, "sweep_approvals"): True,
}

ACTIONS = frozenset(action for _, action in _PERMISSIONS)


def check_permission(role: Role, action: str) -> bool:
    """Check whether a role has permission to perform an action.

    Unlisted (role, action) pairs are denied.
    """
    return _PERMISSIONS.get((role, action), False)


def require_permission(role: Role, action: str) -> None:
    """Enforce a permission check; raise if denied.

    Raises:
        PermissionError: If the role is not permitted.
    """
    if not check_permission(role, action):
        raise PermissionError(
            f"Role '{role.value}' is not permitted to perform action '{action}'."
        )


def can_resolve(role: Role, kind: CommandKind, policy: SafetyPolicy) -> bool:
    """Whether ``role`` may approve or reject a command of ``kind``."""
    if not check_permission(role, "resolve_approval"):
        return False
    allowed = policy.approver_roles.get(kind)
    return allowed is None or role in allowed


def require_resolver(role: Role, kind: CommandKind, policy: SafetyPolicy) -> None:
    """Raise ``PermissionError`` unless ``role`` may resolve ``kind``."""
    require_permission(role, "resolve_approval")
    if not can_resolve(role, kind, policy):
        allowed = sorted(r.value for r in policy.approver_roles.get(kind, ()))
        raise PermissionError(
            f"Role '{role.value}' may not resolve '{kind.value}' approvals; "
            f"policy allows {allowed}."
        )


def get_permissions_for_role(role: Role) -> dict[str, bool]:
    """Return every known action mapped to whether ``role`` may perform it."""
    return {action: check_permission(role, action) for action in sorted(ACTIONS)}
