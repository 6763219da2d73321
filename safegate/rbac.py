"""
Role-Based Access Control (RBAC) for SafeGate operations.

Gates the operations that are not subject-scoped: approving overrides,
deciding clinical reviews, and reading or managing the audit ledger.
Subject-scoped access (who may read or change a subject's data) is decided
by the access control gate, not here.

**Roles:**

* USER             -- subject or family member; may request review.
* CLINICAL_ADVISOR -- may approve overrides and decide reviews.
* SUPER_ADMIN      -- clinical authority plus policy and audit management.
* AUDITOR          -- read-only access to audit queries and exports.
* SYSTEM           -- internal jobs (archival sweep).

Roles themselves come from the external identity provider.
"""

from __future__ import annotations

from safegate.errors import AccessDeniedError
from safegate.models import Role


# ---------------------------------------------------------------------------
# Permission definitions
# ---------------------------------------------------------------------------

# Maps (role, action) -> allowed
_PERMISSIONS: dict[tuple[Role, str], bool] = {
    # User permissions
    (Role.USER, "approve_override"): False,
    (Role.USER, "request_review"): True,
    (Role.USER, "decide_review"): False,
    (Role.USER, "query_audit"): False,
    (Role.USER, "export_audit"): False,
    (Role.USER, "manage_policy"): False,
    (Role.USER, "archive_audit"): False,
    # Clinical advisor permissions
    (Role.CLINICAL_ADVISOR, "approve_override"): True,
    (Role.CLINICAL_ADVISOR, "request_review"): True,
    (Role.CLINICAL_ADVISOR, "decide_review"): True,
    (Role.CLINICAL_ADVISOR, "query_audit"): True,
    (Role.CLINICAL_ADVISOR, "export_audit"): False,
    (Role.CLINICAL_ADVISOR, "manage_policy"): False,
    (Role.CLINICAL_ADVISOR, "archive_audit"): False,
    # Super admin permissions
    (Role.SUPER_ADMIN, "approve_override"): True,
    (Role.SUPER_ADMIN, "request_review"): True,
    (Role.SUPER_ADMIN, "decide_review"): True,
    (Role.SUPER_ADMIN, "query_audit"): True,
    (Role.SUPER_ADMIN, "export_audit"): True,
    (Role.SUPER_ADMIN, "manage_policy"): True,
    (Role.SUPER_ADMIN, "archive_audit"): True,
    # Auditor permissions
    (Role.AUDITOR, "approve_override"): False,
    (Role.AUDITOR, "request_review"): False,
    (Role.AUDITOR, "decide_review"): False,
    (Role.AUDITOR, "query_audit"): True,
    (Role.AUDITOR, "export_audit"): True,
    (Role.AUDITOR, "manage_policy"): False,
    (Role.AUDITOR, "archive_audit"): False,
    # System permissions
    (Role.SYSTEM, "approve_override"): False,
    (Role.SYSTEM, "request_review"): True,
    (Role.SYSTEM, "decide_review"): False,
    (Role.SYSTEM, "query_audit"): False,
    (Role.SYSTEM, "export_audit"): False,
    (Role.SYSTEM, "manage_policy"): False,
    (Role.SYSTEM, "archive_audit"): True,
}


def check_permission(role: Role, action: str) -> bool:
    """Check whether a role may perform an action.  Unknown actions are denied."""
    return _PERMISSIONS.get((role, action), False)


def require_permission(role: Role, action: str) -> None:
    """Enforce a permission check; raise if denied.

    Raises:
        AccessDeniedError: If the role is not permitted.
    """
    if not check_permission(role, action):
        raise AccessDeniedError(
            f"Role '{role.value}' is not permitted to perform action '{action}'."
        )


def get_permissions_for_role(role: Role) -> dict[str, bool]:
    return {
        action: allowed
        for (r, action), allowed in _PERMISSIONS.items()
        if r == role
    }
