"""
Tests for safegate.rbac -- Role-Based Access Control.
"""

import pytest

from safegate.errors import AccessDeniedError
from safegate.models import Role
from safegate.rbac import check_permission, get_permissions_for_role, require_permission


class TestRBAC:
    def test_advisor_can_approve_override(self):
        assert check_permission(Role.CLINICAL_ADVISOR, "approve_override") is True

    def test_user_cannot_approve_override(self):
        assert check_permission(Role.USER, "approve_override") is False

    def test_user_can_request_review(self):
        assert check_permission(Role.USER, "request_review") is True

    def test_auditor_can_export_audit(self):
        assert check_permission(Role.AUDITOR, "export_audit") is True

    def test_auditor_cannot_decide_review(self):
        assert check_permission(Role.AUDITOR, "decide_review") is False

    def test_advisor_cannot_manage_policy(self):
        assert check_permission(Role.CLINICAL_ADVISOR, "manage_policy") is False

    def test_admin_can_manage_policy(self):
        assert check_permission(Role.SUPER_ADMIN, "manage_policy") is True

    def test_unknown_action_denied(self):
        assert check_permission(Role.SUPER_ADMIN, "delete_audit") is False

    def test_require_permission_raises_on_denied(self):
        with pytest.raises(AccessDeniedError):
            require_permission(Role.USER, "export_audit")

    def test_require_permission_passes_on_allowed(self):
        require_permission(Role.SYSTEM, "archive_audit")  # should not raise

    def test_get_permissions_returns_all_actions(self):
        perms = get_permissions_for_role(Role.AUDITOR)
        assert perms["export_audit"] is True
        assert perms["query_audit"] is True
        assert perms.get("manage_policy") is False
        assert len(perms) == 7
