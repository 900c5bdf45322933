"""
Tests for role permissions, the budget override capability and token handling
"""
import pytest
from datetime import timedelta
from fastapi import HTTPException

from auth import create_access_token, decode_access_token
from permissions import (
    Role, Action, PermissionChecker, PermissionDeniedError,
    has_permission, can_override_budget, require_permission
)


class TestRole:

    def test_parse(self):
        assert Role.parse("Project_Manager") == Role.PROJECT_MANAGER
        assert Role.parse(" PM ") == Role.PM
        assert Role.parse(Role.OWNER) == Role.OWNER

    def test_unknown(self):
        assert Role.parse("janitor") is None
        assert Role.parse(None) is None
        assert Role.parse("") is None


class TestHasPermission:

    def test_approval_roles(self):
        for role in ("owner", "project_manager", "pm", "accountant"):
            assert has_permission({"user_id": "u", "role": role}, Action.APPROVE_TRANSACTION)
        for role in ("supervisor", "clerk", "investor"):
            assert not has_permission({"user_id": "u", "role": role}, Action.APPROVE_TRANSACTION)

    def test_budget_allocation_is_managers_only(self):
        assert has_permission({"role": "pm"}, Action.ALLOCATE_BUDGET)
        assert not has_permission({"role": "accountant"}, Action.ALLOCATE_BUDGET)

    def test_action_as_string(self):
        assert has_permission({"role": "supervisor"}, "submit_transaction")
        assert not has_permission({"role": "supervisor"}, "launch_rockets")

    def test_missing_user(self):
        assert not has_permission(None, Action.VIEW_FINANCES)


class TestBudgetOverride:

    def test_elevated_roles(self):
        assert can_override_budget("owner")
        assert can_override_budget("project_manager")
        assert can_override_budget("PM")

    def test_other_roles(self):
        assert not can_override_budget("accountant")
        assert not can_override_budget("supervisor")
        assert not can_override_budget(None)


class TestRequirePermission:

    def test_denied(self):
        with pytest.raises(PermissionDeniedError) as exc:
            require_permission({"user_id": "sup-1", "role": "supervisor"}, Action.DELETE_TRANSACTION)
        assert exc.value.user_id == "sup-1"
        assert "delete_transaction" in str(exc.value)

    def test_custom_checker(self):
        require_permission({"role": "clerk"}, Action.DELETE_TRANSACTION, checker=lambda user, action: True)

    def test_http_checker_maps_to_403(self):
        with pytest.raises(HTTPException) as exc:
            PermissionChecker().check({"user_id": "c", "role": "clerk"}, Action.RECALCULATE)
        assert exc.value.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_role_rejected(self):
        with pytest.raises(HTTPException) as exc:
            await PermissionChecker().get_authenticated_user({"user_id": "x", "role": "janitor"})
        assert exc.value.status_code == 403


class TestTokens:

    def test_round_trip(self):
        token = create_access_token("pm-1", "pm")
        payload = decode_access_token(token)
        assert payload["user_id"] == "pm-1"
        assert payload["role"] == "pm"

    def test_expired(self):
        token = create_access_token("pm-1", "pm", expires_delta=timedelta(minutes=-5))
        with pytest.raises(HTTPException) as exc:
            decode_access_token(token)
        assert exc.value.status_code == 401
        assert "expired" in exc.value.detail

    def test_garbage(self):
        with pytest.raises(HTTPException) as exc:
            decode_access_token("not-a-token")
        assert exc.value.status_code == 401
