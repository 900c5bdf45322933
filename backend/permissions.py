from fastapi import HTTPException, status, Depends
from enum import Enum
from typing import Optional, Callable, Dict, FrozenSet
from auth import get_current_user
import logging

logger = logging.getLogger(__name__)


class Role(str, Enum):
    OWNER = "owner"
    PROJECT_MANAGER = "project_manager"
    PM = "pm"
    ACCOUNTANT = "accountant"
    SUPERVISOR = "supervisor"
    CLERK = "clerk"
    INVESTOR = "investor"

    @classmethod
    def parse(cls, value) -> Optional["Role"]:
        """Map a raw role string to a Role; unknown roles map to None."""
        if isinstance(value, cls):
            return value
        if not value:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class Action(str, Enum):
    SUBMIT_TRANSACTION = "submit_transaction"
    APPROVE_TRANSACTION = "approve_transaction"
    REJECT_TRANSACTION = "reject_transaction"
    EDIT_TRANSACTION = "edit_transaction"
    DELETE_TRANSACTION = "delete_transaction"
    ALLOCATE_BUDGET = "allocate_budget"
    ADJUST_BUDGET = "adjust_budget"
    RECALCULATE = "recalculate"
    VIEW_FINANCES = "view_finances"
    MANAGE_INVESTORS = "manage_investors"


_MANAGERS = frozenset({Role.OWNER, Role.PROJECT_MANAGER, Role.PM})
_FINANCE = _MANAGERS | {Role.ACCOUNTANT}
_SITE = _FINANCE | {Role.SUPERVISOR, Role.CLERK}

# Action -> roles allowed to perform it
PERMISSION_MATRIX: Dict[Action, FrozenSet[Role]] = {
    Action.SUBMIT_TRANSACTION: _SITE,
    Action.EDIT_TRANSACTION: _SITE,
    Action.APPROVE_TRANSACTION: _FINANCE,
    Action.REJECT_TRANSACTION: _FINANCE,
    Action.DELETE_TRANSACTION: _MANAGERS,
    Action.ALLOCATE_BUDGET: _MANAGERS,
    Action.ADJUST_BUDGET: frozenset({Role.OWNER}),
    Action.RECALCULATE: _FINANCE,
    Action.VIEW_FINANCES: _FINANCE | {Role.INVESTOR},
    Action.MANAGE_INVESTORS: frozenset({Role.OWNER, Role.ACCOUNTANT}),
}

# Roles that may push an approval through a soft budget shortfall
BUDGET_OVERRIDE_ROLES = _MANAGERS


class PermissionDeniedError(Exception):
    """Raised when a user's role does not allow an action"""
    def __init__(self, user_id: Optional[str], role, action):
        self.user_id = user_id
        self.role = role
        self.action = action
        super().__init__(
            f"User {user_id} with role '{role}' is not allowed to {getattr(action, 'value', action)}"
        )


def has_permission(user: dict, action) -> bool:
    """Role-based check for an authenticated user dict ({user_id, role})."""
    role = Role.parse((user or {}).get("role"))
    if role is None:
        return False
    try:
        action = Action(action)
    except ValueError:
        return False
    return role in PERMISSION_MATRIX.get(action, frozenset())


def can_override_budget(role) -> bool:
    """Capability check for the soft budget gate."""
    return Role.parse(role) in BUDGET_OVERRIDE_ROLES


def require_permission(user: dict, action, checker: Callable[[dict, object], bool] = has_permission) -> None:
    """Raise PermissionDeniedError unless the checker allows the action."""
    if not checker(user, action):
        user = user or {}
        logger.warning(
            f"[PERMISSION] Denied {getattr(action, 'value', action)} "
            f"for user {user.get('user_id')} ({user.get('role')})"
        )
        raise PermissionDeniedError(user.get("user_id"), user.get("role"), action)


class PermissionChecker:
    """
    Permission enforcement at the HTTP boundary.

    RULES:
    1. User must be authenticated (bearer token with user_id and role)
    2. Role must be one of the known ledger roles
    3. Role-based permissions apply per action
    """

    def __init__(self, checker: Callable[[dict, object], bool] = has_permission):
        self.checker = checker

    async def get_authenticated_user(self, current_user: dict = Depends(get_current_user)):
        """Get and validate authenticated user"""
        if Role.parse(current_user.get("role")) is None:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Unknown role: {current_user.get('role')}"
            )
        return current_user

    def check(self, user: dict, action) -> bool:
        """HTTP flavour of require_permission"""
        try:
            require_permission(user, action, self.checker)
        except PermissionDeniedError as e:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=str(e)
            )
        return True
