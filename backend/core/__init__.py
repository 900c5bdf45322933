"""
Ledger Core Engine Modules
"""
from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    validate_non_negative,
    validate_positive,
    safe_multiply,
    safe_divide,
    safe_subtract,
    safe_add,
    safe_sum,
    clamp_non_negative,
    calculate_percentage,
    calculate_remaining,
    FinancialPrecisionError,
    NegativeValueError
)

from .invariant_validator import (
    FinancialInvariantValidator,
    InvariantViolationError,
    find_allocation_overrun,
    validate_scope_snapshot
)

from .state_machine import (
    StateMachine,
    StateMachineError,
    InvalidTransitionError,
    create_approval_state_machine
)

from .version_lock_engine import (
    OptimisticVersionWriter,
    VersionConflictError,
    DocumentNotFoundError
)

__all__ = [
    # Financial Precision
    'to_decimal',
    'round_financial',
    'to_float',
    'validate_non_negative',
    'validate_positive',
    'safe_multiply',
    'safe_divide',
    'safe_subtract',
    'safe_add',
    'safe_sum',
    'clamp_non_negative',
    'calculate_percentage',
    'calculate_remaining',
    'FinancialPrecisionError',
    'NegativeValueError',
    # Invariant Validator
    'FinancialInvariantValidator',
    'InvariantViolationError',
    'find_allocation_overrun',
    'validate_scope_snapshot',
    # State Machine
    'StateMachine',
    'StateMachineError',
    'InvalidTransitionError',
    'create_approval_state_machine',
    # Version Engine
    'OptimisticVersionWriter',
    'VersionConflictError',
    'DocumentNotFoundError',
]
