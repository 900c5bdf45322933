"""
LEDGER CORE - TRANSACTION LIFECYCLE STATE MACHINE

A reusable state machine for transaction status transitions with:
- Transition registration
- Transition validation
- Automatic status updates
- Invalid transition rejection

Usage:
    material_machine = StateMachine("material")
    material_machine.register("submitted", "pending_approval")
    material_machine.register("pending_approval", "approved")

    material_machine.validate_transition(doc["status"], "approved")
    update = material_machine.get_status_update("approved")
"""

from typing import Dict, Any, Optional, List, Set, Tuple, Iterable
from datetime import datetime
import logging

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class StateMachineError(Exception):
    """Base exception for state machine errors."""
    pass


class InvalidTransitionError(StateMachineError):
    """Raised when attempting an invalid state transition."""
    def __init__(self, entity: str, from_state: str, to_state: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []

        allowed_str = f" Allowed transitions from '{from_state}': {self.allowed}" if self.allowed else ""
        message = f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'.{allowed_str}"
        super().__init__(message)


# =============================================================================
# TRANSITION DEFINITION
# =============================================================================

class Transition:
    """Definition of a state transition."""

    def __init__(self, from_state: str, to_state: str, description: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        self.description = description

    def __repr__(self):
        return f"Transition({self.from_state} -> {self.to_state})"


# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    """
    State machine for a single transaction type.

    Guards (capital, budget) are not registered here; the approval
    service runs them after the transition itself is known to be legal.

    Example:
        machine = StateMachine("expense")
        machine.register("SUBMITTED", "PENDING")
        machine.register_many("PENDING", ["APPROVED", "REJECTED"])
        machine.validate_transition("PENDING", "APPROVED")
    """

    def __init__(self, entity_name: str, status_field: str = "status"):
        self.entity_name = entity_name
        self.status_field = status_field

        # Transitions indexed by (from_state, to_state)
        self._transitions: Dict[Tuple[str, str], Transition] = {}

        # Valid states
        self._states: Set[str] = set()

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(self, from_state: str, to_state: str, description: str = "") -> "StateMachine":
        """Register a state transition. Returns self for chaining."""
        key = (from_state, to_state)

        if key in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Overwriting transition {self.entity_name}: "
                f"'{from_state}' -> '{to_state}'"
            )

        self._transitions[key] = Transition(from_state, to_state, description)
        self._states.add(from_state)
        self._states.add(to_state)
        return self

    def register_many(self, from_states, to_states) -> "StateMachine":
        """Register every (from, to) pair of the two state lists."""
        if isinstance(from_states, str):
            from_states = [from_states]
        if isinstance(to_states, str):
            to_states = [to_states]
        for src in from_states:
            for dst in to_states:
                self.register(src, dst)
        return self

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def get_allowed_transitions(self, from_state: str) -> List[str]:
        """Get list of valid target states from a given state."""
        return [dst for (src, dst) in self._transitions.keys() if src == from_state]

    def can_transition(self, from_state: str, to_state: str) -> bool:
        """Check if transition is registered."""
        return (from_state, to_state) in self._transitions

    def validate_transition(self, from_state: Optional[str], to_state: str) -> None:
        """
        Validate that a transition is registered.
        Raises InvalidTransitionError if not valid.
        """
        if from_state is None:
            raise StateMachineError(
                f"{self.entity_name} is missing status field: {self.status_field}"
            )
        if not self.can_transition(from_state, to_state):
            raise InvalidTransitionError(
                entity=self.entity_name,
                from_state=from_state,
                to_state=to_state,
                allowed=self.get_allowed_transitions(from_state)
            )

    def get_status_update(self, to_state: str) -> Dict[str, Any]:
        """
        Get the update dict for changing status.
        Use this to $set on the entity after validation.
        """
        now = datetime.utcnow()
        return {
            self.status_field: to_state,
            "statusChangedAt": now,
            "updatedAt": now
        }

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get_states(self) -> List[str]:
        """Get all registered states."""
        return list(self._states)

    def get_graph(self) -> Dict[str, List[str]]:
        """Get state graph as adjacency list."""
        graph = {state: [] for state in self._states}
        for (src, dst) in self._transitions.keys():
            graph[src].append(dst)
        return graph

    def __repr__(self):
        return (
            f"StateMachine({self.entity_name}, "
            f"states={len(self._states)}, "
            f"transitions={len(self._transitions)})"
        )


# =============================================================================
# HELPER: CREATE STATE MACHINE WITH THE SHARED APPROVAL SHAPE
# =============================================================================

def create_approval_state_machine(
    entity_name: str,
    draft: str,
    submitted: str,
    pending: str,
    approved: str,
    rejected: str,
    settled: Iterable[str] = (),
    cancelled: Optional[str] = None
) -> StateMachine:
    """
    Build the lifecycle every ledger transaction shares:

        draft -> submitted -> pending -> {approved, rejected}
        draft/submitted -> pending (direct submission)
        approved -> settled states (paid / received), in the order given
        approved -> pending (approval reversal on rejection)
        rejected -> submitted/pending (resubmission)
        any non-settled state -> cancelled, when a cancelled state exists

    Types whose vocabulary collapses two of these (e.g. no separate
    submitted state) pass the same value twice; self-loops and repeated
    pairs are skipped.
    """
    machine = StateMachine(entity_name)

    def add(src, dst):
        if src != dst and not machine.can_transition(src, dst):
            machine.register(src, dst)

    add(draft, submitted)
    add(draft, pending)
    add(submitted, pending)
    add(submitted, approved)
    add(submitted, rejected)
    add(pending, approved)
    add(pending, rejected)
    add(approved, pending)
    add(rejected, submitted)
    add(rejected, pending)

    previous = approved
    for state in settled:
        add(previous, state)
        previous = state

    if cancelled:
        for state in (draft, submitted, pending, approved, rejected):
            add(state, cancelled)

    return machine
