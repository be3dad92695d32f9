"""Permit lifecycle states and transitions.

State Machine Diagram:

    ┌───────────┐
    │ INITIATED │ ← Supervisor submits the permit
    └─────┬─────┘
          │
          ├──────────────────────────┐
          │ all approvers approved   │ any approver rejected
    ┌─────▼─────┐              ┌─────▼─────┐
    │ APPROVED  │              │ REJECTED  │
    └─────┬─────┘              └───────────┘
          │ final submit
    ┌─────▼──────────┐
    │ READY_TO_START │
    └─────┬──────────┘
          │ start (now >= start_time)
    ┌─────▼─────┐  request extension  ┌─────────────────────┐
    │  ACTIVE   │────────────────────►│ EXTENSION_REQUESTED │
    │           │◄────────────────────│                     │
    └─────┬─────┘  apply / deny       └──────────┬──────────┘
          │ close                                │ close
          └──────────────┬───────────────────────┘
                   ┌─────▼─────┐
                   │  CLOSED   │
                   └───────────┘
"""

from enum import Enum
from typing import Set, Dict, Optional, NamedTuple


class PermitStatus(str, Enum):
    """States in the permit lifecycle."""

    INITIATED = "Initiated"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    READY_TO_START = "Ready_To_Start"
    ACTIVE = "Active"
    EXTENSION_REQUESTED = "Extension_Requested"
    CLOSED = "Closed"


class PermitTransition(str, Enum):
    """Actions that trigger status transitions."""

    APPROVE_ALL = "approve_all"                   # INITIATED → APPROVED
    REJECT = "reject"                             # INITIATED → REJECTED
    FINAL_SUBMIT = "final_submit"                 # APPROVED → READY_TO_START
    START = "start"                               # READY_TO_START → ACTIVE
    REQUEST_EXTENSION = "request_extension"       # ACTIVE → EXTENSION_REQUESTED
    APPLY_EXTENSION = "apply_extension"           # EXTENSION_REQUESTED → ACTIVE
    DENY_EXTENSION = "deny_extension"             # EXTENSION_REQUESTED → ACTIVE
    CLOSE = "close"                               # ACTIVE/EXTENSION_REQUESTED → CLOSED


class ApproverRole(str, Enum):
    """Roles that sign off on a permit, in approval order."""

    AREA_MANAGER = "Area_Manager"
    SAFETY_OFFICER = "Safety_Officer"
    SITE_LEADER = "Site_Leader"


class ApprovalDecision(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class TransitionRule(NamedTuple):
    """Defines a valid status transition."""
    from_state: PermitStatus
    to_state: PermitStatus
    transition: PermitTransition


TRANSITION_RULES: list[TransitionRule] = [
    # Approval
    TransitionRule(PermitStatus.INITIATED, PermitStatus.APPROVED, PermitTransition.APPROVE_ALL),
    TransitionRule(PermitStatus.INITIATED, PermitStatus.REJECTED, PermitTransition.REJECT),

    # Supervisor lifecycle
    TransitionRule(PermitStatus.APPROVED, PermitStatus.READY_TO_START, PermitTransition.FINAL_SUBMIT),
    TransitionRule(PermitStatus.READY_TO_START, PermitStatus.ACTIVE, PermitTransition.START),

    # Extensions
    TransitionRule(PermitStatus.ACTIVE, PermitStatus.EXTENSION_REQUESTED, PermitTransition.REQUEST_EXTENSION),
    TransitionRule(PermitStatus.EXTENSION_REQUESTED, PermitStatus.ACTIVE, PermitTransition.APPLY_EXTENSION),
    TransitionRule(PermitStatus.EXTENSION_REQUESTED, PermitStatus.ACTIVE, PermitTransition.DENY_EXTENSION),

    # Closure
    TransitionRule(PermitStatus.ACTIVE, PermitStatus.CLOSED, PermitTransition.CLOSE),
    TransitionRule(PermitStatus.EXTENSION_REQUESTED, PermitStatus.CLOSED, PermitTransition.CLOSE),
]

# Lookup tables
VALID_TRANSITIONS: Dict[PermitStatus, Set[PermitTransition]] = {}
TRANSITION_TARGETS: Dict[tuple[PermitStatus, PermitTransition], TransitionRule] = {}

for rule in TRANSITION_RULES:
    VALID_TRANSITIONS.setdefault(rule.from_state, set()).add(rule.transition)
    TRANSITION_TARGETS[(rule.from_state, rule.transition)] = rule


# No outgoing transitions
TERMINAL_STATES: Set[PermitStatus] = {
    PermitStatus.REJECTED,
    PermitStatus.CLOSED,
}

# Work is underway; the permit may be closed or extended
CLOSABLE_STATES: Set[PermitStatus] = {
    PermitStatus.ACTIVE,
    PermitStatus.EXTENSION_REQUESTED,
}

# Approved but work not started yet
AWAITING_START_STATES: Set[PermitStatus] = {
    PermitStatus.APPROVED,
    PermitStatus.READY_TO_START,
}


def can_transition(from_state: PermitStatus, transition: PermitTransition) -> bool:
    """Check if a transition is valid from the given state."""
    return transition in VALID_TRANSITIONS.get(from_state, set())


def get_transition_rule(from_state: PermitStatus, transition: PermitTransition) -> Optional[TransitionRule]:
    """Get the transition rule for a state/action combination."""
    return TRANSITION_TARGETS.get((from_state, transition))


def get_target_state(from_state: PermitStatus, transition: PermitTransition) -> Optional[PermitStatus]:
    """Get the target state for a transition."""
    rule = get_transition_rule(from_state, transition)
    return rule.to_state if rule else None
