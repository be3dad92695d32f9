"""Permit lifecycle and multi-party approval workflow.

Permits move through:
Initiated → Approved → Ready_To_Start → Active ⇄ Extension_Requested → Closed
with Initiated → Rejected when any approver rejects.
"""

from .states import (
    ApprovalDecision,
    ApproverRole,
    PermitStatus,
    PermitTransition,
    TransitionRule,
    TRANSITION_RULES,
    TERMINAL_STATES,
    CLOSABLE_STATES,
    can_transition,
    get_target_state,
)
from .errors import (
    PermitError,
    InvalidState,
    InvalidRole,
    AlreadyDecided,
    TooEarly,
    InvalidEndTime,
    InvalidInput,
    IncompleteChecklist,
    MissingSignature,
    NotFound,
    NotAuthorized,
    ConcurrencyConflict,
)
from .records import ChecklistResult, ExtensionRequest, PermitDraft
from .machine import PermitStateMachine
from .extension import ExtensionManager
from .locks import PermitLockRegistry
from .directory import ApproverDirectory, AssignedApproverDirectory, StaticApproverDirectory
from .views import PermitView, ApprovalView, ExtensionView, ClosureView, HistoryEntryView
from .events import NotificationEventType, NotificationSink, PermitEvent
from .service import PermitLifecycleService

__all__ = [
    # States
    "ApprovalDecision",
    "ApproverRole",
    "PermitStatus",
    "PermitTransition",
    "TransitionRule",
    "TRANSITION_RULES",
    "TERMINAL_STATES",
    "CLOSABLE_STATES",
    "can_transition",
    "get_target_state",
    # Errors
    "PermitError",
    "InvalidState",
    "InvalidRole",
    "AlreadyDecided",
    "TooEarly",
    "InvalidEndTime",
    "InvalidInput",
    "IncompleteChecklist",
    "MissingSignature",
    "NotFound",
    "NotAuthorized",
    "ConcurrencyConflict",
    # Records
    "ChecklistResult",
    "ExtensionRequest",
    "PermitDraft",
    # Machine
    "PermitStateMachine",
    "ExtensionManager",
    "PermitLockRegistry",
    # Directory
    "ApproverDirectory",
    "AssignedApproverDirectory",
    "StaticApproverDirectory",
    # Views
    "PermitView",
    "ApprovalView",
    "ExtensionView",
    "ClosureView",
    "HistoryEntryView",
    # Events
    "NotificationEventType",
    "NotificationSink",
    "PermitEvent",
    # Service
    "PermitLifecycleService",
]
