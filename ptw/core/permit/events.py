"""Post-commit permit events and the sink interface that receives them."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .states import PermitTransition
from .views import PermitView


class NotificationEventType(str, Enum):
    PERMIT_INITIATED = "permit.initiated"
    APPROVAL_RECORDED = "permit.approval_recorded"
    PERMIT_APPROVED = "permit.approved"
    PERMIT_REJECTED = "permit.rejected"
    PERMIT_READY = "permit.ready_to_start"
    PERMIT_STARTED = "permit.started"
    EXTENSION_REQUESTED = "permit.extension_requested"
    EXTENSION_APPLIED = "permit.extension_applied"
    EXTENSION_DENIED = "permit.extension_denied"
    PERMIT_CLOSED = "permit.closed"
    START_REMINDER = "permit.start_reminder"
    END_REMINDER = "permit.end_reminder"


TRANSITION_EVENTS: Dict[PermitTransition, NotificationEventType] = {
    PermitTransition.APPROVE_ALL: NotificationEventType.PERMIT_APPROVED,
    PermitTransition.REJECT: NotificationEventType.PERMIT_REJECTED,
    PermitTransition.FINAL_SUBMIT: NotificationEventType.PERMIT_READY,
    PermitTransition.START: NotificationEventType.PERMIT_STARTED,
    PermitTransition.REQUEST_EXTENSION: NotificationEventType.EXTENSION_REQUESTED,
    PermitTransition.APPLY_EXTENSION: NotificationEventType.EXTENSION_APPLIED,
    PermitTransition.DENY_EXTENSION: NotificationEventType.EXTENSION_DENIED,
    PermitTransition.CLOSE: NotificationEventType.PERMIT_CLOSED,
}


@dataclass(frozen=True)
class PermitEvent:
    """Something that happened to a permit, with its committed state."""

    event_type: NotificationEventType
    permit: PermitView
    occurred_at: datetime
    actor_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class NotificationSink(ABC):
    """Receives events after the permit lock has been released."""

    @abstractmethod
    def dispatch(self, event: PermitEvent) -> None:
        """Deliver one event. Implementations may raise; callers log and move on."""
