"""End-time extensions for active permits."""

import logging
from datetime import datetime
from typing import Optional

from ptw.db.models import PermitExtension

from .errors import InvalidEndTime, InvalidState
from .machine import PermitStateMachine
from .records import ExtensionRequest
from .states import PermitTransition

logger = logging.getLogger(__name__)

EXTENSION_PENDING = "pending"
EXTENSION_APPLIED = "applied"
EXTENSION_DENIED = "denied"


class ExtensionManager:
    """
    Validates and applies extension requests through a permit's state machine.

    A request moves the permit to Extension_Requested without touching
    ``end_time``; applying it moves ``end_time`` and returns the permit to
    Active, denying it returns to Active with ``end_time`` unchanged.
    """

    def __init__(self, machine: PermitStateMachine):
        self.machine = machine

    @property
    def permit(self):
        return self.machine.permit

    def request_extension(
        self,
        new_end_time: datetime,
        reason: str,
        completion_percent: int,
        *,
        requested_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PermitExtension:
        """
        Record a pending extension request.

        Raises:
            InvalidState: Unless the permit is Active
            InvalidEndTime: Unless new_end_time is after the current end_time
            InvalidInput: On a blank reason or completion_percent outside 0-100
        """
        self.machine.require(PermitTransition.REQUEST_EXTENSION)

        if new_end_time <= self.permit.end_time:
            raise InvalidEndTime(
                f"New end time {new_end_time.isoformat()} must be after current end time "
                f"{self.permit.end_time.isoformat()}",
                self.permit.id,
            )

        request = ExtensionRequest(
            new_end_time=new_end_time,
            reason=(reason or "").strip(),
            completion_percent=completion_percent,
            requested_at=now or self.machine.now(),
            requested_by=requested_by,
        )
        request.validate(self.permit.id)

        extension = PermitExtension(
            requested_by=request.requested_by,
            original_end_time=self.permit.end_time,
            new_end_time=request.new_end_time,
            reason=request.reason,
            completion_percent=request.completion_percent,
            status=EXTENSION_PENDING,
            requested_at=request.requested_at,
        )
        self.permit.extensions.append(extension)

        self.machine.transition(
            PermitTransition.REQUEST_EXTENSION,
            comment=request.reason,
            user_id=requested_by,
            metadata={
                "new_end_time": request.new_end_time.isoformat(),
                "completion_percent": request.completion_percent,
            },
        )
        return extension

    def apply_extension(self, *, user_id: Optional[str] = None) -> PermitExtension:
        """Move end_time to the pending request's value and reactivate the permit."""
        extension = self._pending(PermitTransition.APPLY_EXTENSION)

        original_end_time = self.permit.end_time
        self.permit.end_time = extension.new_end_time
        extension.status = EXTENSION_APPLIED
        extension.resolved_at = self.machine.now()

        self.machine.transition(
            PermitTransition.APPLY_EXTENSION,
            user_id=user_id,
            metadata={
                "original_end_time": original_end_time.isoformat(),
                "new_end_time": extension.new_end_time.isoformat(),
            },
        )
        return extension

    def deny_extension(self, reason: Optional[str] = None, *, user_id: Optional[str] = None) -> PermitExtension:
        """Discard the pending request and reactivate the permit unchanged."""
        extension = self._pending(PermitTransition.DENY_EXTENSION)

        extension.status = EXTENSION_DENIED
        extension.decision_reason = reason
        extension.resolved_at = self.machine.now()

        self.machine.transition(PermitTransition.DENY_EXTENSION, comment=reason, user_id=user_id)
        return extension

    def _pending(self, transition: PermitTransition) -> PermitExtension:
        self.machine.require(transition)
        extension = self.permit.pending_extension
        if extension is None:
            raise InvalidState(
                f"Permit {self.permit.serial} has no pending extension request",
                self.machine.state,
                transition,
                permit_id=self.permit.id,
            )
        return extension
