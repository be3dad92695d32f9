"""Errors raised by permit lifecycle operations.

Every error carries a stable ``code`` so API handlers can render it without
inspecting the message text.
"""

from typing import Optional, Sequence
from uuid import UUID

from .states import PermitStatus, PermitTransition


class PermitError(Exception):
    """Base class for permit lifecycle errors."""

    code = "permit_error"

    def __init__(self, message: str, permit_id: Optional[UUID] = None):
        super().__init__(message)
        self.message = message
        self.permit_id = permit_id


class InvalidState(PermitError):
    """Raised when an operation is not legal from the permit's current status."""

    code = "invalid_state"

    def __init__(
        self,
        message: str,
        status: PermitStatus,
        transition: Optional[PermitTransition] = None,
        permit_id: Optional[UUID] = None,
    ):
        super().__init__(message, permit_id)
        self.status = status
        self.transition = transition


class InvalidRole(PermitError):
    code = "invalid_role"


class AlreadyDecided(PermitError):
    code = "already_decided"


class TooEarly(PermitError):
    code = "too_early"


class InvalidEndTime(PermitError):
    code = "invalid_end_time"


class InvalidInput(PermitError):
    code = "invalid_input"


class IncompleteChecklist(PermitError):
    """Raised when closure is attempted with unchecked checklist items."""

    code = "incomplete_checklist"

    def __init__(self, missing: Sequence[str], permit_id: Optional[UUID] = None):
        super().__init__(
            f"All checklist items must be completed before closing: {', '.join(missing)}",
            permit_id,
        )
        self.missing = list(missing)


class MissingSignature(PermitError):
    code = "missing_signature"


class NotFound(PermitError):
    code = "not_found"


class NotAuthorized(PermitError):
    """Raised when the acting user is not the supervisor or assigned approver."""

    code = "not_authorized"


class ConcurrencyConflict(PermitError):
    """Lock acquisition or commit failed; the whole operation is safe to retry."""

    code = "concurrency_conflict"
