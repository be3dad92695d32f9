"""Permit state machine implementation.

Validates and applies status transitions on a loaded ``Permit`` aggregate,
records every transition in the permit's history, and fires callbacks so
the caller can collect side effects to run after commit.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from ptw.core.clock import utcnow
from ptw.db.models import ApprovalRecord, Permit, PermitClosure, PermitHistory

from .errors import AlreadyDecided, InvalidInput, InvalidRole, InvalidState, TooEarly
from .records import ChecklistResult
from .states import (
    ApprovalDecision,
    ApproverRole,
    PermitStatus,
    PermitTransition,
    TERMINAL_STATES,
    can_transition,
    get_transition_rule,
)

logger = logging.getLogger(__name__)


class PermitStateMachine:
    """
    State machine for one permit.

    Owns the permit's authoritative status. It does no locking or
    persistence of its own: the caller loads the permit inside the permit's
    lock scope, drives the machine, and commits.
    """

    def __init__(self, permit: Permit, *, clock: Callable[[], datetime] = utcnow):
        """
        Initialize the state machine.

        Args:
            permit: The permit aggregate, with approvals loadable
            clock: Source of "now" for decision and lifecycle timestamps
        """
        self.permit = permit
        self._clock = clock
        self._callbacks: Dict[PermitTransition, list[Callable]] = {}

    @property
    def state(self) -> PermitStatus:
        """Current status of the permit."""
        return PermitStatus(self.permit.status)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def required_roles(self) -> List[ApproverRole]:
        """Roles that must approve, in approval order."""
        return [role for role in ApproverRole if role.value in self.permit.approvals]

    def now(self) -> datetime:
        return self._clock()

    def can_perform(self, transition: PermitTransition) -> bool:
        return can_transition(self.state, transition)

    def transition(
        self,
        transition: PermitTransition,
        *,
        comment: Optional[str] = None,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PermitStatus:
        """
        Perform a status transition.

        Args:
            transition: The transition to perform
            comment: Optional comment recorded in history
            user_id: Identity performing the transition
            metadata: Additional details to record

        Returns:
            The new status after transition

        Raises:
            InvalidState: If the transition is not legal from the current status
        """
        self.require(transition)
        rule = get_transition_rule(self.state, transition)

        from_state = self.state
        to_state = rule.to_state
        now = self._clock()

        transition_record = {
            "permit_id": self.permit.id,
            "from_state": from_state.value,
            "to_state": to_state.value,
            "transition": transition.value,
            "user_id": user_id,
            "comment": comment,
            "metadata": metadata or {},
            "timestamp": now,
        }

        self.permit.history.append(
            PermitHistory(
                sequence=len(self.permit.history) + 1,
                from_status=from_state.value,
                to_status=to_state.value,
                transition=transition.value,
                user_id=user_id,
                comment=comment,
                details=metadata or {},
                created_at=now,
            )
        )
        self.permit.status = to_state.value
        self.permit.updated_at = now

        logger.info(
            "Permit %s: %s -> %s (%s)",
            self.permit.serial, from_state.value, to_state.value, transition.value,
        )

        self._execute_callbacks(transition, transition_record)

        return self.state

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def check_can_decide(self, role: Union[ApproverRole, str]) -> ApprovalRecord:
        """
        Validate that ``role`` may record a decision now.

        Returns:
            The role's pending approval record

        Raises:
            InvalidState: If the permit is not Initiated
            InvalidRole: If the role is not one of the permit's required approvers
            AlreadyDecided: If the role has already approved or rejected
        """
        if self.state != PermitStatus.INITIATED:
            raise InvalidState(
                f"Cannot record an approval for permit in status {self.state.value}",
                self.state,
                permit_id=self.permit.id,
            )
        try:
            role = ApproverRole(role)
        except ValueError:
            raise InvalidRole(f"Unknown approver role: {role}", self.permit.id)

        record = self.permit.approvals.get(role.value)
        if record is None:
            raise InvalidRole(
                f"{role.value} is not a required approver for permit {self.permit.serial}",
                self.permit.id,
            )
        if not record.is_pending:
            raise AlreadyDecided(
                f"{role.value} already {record.decision.lower()} permit {self.permit.serial}",
                self.permit.id,
            )
        return record

    def record_approval(
        self,
        role: Union[ApproverRole, str],
        decision: Union[ApprovalDecision, str],
        comment: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
    ) -> ApprovalRecord:
        """
        Record one approver's decision.

        A rejection ends the permit immediately; other pending records stay
        Pending. An approval re-evaluates whether every required role has now
        approved.

        Raises:
            InvalidState, InvalidRole, AlreadyDecided: See check_can_decide
            InvalidInput: If the decision is Pending, or a rejection has no comment
        """
        record = self.check_can_decide(role)

        try:
            decision = ApprovalDecision(decision)
        except ValueError:
            raise InvalidInput(f"Unknown decision: {decision}", self.permit.id)
        if decision == ApprovalDecision.PENDING:
            raise InvalidInput("Decision must be Approved or Rejected", self.permit.id)
        if decision == ApprovalDecision.REJECTED and not (comment and comment.strip()):
            raise InvalidInput("Rejection reason is required", self.permit.id)

        record.decision = decision.value
        record.comment = comment
        record.decided_at = self._clock()
        self.permit.updated_at = record.decided_at

        if decision == ApprovalDecision.REJECTED:
            self.permit.rejection_reason = comment
            self.transition(
                PermitTransition.REJECT,
                comment=comment,
                user_id=user_id,
                metadata={"role": record.role},
            )
        else:
            self.evaluate_approvals(user_id=user_id)

        return record

    def evaluate_approvals(self, *, user_id: Optional[str] = None) -> bool:
        """
        Move the permit to Approved once every required role has approved.

        Safe to call repeatedly: returns True only on the call that performed
        the transition.
        """
        if self.state != PermitStatus.INITIATED:
            return False

        records = list(self.permit.approvals.values())
        if not records:
            return False
        if any(r.decision != ApprovalDecision.APPROVED.value for r in records):
            return False

        self.transition(
            PermitTransition.APPROVE_ALL,
            user_id=user_id,
            metadata={"roles": [role.value for role in self.required_roles]},
        )
        return True

    # ------------------------------------------------------------------
    # Supervisor lifecycle
    # ------------------------------------------------------------------

    def final_submit(self, *, user_id: Optional[str] = None) -> PermitStatus:
        self.require(PermitTransition.FINAL_SUBMIT)
        self.permit.final_submitted_at = self._clock()
        return self.transition(PermitTransition.FINAL_SUBMIT, user_id=user_id)

    def start(self, now: Optional[datetime] = None, *, user_id: Optional[str] = None) -> PermitStatus:
        """
        Begin work.

        Raises:
            InvalidState: Unless the permit is Ready_To_Start
            TooEarly: If ``now`` is before the scheduled start time
        """
        self.require(PermitTransition.START)
        now = now or self._clock()
        if now < self.permit.start_time:
            raise TooEarly(
                f"Permit {self.permit.serial} cannot start before {self.permit.start_time.isoformat()}",
                self.permit.id,
            )
        self.permit.started_at = now
        return self.transition(PermitTransition.START, user_id=user_id)

    def close(self, checklist: ChecklistResult, *, user_id: Optional[str] = None) -> PermitStatus:
        """
        Close the permit against the completion checklist. There is no reopen.

        Raises:
            InvalidState: Unless the permit is Active or Extension_Requested
            IncompleteChecklist: If any checklist item is unchecked
            MissingSignature: If the signature is blank
        """
        self.require(PermitTransition.CLOSE)
        checklist.validate(self.permit.id)

        now = self._clock()
        self.permit.closure = PermitClosure(
            closed_by=user_id,
            housekeeping_done=checklist.housekeeping_done,
            tools_removed=checklist.tools_removed,
            locks_removed=checklist.locks_removed,
            area_restored=checklist.area_restored,
            notes=checklist.notes,
            incident_report=checklist.incident_report,
            signature=checklist.signature.strip(),
            closed_at=now,
        )
        self.permit.closed_at = now
        return self.transition(
            PermitTransition.CLOSE,
            user_id=user_id,
            metadata={"incident_reported": bool(checklist.incident_report)},
        )

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def register_callback(
        self,
        transition: PermitTransition,
        callback: Callable[[Dict[str, Any]], None],
    ) -> None:
        """
        Register a callback to be executed after a transition.

        Args:
            transition: The transition to hook
            callback: Function to call with the transition record
        """
        self._callbacks.setdefault(transition, []).append(callback)

    def require(self, transition: PermitTransition) -> None:
        """Raise InvalidState unless ``transition`` is legal from the current status."""
        if not self.can_perform(transition):
            raise InvalidState(
                f"Cannot {transition.value} permit in status {self.state.value}",
                self.state,
                transition,
                permit_id=self.permit.id,
            )

    def _execute_callbacks(self, transition: PermitTransition, record: Dict[str, Any]) -> None:
        for callback in self._callbacks.get(transition, []):
            try:
                callback(record)
            except Exception:
                # Hooks never fail the transition
                logger.exception("Callback error for %s on permit %s", transition.value, self.permit.serial)
