"""Permit lifecycle service.

Provides the high-level API for driving permits through their lifecycle,
including per-permit locking, database persistence, conflict retries and
post-commit notifications.
"""

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union
from uuid import UUID

from sqlalchemy import and_, func
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from ptw.core.clock import to_naive_utc, utcnow
from ptw.core.config import Settings, get_settings
from ptw.db.models import ApprovalRecord, Permit

from .directory import ApproverDirectory, AssignedApproverDirectory
from .errors import (
    ConcurrencyConflict,
    InvalidInput,
    InvalidRole,
    NotAuthorized,
    NotFound,
)
from .events import NotificationEventType, NotificationSink, PermitEvent, TRANSITION_EVENTS
from .extension import ExtensionManager
from .locks import PermitLockRegistry
from .machine import PermitStateMachine
from .records import ChecklistResult, PermitDraft
from .states import (
    ApprovalDecision,
    ApproverRole,
    AWAITING_START_STATES,
    CLOSABLE_STATES,
    PermitStatus,
    PermitTransition,
)
from .views import HistoryEntryView, PermitView

logger = logging.getLogger(__name__)

# Serializes serial-number allocation between concurrent initiations
INITIATE_LOCK_KEY = "permit:initiate"

# Reminders fire for windows within lead +/- this tolerance
REMINDER_TOLERANCE = timedelta(minutes=1)

# Roles that decide extension requests; any required role when a permit has neither
EXTENSION_REVIEWER_ROLES = frozenset({ApproverRole.SAFETY_OFFICER, ApproverRole.SITE_LEADER})

PermitId = Union[UUID, str]
ApproverAssignments = Union[Mapping[Union[ApproverRole, str], Optional[str]], Iterable[Union[ApproverRole, str]]]


class PermitLifecycleService:
    """
    High-level service for managing permits.

    Handles:
    - Initiating permits with their required approvers
    - Recording approvals and rejections
    - Supervisor lifecycle steps (final submit, start, extension, close)
    - Querying status, history and dashboards
    - Start/end window reminders

    Every write runs as one unit of work: hold the permit's lock, load the
    permit in a fresh session, drive the state machine, commit, snapshot a
    ``PermitView``, release the lock, then notify.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        notifier: Optional[NotificationSink] = None,
        directory: Optional[ApproverDirectory] = None,
        locks: Optional[PermitLockRegistry] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the lifecycle service.

        Args:
            session_factory: Creates a new database session per attempt
            notifier: Receives events after commit; None disables notifications
            directory: Approver lookup; defaults to the approver on each record
            locks: Per-permit lock registry, shared by every service instance
                writing to the same database from this process
            settings: Lock timeout, retry and extension settings
            clock: Source of "now"
        """
        self.session_factory = session_factory
        self.notifier = notifier
        self.directory = directory if directory is not None else AssignedApproverDirectory()
        self.locks = locks if locks is not None else PermitLockRegistry()
        self.settings = settings or get_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def initiate(
        self,
        draft: PermitDraft,
        approvers: Optional[ApproverAssignments] = None,
        *,
        user_id: Optional[str] = None,
    ) -> PermitView:
        """
        Create a permit in Initiated with a Pending record per required role.

        Args:
            draft: Work details and the scheduled window
            approvers: Role to approver id mapping, or just the roles to take
                from the directory's site assignments; the whole site
                assignment when omitted. Roles with no approver are dropped.
            user_id: The initiating supervisor

        Raises:
            InvalidInput: On missing fields, a bad window or no primary approver
            InvalidRole: On an unknown role name
        """
        draft = replace(
            draft,
            start_time=to_naive_utc(draft.start_time),
            end_time=to_naive_utc(draft.end_time),
            permit_types=list(draft.permit_types or []),
            details=dict(draft.details or {}),
        )
        draft.validate()

        if approvers is None:
            approvers = self.directory.site_approvers(draft.site_id)
        assignments = self._normalize_approvers(approvers, draft.site_id)

        def work(session: Session, events: List[Dict[str, Any]]) -> Permit:
            now = self.clock()
            permit = Permit(
                id=uuid.uuid4(),
                serial=self._next_serial(session),
                site_id=draft.site_id.strip(),
                work_description=draft.work_description.strip(),
                work_location=draft.work_location.strip(),
                permit_types=draft.permit_types,
                details=draft.details,
                created_by=user_id,
                status=PermitStatus.INITIATED.value,
                start_time=draft.start_time,
                end_time=draft.end_time,
                created_at=now,
                updated_at=now,
            )
            for role, approver_id in assignments.items():
                permit.approvals[role.value] = ApprovalRecord(
                    role=role.value,
                    approver_id=approver_id,
                    decision=ApprovalDecision.PENDING.value,
                    created_at=now,
                )
            session.add(permit)

            self._emit(
                events,
                NotificationEventType.PERMIT_INITIATED,
                actor_id=user_id,
                occurred_at=now,
                details={"approvers": {role.value: approver_id for role, approver_id in assignments.items()}},
            )
            logger.info("Permit %s initiated by %s", permit.serial, user_id or "unknown")
            return permit

        return self._execute(INITIATE_LOCK_KEY, "initiate", work)

    def record_approval(
        self,
        permit_id: PermitId,
        role: Union[ApproverRole, str],
        decision: Union[ApprovalDecision, str],
        comment: Optional[str] = None,
        *,
        actor_id: Optional[str] = None,
    ) -> PermitView:
        """
        Record one approver's decision.

        The "all required roles approved" check runs inside the permit's
        lock, so concurrent approvals produce exactly one Approved transition.

        Raises:
            NotFound: If the permit does not exist
            InvalidState: If the permit is no longer Initiated
            InvalidRole: If the role is not required on this permit
            AlreadyDecided: If the role has already decided
            NotAuthorized: If actor_id is not the role's assigned approver
            InvalidInput: On a Pending decision or a rejection with no comment
        """
        key = self._coerce_id(permit_id)

        def work(session: Session, events: List[Dict[str, Any]]) -> Permit:
            permit = self._load_for_update(session, key)
            machine = self._machine(permit, events)

            record = machine.check_can_decide(role)
            self._authorize_approver(permit, ApproverRole(record.role), actor_id)

            # The approval event precedes any transition it triggers
            position = len(events)
            machine.record_approval(record.role, decision, comment, user_id=actor_id)
            recorded: List[Dict[str, Any]] = []
            self._emit(
                recorded,
                NotificationEventType.APPROVAL_RECORDED,
                actor_id=actor_id,
                occurred_at=record.decided_at,
                details={"role": record.role, "decision": record.decision, "comment": record.comment},
            )
            events[position:position] = recorded
            return permit

        return self._execute(key, "record_approval", work)

    def final_submit(self, permit_id: PermitId, *, actor_id: Optional[str] = None) -> PermitView:
        """Move an Approved permit to Ready_To_Start."""
        key = self._coerce_id(permit_id)

        def work(session: Session, events: List[Dict[str, Any]]) -> Permit:
            permit = self._load_for_update(session, key)
            machine = self._machine(permit, events)
            machine.require(PermitTransition.FINAL_SUBMIT)
            self._authorize_supervisor(permit, actor_id)
            machine.final_submit(user_id=actor_id)
            return permit

        return self._execute(key, "final_submit", work)

    def start(
        self,
        permit_id: PermitId,
        *,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PermitView:
        """
        Begin work on a Ready_To_Start permit.

        Raises:
            InvalidState: Unless the permit is Ready_To_Start
            TooEarly: If now is before the permit's start time
        """
        key = self._coerce_id(permit_id)
        now = to_naive_utc(now)

        def work(session: Session, events: List[Dict[str, Any]]) -> Permit:
            permit = self._load_for_update(session, key)
            machine = self._machine(permit, events)
            machine.require(PermitTransition.START)
            self._authorize_supervisor(permit, actor_id)
            machine.start(now, user_id=actor_id)
            return permit

        return self._execute(key, "start", work)

    def request_extension(
        self,
        permit_id: PermitId,
        new_end_time: datetime,
        reason: str,
        completion_percent: int,
        *,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PermitView:
        """
        Request a later end time for an Active permit.

        With ``extension_auto_apply`` enabled the request is applied in the
        same unit of work and the permit comes back Active with the new end
        time; otherwise it stays Extension_Requested until applied or denied.

        Raises:
            InvalidState: Unless the permit is Active
            InvalidEndTime: Unless new_end_time is after the current end time
            InvalidInput: On a blank reason or completion outside 0-100
        """
        key = self._coerce_id(permit_id)
        new_end_time = to_naive_utc(new_end_time)
        now = to_naive_utc(now)
        auto_apply = self.settings.extension_auto_apply

        def work(session: Session, events: List[Dict[str, Any]]) -> Permit:
            permit = self._load_for_update(session, key)
            machine = self._machine(permit, events)
            machine.require(PermitTransition.REQUEST_EXTENSION)
            self._authorize_supervisor(permit, actor_id)

            manager = ExtensionManager(machine)
            manager.request_extension(
                new_end_time,
                reason,
                completion_percent,
                requested_by=actor_id,
                now=now,
            )
            if auto_apply:
                manager.apply_extension(user_id=actor_id)
            return permit

        return self._execute(key, "request_extension", work)

    def apply_extension(self, permit_id: PermitId, *, actor_id: Optional[str] = None) -> PermitView:
        """
        Apply the pending extension and return the permit to Active.

        Raises:
            InvalidState: Unless an extension is pending
            NotAuthorized: If actor_id is not one of the permit's extension reviewers
        """
        key = self._coerce_id(permit_id)

        def work(session: Session, events: List[Dict[str, Any]]) -> Permit:
            permit = self._load_for_update(session, key)
            machine = self._machine(permit, events)
            machine.require(PermitTransition.APPLY_EXTENSION)
            self._authorize_extension_reviewer(permit, actor_id)
            ExtensionManager(machine).apply_extension(user_id=actor_id)
            return permit

        return self._execute(key, "apply_extension", work)

    def deny_extension(
        self,
        permit_id: PermitId,
        reason: Optional[str] = None,
        *,
        actor_id: Optional[str] = None,
    ) -> PermitView:
        """Discard the pending extension; the end time is unchanged."""
        key = self._coerce_id(permit_id)

        def work(session: Session, events: List[Dict[str, Any]]) -> Permit:
            permit = self._load_for_update(session, key)
            machine = self._machine(permit, events)
            machine.require(PermitTransition.DENY_EXTENSION)
            self._authorize_extension_reviewer(permit, actor_id)
            ExtensionManager(machine).deny_extension(reason, user_id=actor_id)
            return permit

        return self._execute(key, "deny_extension", work)

    def close(
        self,
        permit_id: PermitId,
        checklist: ChecklistResult,
        *,
        actor_id: Optional[str] = None,
    ) -> PermitView:
        """
        Close the permit against the completion checklist.

        Raises:
            InvalidState: Unless the permit is Active or Extension_Requested
            IncompleteChecklist: If any checklist item is unchecked
            MissingSignature: If the signature is blank
        """
        key = self._coerce_id(permit_id)

        def work(session: Session, events: List[Dict[str, Any]]) -> Permit:
            permit = self._load_for_update(session, key)
            machine = self._machine(permit, events)
            machine.require(PermitTransition.CLOSE)
            self._authorize_supervisor(permit, actor_id)
            machine.close(checklist, user_id=actor_id)
            return permit

        return self._execute(key, "close", work)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_status(self, permit_id: PermitId) -> PermitView:
        """Get the current state of a permit."""
        key = self._coerce_id(permit_id)
        with self.session_factory() as session:
            return PermitView.from_permit(self._load(session, key))

    def get_history(self, permit_id: PermitId) -> List[HistoryEntryView]:
        """Get the status transition history of a permit, oldest first."""
        key = self._coerce_id(permit_id)
        with self.session_factory() as session:
            permit = self._load(session, key)
            return [HistoryEntryView.model_validate(entry) for entry in permit.history]

    def list_permits(
        self,
        *,
        status: Optional[Union[PermitStatus, str, Iterable[Union[PermitStatus, str]]]] = None,
        created_by: Optional[str] = None,
        site_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[PermitView]:
        """List permits, newest first."""
        with self.session_factory() as session:
            query = session.query(Permit)
            if status is not None:
                statuses = [status] if isinstance(status, str) else list(status)
                query = query.filter(Permit.status.in_([PermitStatus(s).value for s in statuses]))
            if created_by is not None:
                query = query.filter(Permit.created_by == created_by)
            if site_id is not None:
                query = query.filter(Permit.site_id == site_id)

            permits = query.order_by(Permit.created_at.desc()).offset(offset).limit(limit).all()
            return [PermitView.from_permit(permit) for permit in permits]

    def list_pending_for_approver(self, approver_id: str) -> List[PermitView]:
        """Initiated permits still waiting on a decision from ``approver_id``."""
        with self.session_factory() as session:
            permits = (
                session.query(Permit)
                .join(ApprovalRecord, ApprovalRecord.permit_id == Permit.id)
                .filter(
                    and_(
                        ApprovalRecord.approver_id == approver_id,
                        ApprovalRecord.decision == ApprovalDecision.PENDING.value,
                        Permit.status == PermitStatus.INITIATED.value,
                    )
                )
                .order_by(Permit.created_at.asc())
                .all()
            )
            return [PermitView.from_permit(permit) for permit in permits]

    def send_window_reminders(
        self,
        now: Optional[datetime] = None,
        *,
        lead: Optional[timedelta] = None,
    ) -> List[PermitEvent]:
        """
        Notify about permits whose work window opens or closes soon.

        Emits a start reminder for Approved and Ready_To_Start permits
        starting within ``lead`` (one minute either side), and an end
        reminder for Active and Extension_Requested permits ending within it.
        Statuses are not changed.

        Returns:
            The events that were dispatched
        """
        now = to_naive_utc(now) or self.clock()
        lead = lead if lead is not None else timedelta(minutes=self.settings.reminder_lead_minutes)
        window_start = now + lead - REMINDER_TOLERANCE
        window_end = now + lead + REMINDER_TOLERANCE

        events: List[PermitEvent] = []
        with self.session_factory() as session:
            starting = session.query(Permit).filter(
                and_(
                    Permit.status.in_([s.value for s in AWAITING_START_STATES]),
                    Permit.start_time >= window_start,
                    Permit.start_time <= window_end,
                )
            ).all()
            ending = session.query(Permit).filter(
                and_(
                    Permit.status.in_([s.value for s in CLOSABLE_STATES]),
                    Permit.end_time >= window_start,
                    Permit.end_time <= window_end,
                )
            ).all()

            for permit in starting:
                events.append(PermitEvent(
                    event_type=NotificationEventType.START_REMINDER,
                    permit=PermitView.from_permit(permit),
                    occurred_at=now,
                    details={"start_time": permit.start_time.isoformat()},
                ))
            for permit in ending:
                events.append(PermitEvent(
                    event_type=NotificationEventType.END_REMINDER,
                    permit=PermitView.from_permit(permit),
                    occurred_at=now,
                    details={"end_time": permit.end_time.isoformat()},
                ))

        logger.info("Window reminders: %d starting, %d ending", len(starting), len(ending))
        self._dispatch(events)
        return events

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def _execute(
        self,
        key: Any,
        operation: str,
        work: Callable[[Session, List[Dict[str, Any]]], Permit],
    ) -> PermitView:
        """Run ``work`` under the permit lock, retrying on ConcurrencyConflict."""
        attempts = max(1, self.settings.max_conflict_retries + 1)
        attempt = 0
        while True:
            attempt += 1
            events: List[Dict[str, Any]] = []
            try:
                with self.locks.hold(key, timeout=self.settings.lock_timeout_seconds):
                    view = self._commit(work, events)
            except ConcurrencyConflict as e:
                if attempt >= attempts:
                    logger.error("%s on %s gave up after %d attempts: %s", operation, key, attempt, e)
                    raise
                logger.warning("%s on %s conflicted (attempt %d/%d), retrying", operation, key, attempt, attempts)
                continue

            self._dispatch([self._to_event(pending, view) for pending in events])
            return view

    def _commit(
        self,
        work: Callable[[Session, List[Dict[str, Any]]], Permit],
        events: List[Dict[str, Any]],
    ) -> PermitView:
        session = self.session_factory()
        try:
            permit = work(session, events)
            # Every write bumps Permit.version, including child-only changes
            flag_modified(permit, "updated_at")
            session.commit()
            return PermitView.from_permit(permit)
        except StaleDataError as e:
            session.rollback()
            raise ConcurrencyConflict(f"Permit was modified concurrently: {e}") from e
        except IntegrityError as e:
            session.rollback()
            raise ConcurrencyConflict(f"Conflicting write: {e.orig}") from e
        except OperationalError as e:
            session.rollback()
            if "locked" in str(e.orig).lower():
                raise ConcurrencyConflict(f"Database busy: {e.orig}") from e
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _load(self, session: Session, permit_id: UUID) -> Permit:
        permit = session.query(Permit).filter(Permit.id == permit_id).first()
        if permit is None:
            raise NotFound(f"Permit {permit_id} not found", permit_id)
        return permit

    def _load_for_update(self, session: Session, permit_id: UUID) -> Permit:
        permit = session.query(Permit).filter(Permit.id == permit_id).with_for_update().first()
        if permit is None:
            raise NotFound(f"Permit {permit_id} not found", permit_id)
        return permit

    def _machine(self, permit: Permit, events: List[Dict[str, Any]]) -> PermitStateMachine:
        machine = PermitStateMachine(permit, clock=self.clock)
        for transition, event_type in TRANSITION_EVENTS.items():
            machine.register_callback(transition, partial(self._on_transition, events, event_type))
        return machine

    def _on_transition(
        self,
        events: List[Dict[str, Any]],
        event_type: NotificationEventType,
        record: Dict[str, Any],
    ) -> None:
        self._emit(
            events,
            event_type,
            actor_id=record["user_id"],
            occurred_at=record["timestamp"],
            details={
                "from_status": record["from_state"],
                "to_status": record["to_state"],
                "comment": record["comment"],
                **record["metadata"],
            },
        )

    @staticmethod
    def _emit(
        events: List[Dict[str, Any]],
        event_type: NotificationEventType,
        *,
        actor_id: Optional[str],
        occurred_at: datetime,
        details: Dict[str, Any],
    ) -> None:
        events.append({
            "event_type": event_type,
            "actor_id": actor_id,
            "occurred_at": occurred_at,
            "details": details,
        })

    @staticmethod
    def _to_event(pending: Dict[str, Any], view: PermitView) -> PermitEvent:
        return PermitEvent(permit=view, **pending)

    def _dispatch(self, events: List[PermitEvent]) -> None:
        if self.notifier is None:
            return
        for event in events:
            try:
                self.notifier.dispatch(event)
            except Exception:
                logger.exception("Failed to dispatch %s for permit %s", event.event_type.value, event.permit.serial)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _authorize_supervisor(self, permit: Permit, actor_id: Optional[str]) -> None:
        if actor_id is not None and actor_id != permit.created_by:
            raise NotAuthorized(
                f"Only the initiating supervisor can act on permit {permit.serial}",
                permit.id,
            )

    def _authorize_approver(self, permit: Permit, role: ApproverRole, actor_id: Optional[str]) -> None:
        if actor_id is None:
            return
        if actor_id != self.directory.resolve_approver(permit, role):
            raise NotAuthorized(
                f"{actor_id} is not the assigned {role.value} for permit {permit.serial}",
                permit.id,
            )

    def _authorize_extension_reviewer(self, permit: Permit, actor_id: Optional[str]) -> None:
        if actor_id is None:
            return
        roles = [ApproverRole(role) for role in permit.approvals]
        reviewer_roles = [role for role in roles if role in EXTENSION_REVIEWER_ROLES] or roles
        reviewers = {self.directory.resolve_approver(permit, role) for role in reviewer_roles}
        if actor_id not in reviewers:
            raise NotAuthorized(
                f"{actor_id} may not decide extensions for permit {permit.serial}",
                permit.id,
            )

    def _normalize_approvers(self, approvers: ApproverAssignments, site_id: str) -> Dict[ApproverRole, str]:
        if isinstance(approvers, Mapping):
            items = list(approvers.items())
        else:
            site_approvers = self.directory.site_approvers(site_id)
            items = []
            for role in approvers:
                try:
                    items.append((role, site_approvers.get(ApproverRole(role))))
                except ValueError:
                    raise InvalidRole(f"Unknown approver role: {role}")

        assignments: Dict[ApproverRole, str] = {}
        for role, approver_id in items:
            try:
                role = ApproverRole(role)
            except ValueError:
                raise InvalidRole(f"Unknown approver role: {role}")
            # Roles nobody is assigned to are left out of the approval set
            if approver_id:
                assignments[role] = approver_id

        if not (ApproverRole.AREA_MANAGER in assignments or ApproverRole.SAFETY_OFFICER in assignments):
            raise InvalidInput("At least an Area Manager or a Safety Officer must be assigned")

        # Approval order
        return {role: assignments[role] for role in ApproverRole if role in assignments}

    @staticmethod
    def _next_serial(session: Session) -> str:
        count = session.query(func.count(Permit.id)).scalar() or 0
        return f"PTW-{count + 1:04d}"

    @staticmethod
    def _coerce_id(permit_id: PermitId) -> UUID:
        if isinstance(permit_id, UUID):
            return permit_id
        try:
            return UUID(str(permit_id))
        except ValueError:
            raise NotFound(f"Permit {permit_id} not found")
