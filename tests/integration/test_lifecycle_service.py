"""Integration tests for the permit lifecycle service.

Runs every operation against a real SQLite database.
"""

from datetime import timedelta, timezone
from uuid import uuid4

import pytest

from ptw.core.permit import (
    AlreadyDecided,
    ApprovalDecision,
    ApproverRole,
    ConcurrencyConflict,
    IncompleteChecklist,
    InvalidEndTime,
    InvalidInput,
    InvalidRole,
    InvalidState,
    MissingSignature,
    NotAuthorized,
    NotFound,
    PermitLifecycleService,
    PermitStatus,
    StaticApproverDirectory,
    TooEarly,
)
from ptw.db.models import PermitExtension
from tests.factories import (
    ALL_APPROVERS,
    APPROVERS,
    SUPERVISOR,
    activate_permit,
    approve_permit,
    initiate_permit,
    make_checklist,
    make_draft,
    ready_permit,
)

AM = ApproverRole.AREA_MANAGER
SO = ApproverRole.SAFETY_OFFICER
SL = ApproverRole.SITE_LEADER


class TestEndToEnd:
    """The full lifecycle from initiation to closure."""

    def test_full_lifecycle(self, service, clock, sink):
        permit = initiate_permit(service, clock)
        assert permit.status == PermitStatus.INITIATED
        assert permit.required_approvers == [AM, SO]

        service.record_approval(permit.id, AM, ApprovalDecision.APPROVED, actor_id=APPROVERS[AM])
        view = service.record_approval(permit.id, SO, ApprovalDecision.APPROVED, actor_id=APPROVERS[SO])
        assert view.status == PermitStatus.APPROVED

        view = service.final_submit(permit.id, actor_id=SUPERVISOR)
        assert view.status == PermitStatus.READY_TO_START

        view = service.start(permit.id, actor_id=SUPERVISOR, now=permit.start_time)
        assert view.status == PermitStatus.ACTIVE

        new_end = permit.end_time + timedelta(hours=1)
        view = service.request_extension(permit.id, new_end, "delay", 60, actor_id=SUPERVISOR)
        assert view.status == PermitStatus.ACTIVE
        assert view.end_time == new_end
        assert view.pending_extension is None

        view = service.close(permit.id, make_checklist(), actor_id=SUPERVISOR)
        assert view.status == PermitStatus.CLOSED
        assert view.closure.signature == "J. Doe"

        with pytest.raises(InvalidState):
            service.record_approval(permit.id, AM, ApprovalDecision.APPROVED)
        with pytest.raises(InvalidState):
            service.start(permit.id, now=new_end)
        with pytest.raises(InvalidState):
            service.request_extension(permit.id, new_end + timedelta(hours=1), "more", 90)
        with pytest.raises(InvalidState):
            service.close(permit.id, make_checklist())

        assert [e.event_type.value for e in sink.events] == [
            "permit.initiated",
            "permit.approval_recorded",
            "permit.approval_recorded",
            "permit.approved",
            "permit.ready_to_start",
            "permit.started",
            "permit.extension_requested",
            "permit.extension_applied",
            "permit.closed",
        ]

    def test_history_is_ordered_audit_trail(self, service, clock):
        permit = activate_permit(service, clock)
        service.close(permit.id, make_checklist(), actor_id=SUPERVISOR)

        history = service.get_history(permit.id)
        assert [h.sequence for h in history] == [1, 2, 3, 4]
        assert [h.transition for h in history] == ["approve_all", "final_submit", "start", "close"]
        assert history[0].from_status == PermitStatus.INITIATED
        assert history[-1].to_status == PermitStatus.CLOSED


class TestInitiate:
    def test_creates_pending_records(self, service, clock):
        permit = initiate_permit(service, clock, approvers=ALL_APPROVERS)

        assert permit.serial == "PTW-0001"
        assert permit.created_by == SUPERVISOR
        assert permit.version == 1
        assert [a.role for a in permit.approvals] == [AM, SO, SL]
        assert all(a.decision == ApprovalDecision.PENDING for a in permit.approvals)
        assert permit.approvals[2].approver_id == ALL_APPROVERS[SL]

    def test_serials_increment(self, service, clock):
        first = initiate_permit(service, clock)
        second = initiate_permit(service, clock)
        assert (first.serial, second.serial) == ("PTW-0001", "PTW-0002")

    def test_roles_taken_from_site_assignments(self, session_factory, settings, clock):
        directory = StaticApproverDirectory(
            {"site-north": {"Area_Manager": "am-7", "Safety_Officer": "so-7", "Site_Leader": "sl-7"}}
        )
        service = PermitLifecycleService(session_factory, directory=directory, settings=settings, clock=clock)

        permit = service.initiate(make_draft(clock.now + timedelta(hours=1)), [SO, "Site_Leader"], user_id=SUPERVISOR)

        assert permit.required_approvers == [SO, SL]
        assert {a.role: a.approver_id for a in permit.approvals} == {SO: "so-7", SL: "sl-7"}

    def test_unassigned_roles_are_dropped(self, service, clock):
        draft = make_draft(clock.now + timedelta(hours=1))
        permit = service.initiate(draft, {AM: APPROVERS[AM], SO: None}, user_id=SUPERVISOR)
        assert permit.required_approvers == [AM]

        view = service.record_approval(permit.id, AM, ApprovalDecision.APPROVED, actor_id=APPROVERS[AM])
        assert view.status == PermitStatus.APPROVED

    def test_roles_with_no_site_assignment(self, service, clock):
        draft = make_draft(clock.now + timedelta(hours=1))
        with pytest.raises(InvalidInput):
            service.initiate(draft, [AM, SO], user_id=SUPERVISOR)

    def test_requires_primary_approver(self, service, clock):
        draft = make_draft(clock.now + timedelta(hours=1))
        with pytest.raises(InvalidInput):
            service.initiate(draft, {SL: "site-leader-1"}, user_id=SUPERVISOR)

    def test_unknown_role(self, service, clock):
        draft = make_draft(clock.now + timedelta(hours=1))
        with pytest.raises(InvalidRole):
            service.initiate(draft, {"Plant_Director": "pd-1", AM: "am-1"}, user_id=SUPERVISOR)

    def test_invalid_window(self, service, clock):
        draft = make_draft(clock.now, hours=0)
        with pytest.raises(InvalidInput):
            service.initiate(draft, APPROVERS, user_id=SUPERVISOR)
        assert service.list_permits() == []

    def test_site_approvers_from_directory(self, session_factory, settings, clock):
        directory = StaticApproverDirectory({"site-north": {"Area_Manager": "am-7", "Safety_Officer": "so-7"}})
        service = PermitLifecycleService(session_factory, directory=directory, settings=settings, clock=clock)

        permit = service.initiate(make_draft(clock.now + timedelta(hours=1)), user_id=SUPERVISOR)

        assert {a.role: a.approver_id for a in permit.approvals} == {AM: "am-7", SO: "so-7"}

    def test_aware_times_stored_as_utc(self, service, clock):
        aware_start = (clock.now + timedelta(hours=1)).replace(tzinfo=timezone(timedelta(hours=2)))
        permit = service.initiate(make_draft(aware_start), APPROVERS, user_id=SUPERVISOR)

        assert permit.start_time.tzinfo is None
        assert permit.start_time == clock.now - timedelta(hours=1)


class TestApprovals:
    def test_partial_approval(self, service, clock):
        permit = initiate_permit(service, clock)
        view = service.record_approval(permit.id, AM, ApprovalDecision.APPROVED, actor_id=APPROVERS[AM])

        assert view.status == PermitStatus.INITIATED
        decisions = {a.role: a.decision for a in view.approvals}
        assert decisions == {AM: ApprovalDecision.APPROVED, SO: ApprovalDecision.PENDING}
        assert view.version == 2

    def test_rejection(self, service, clock, sink):
        permit = initiate_permit(service, clock)
        view = service.record_approval(
            permit.id, SO, ApprovalDecision.REJECTED, "Gas test not recorded", actor_id=APPROVERS[SO]
        )

        assert view.status == PermitStatus.REJECTED
        assert view.rejection_reason == "Gas test not recorded"
        assert sink.types[-1] == "permit.rejected"

        with pytest.raises(InvalidState):
            service.record_approval(permit.id, AM, ApprovalDecision.APPROVED, actor_id=APPROVERS[AM])

    def test_already_decided(self, service, clock):
        permit = initiate_permit(service, clock, approvers=ALL_APPROVERS)
        service.record_approval(permit.id, AM, ApprovalDecision.APPROVED)

        with pytest.raises(AlreadyDecided):
            service.record_approval(permit.id, AM, ApprovalDecision.APPROVED)

    def test_role_not_required(self, service, clock):
        permit = initiate_permit(service, clock)
        with pytest.raises(InvalidRole):
            service.record_approval(permit.id, SL, ApprovalDecision.APPROVED)

    def test_wrong_approver(self, service, clock):
        permit = initiate_permit(service, clock)
        with pytest.raises(NotAuthorized):
            service.record_approval(permit.id, AM, ApprovalDecision.APPROVED, actor_id=APPROVERS[SO])

        assert service.get_status(permit.id).approvals[0].decision == ApprovalDecision.PENDING

    def test_failed_validation_leaves_no_trace(self, service, clock, sink):
        permit = initiate_permit(service, clock)
        events_before = len(sink.events)

        with pytest.raises(InvalidInput):
            service.record_approval(permit.id, AM, ApprovalDecision.REJECTED, actor_id=APPROVERS[AM])

        view = service.get_status(permit.id)
        assert view.approvals[0].decision == ApprovalDecision.PENDING
        assert view.version == permit.version
        assert len(sink.events) == events_before

    def test_unknown_permit(self, service):
        with pytest.raises(NotFound):
            service.record_approval(uuid4(), AM, ApprovalDecision.APPROVED)

    def test_malformed_id_is_not_found(self, service):
        with pytest.raises(NotFound):
            service.get_status("not-a-uuid")


class TestSupervisorActions:
    def test_final_submit_requires_approval(self, service, clock):
        permit = initiate_permit(service, clock)
        with pytest.raises(InvalidState):
            service.final_submit(permit.id, actor_id=SUPERVISOR)

    def test_only_creator_may_act(self, service, clock):
        permit = initiate_permit(service, clock)
        approve_permit(service, permit.id)

        with pytest.raises(NotAuthorized):
            service.final_submit(permit.id, actor_id="someone-else")

    def test_start_too_early(self, service, clock):
        permit = ready_permit(service, clock)

        with pytest.raises(TooEarly):
            service.start(permit.id, actor_id=SUPERVISOR, now=permit.start_time - timedelta(minutes=1))
        assert service.get_status(permit.id).status == PermitStatus.READY_TO_START

    def test_start_defaults_to_clock(self, service, clock):
        permit = ready_permit(service, clock)
        clock.now = permit.start_time + timedelta(minutes=3)

        view = service.start(permit.id, actor_id=SUPERVISOR)
        assert view.started_at == clock.now

    def test_close_validation(self, service, clock):
        permit = activate_permit(service, clock)

        with pytest.raises(IncompleteChecklist):
            service.close(permit.id, make_checklist(locks_removed=False), actor_id=SUPERVISOR)
        with pytest.raises(MissingSignature):
            service.close(permit.id, make_checklist(signature=""), actor_id=SUPERVISOR)
        assert service.get_status(permit.id).status == PermitStatus.ACTIVE

    def test_close_with_incident(self, service, clock):
        permit = activate_permit(service, clock)
        view = service.close(
            permit.id,
            make_checklist(notes="Left ladder in store", incident_report="Dropped spanner, no injury"),
            actor_id=SUPERVISOR,
        )
        assert view.closure.incident_report == "Dropped spanner, no injury"
        assert view.closure.notes == "Left ladder in store"
        assert view.closed_at == clock.now


class TestExtensions:
    def test_invalid_end_time(self, service, clock):
        permit = activate_permit(service, clock)
        with pytest.raises(InvalidEndTime):
            service.request_extension(permit.id, permit.end_time, "delay", 50, actor_id=SUPERVISOR)

    def test_extension_audit_row(self, service, clock, session_factory):
        permit = activate_permit(service, clock)
        new_end = permit.end_time + timedelta(hours=1)
        service.request_extension(permit.id, new_end, "delay", 60, actor_id=SUPERVISOR)

        with session_factory() as session:
            rows = session.query(PermitExtension).filter(PermitExtension.permit_id == permit.id).all()
        assert len(rows) == 1
        assert rows[0].status == "applied"
        assert rows[0].original_end_time == permit.end_time
        assert rows[0].completion_percent == 60

    def test_review_step_when_auto_apply_disabled(self, session_factory, settings, clock, sink):
        settings.extension_auto_apply = False
        service = PermitLifecycleService(session_factory, notifier=sink, settings=settings, clock=clock)
        permit = activate_permit(service, clock)
        new_end = permit.end_time + timedelta(hours=2)

        view = service.request_extension(permit.id, new_end, "delay", 60, actor_id=SUPERVISOR)
        assert view.status == PermitStatus.EXTENSION_REQUESTED
        assert view.end_time == permit.end_time
        assert view.pending_extension.new_end_time == new_end

        view = service.deny_extension(permit.id, "Night shift not approved")
        assert view.status == PermitStatus.ACTIVE
        assert view.end_time == permit.end_time

        service.request_extension(permit.id, new_end, "delay again", 70, actor_id=SUPERVISOR)
        view = service.apply_extension(permit.id)
        assert view.status == PermitStatus.ACTIVE
        assert view.end_time == new_end

    def test_close_while_extension_pending(self, session_factory, settings, clock):
        settings.extension_auto_apply = False
        service = PermitLifecycleService(session_factory, settings=settings, clock=clock)
        permit = activate_permit(service, clock)
        service.request_extension(permit.id, permit.end_time + timedelta(hours=1), "delay", 60)

        view = service.close(permit.id, make_checklist())
        assert view.status == PermitStatus.CLOSED

    def test_apply_without_request(self, service, clock):
        permit = activate_permit(service, clock)
        with pytest.raises(InvalidState):
            service.apply_extension(permit.id)

    def test_only_reviewers_decide_extensions(self, session_factory, settings, clock):
        settings.extension_auto_apply = False
        service = PermitLifecycleService(session_factory, settings=settings, clock=clock)
        permit = activate_permit(service, clock, approvers=ALL_APPROVERS)
        new_end = permit.end_time + timedelta(hours=1)
        service.request_extension(permit.id, new_end, "delay", 60, actor_id=SUPERVISOR)

        for outsider in ("random-stranger", SUPERVISOR, ALL_APPROVERS[AM]):
            with pytest.raises(NotAuthorized):
                service.apply_extension(permit.id, actor_id=outsider)
            with pytest.raises(NotAuthorized):
                service.deny_extension(permit.id, "no", actor_id=outsider)
        assert service.get_status(permit.id).status == PermitStatus.EXTENSION_REQUESTED

        view = service.deny_extension(permit.id, "Night shift", actor_id=ALL_APPROVERS[SO])
        assert view.status == PermitStatus.ACTIVE

        service.request_extension(permit.id, new_end, "delay", 70, actor_id=SUPERVISOR)
        view = service.apply_extension(permit.id, actor_id=ALL_APPROVERS[SL])
        assert view.end_time == new_end

    def test_area_manager_reviews_when_only_approver(self, session_factory, settings, clock):
        settings.extension_auto_apply = False
        service = PermitLifecycleService(session_factory, settings=settings, clock=clock)
        only_am = {AM: APPROVERS[AM]}
        permit = activate_permit(service, clock, approvers=only_am)
        service.request_extension(permit.id, permit.end_time + timedelta(hours=1), "delay", 60, actor_id=SUPERVISOR)

        view = service.apply_extension(permit.id, actor_id=APPROVERS[AM])
        assert view.status == PermitStatus.ACTIVE


def _reject(service, permit):
    return service.record_approval(permit.id, AM, ApprovalDecision.REJECTED, "Unsafe", actor_id=APPROVERS[AM])


def _close(service, permit):
    return service.close(permit.id, make_checklist(), actor_id=SUPERVISOR)


class TestTerminalStates:
    WRITES = {
        "record_approval": lambda service, permit: service.record_approval(
            permit.id, SO, ApprovalDecision.APPROVED, actor_id=APPROVERS[SO]
        ),
        "final_submit": lambda service, permit: service.final_submit(permit.id, actor_id=SUPERVISOR),
        "start": lambda service, permit: service.start(permit.id, actor_id=SUPERVISOR, now=permit.end_time),
        "request_extension": lambda service, permit: service.request_extension(
            permit.id, permit.end_time + timedelta(hours=2), "delay", 50, actor_id=SUPERVISOR
        ),
        "apply_extension": lambda service, permit: service.apply_extension(permit.id, actor_id=APPROVERS[SO]),
        "deny_extension": lambda service, permit: service.deny_extension(permit.id, actor_id=APPROVERS[SO]),
        "close": lambda service, permit: service.close(permit.id, make_checklist(), actor_id=SUPERVISOR),
    }

    @pytest.mark.parametrize("operation", sorted(WRITES))
    def test_rejected_permit_is_final(self, service, clock, operation):
        permit = initiate_permit(service, clock)
        rejected = _reject(service, permit)

        with pytest.raises(InvalidState):
            self.WRITES[operation](service, permit)

        view = service.get_status(permit.id)
        assert view.status == PermitStatus.REJECTED
        assert view.version == rejected.version

    @pytest.mark.parametrize("operation", sorted(WRITES))
    def test_closed_permit_is_final(self, service, clock, operation):
        permit = activate_permit(service, clock)
        closed = _close(service, permit)

        with pytest.raises(InvalidState):
            self.WRITES[operation](service, permit)

        view = service.get_status(permit.id)
        assert view.status == PermitStatus.CLOSED
        assert view.version == closed.version


class TestQueries:
    def test_get_status_unknown(self, service):
        with pytest.raises(NotFound):
            service.get_status(uuid4())

    def test_list_permits_filters(self, service, clock):
        active = activate_permit(service, clock)
        pending = initiate_permit(service, clock)

        assert {p.id for p in service.list_permits()} == {active.id, pending.id}
        assert [p.id for p in service.list_permits(status=PermitStatus.ACTIVE)] == [active.id]
        assert [p.id for p in service.list_permits(status=["Initiated"])] == [pending.id]
        assert service.list_permits(created_by="nobody") == []
        assert len(service.list_permits(created_by=SUPERVISOR, limit=1)) == 1

    def test_pending_for_approver(self, service, clock):
        first = initiate_permit(service, clock)
        clock.advance(minutes=1)
        second = initiate_permit(service, clock)
        service.record_approval(second.id, AM, ApprovalDecision.APPROVED, actor_id=APPROVERS[AM])

        assert [p.id for p in service.list_pending_for_approver(APPROVERS[AM])] == [first.id]
        assert [p.id for p in service.list_pending_for_approver(APPROVERS[SO])] == [first.id, second.id]

    def test_rejected_permit_leaves_pending_lists(self, service, clock):
        permit = initiate_permit(service, clock)
        service.record_approval(permit.id, AM, ApprovalDecision.REJECTED, "No", actor_id=APPROVERS[AM])

        assert service.list_pending_for_approver(APPROVERS[SO]) == []


class TestWindowReminders:
    def test_start_and_end_reminders(self, service, clock, sink):
        starting = ready_permit(service, clock, lead=timedelta(minutes=30))
        ending = activate_permit(service, clock, lead=timedelta(hours=-4, minutes=30), hours=4)
        initiate_permit(service, clock, lead=timedelta(minutes=30))  # not approved yet

        events = service.send_window_reminders()

        by_type = {e.event_type.value: e.permit.id for e in events}
        assert by_type == {
            "permit.start_reminder": starting.id,
            "permit.end_reminder": ending.id,
        }
        assert sink.types[-2:] == ["permit.start_reminder", "permit.end_reminder"]

    def test_outside_window(self, service, clock):
        ready_permit(service, clock, lead=timedelta(minutes=45))
        assert service.send_window_reminders() == []

    def test_reminders_do_not_change_status(self, service, clock):
        permit = ready_permit(service, clock, lead=timedelta(minutes=30))
        service.send_window_reminders()
        assert service.get_status(permit.id).status == PermitStatus.READY_TO_START


class TestConflictRetries:
    def test_injected_registry_is_used(self, session_factory, settings, locks):
        assert len(locks) == 0
        service = PermitLifecycleService(session_factory, locks=locks, settings=settings)
        assert service.locks is locks

    def test_every_write_bumps_version(self, service, clock):
        permit = initiate_permit(service, clock, approvers=ALL_APPROVERS)
        versions = [permit.version]
        for role, approver_id in ALL_APPROVERS.items():
            view = service.record_approval(permit.id, role, ApprovalDecision.APPROVED, actor_id=approver_id)
            versions.append(view.version)

        assert versions == [1, 2, 3, 4]

    def test_lock_timeout_surfaces_conflict(self, service, clock, settings, locks):
        permit = initiate_permit(service, clock)
        settings.lock_timeout_seconds = 0.01
        settings.max_conflict_retries = 1

        with locks.hold(permit.id):
            with pytest.raises(ConcurrencyConflict):
                service.record_approval(permit.id, AM, ApprovalDecision.APPROVED)

        view = service.record_approval(permit.id, AM, ApprovalDecision.APPROVED)
        assert view.approvals[0].decision == ApprovalDecision.APPROVED

    def test_conflict_is_retried(self, service, clock, monkeypatch):
        permit = initiate_permit(service, clock)
        original_commit = service._commit
        calls = []

        def flaky_commit(work, events):
            calls.append(1)
            if len(calls) == 1:
                raise ConcurrencyConflict("simulated", permit.id)
            return original_commit(work, events)

        monkeypatch.setattr(service, "_commit", flaky_commit)

        view = service.record_approval(permit.id, AM, ApprovalDecision.APPROVED)
        assert len(calls) == 2
        assert view.version == 2
