"""Permit lifecycle API endpoints."""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from ptw.api.deps import get_current_actor, get_lifecycle_service
from ptw.api.schemas.permit import (
    ApprovalDecisionRequest,
    CloseRequest,
    ExtensionDenyRequest,
    ExtensionRequestBody,
    PermitCreate,
)
from ptw.core.permit import (
    ChecklistResult,
    HistoryEntryView,
    InvalidRole,
    PermitDraft,
    PermitLifecycleService,
    PermitStatus,
    PermitView,
)
from ptw.core.security import Actor

router = APIRouter(prefix="/permits", tags=["permits"])


@router.post("", response_model=PermitView, status_code=status.HTTP_201_CREATED)
def initiate_permit(
    body: PermitCreate,
    actor: Actor = Depends(get_current_actor),
    service: PermitLifecycleService = Depends(get_lifecycle_service),
):
    """Submit a new permit for approval."""
    draft = PermitDraft(
        site_id=body.site_id,
        work_description=body.work_description,
        work_location=body.work_location,
        start_time=body.start_time,
        end_time=body.end_time,
        permit_types=body.permit_types,
        details=body.details,
    )
    return service.initiate(draft, body.approvers, user_id=actor.user_id)


@router.get("", response_model=List[PermitView])
def list_permits(
    status_filter: Optional[List[PermitStatus]] = Query(None, alias="status"),
    created_by: Optional[str] = None,
    site_id: Optional[str] = None,
    mine: bool = False,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_actor),
    service: PermitLifecycleService = Depends(get_lifecycle_service),
):
    """List permits, newest first. ``mine`` limits to permits the caller initiated."""
    return service.list_permits(
        status=status_filter,
        created_by=actor.user_id if mine else created_by,
        site_id=site_id,
        limit=limit,
        offset=offset,
    )


@router.get("/pending-approvals", response_model=List[PermitView])
def list_pending_approvals(
    actor: Actor = Depends(get_current_actor),
    service: PermitLifecycleService = Depends(get_lifecycle_service),
):
    """Permits waiting on the caller's decision."""
    return service.list_pending_for_approver(actor.user_id)


@router.get("/{permit_id}", response_model=PermitView)
def get_permit(
    permit_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: PermitLifecycleService = Depends(get_lifecycle_service),
):
    return service.get_status(permit_id)


@router.get("/{permit_id}/history", response_model=List[HistoryEntryView])
def get_permit_history(
    permit_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: PermitLifecycleService = Depends(get_lifecycle_service),
):
    return service.get_history(permit_id)


@router.post("/{permit_id}/approvals", response_model=PermitView)
def record_approval(
    permit_id: UUID,
    body: ApprovalDecisionRequest,
    actor: Actor = Depends(get_current_actor),
    service: PermitLifecycleService = Depends(get_lifecycle_service),
):
    """Approve or reject as one of the permit's required approvers."""
    role = body.role or actor.role
    if role is None:
        raise InvalidRole("An approver role is required", permit_id)
    return service.record_approval(
        permit_id,
        role,
        body.decision,
        body.comment,
        actor_id=actor.user_id,
    )


@router.post("/{permit_id}/final-submit", response_model=PermitView)
def final_submit(
    permit_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: PermitLifecycleService = Depends(get_lifecycle_service),
):
    return service.final_submit(permit_id, actor_id=actor.user_id)


@router.post("/{permit_id}/start", response_model=PermitView)
def start_work(
    permit_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: PermitLifecycleService = Depends(get_lifecycle_service),
):
    return service.start(permit_id, actor_id=actor.user_id)


@router.post("/{permit_id}/request-extension", response_model=PermitView)
def request_extension(
    permit_id: UUID,
    body: ExtensionRequestBody,
    actor: Actor = Depends(get_current_actor),
    service: PermitLifecycleService = Depends(get_lifecycle_service),
):
    return service.request_extension(
        permit_id,
        body.new_end_time,
        body.reason,
        body.completion_percent,
        actor_id=actor.user_id,
    )


@router.post("/{permit_id}/extension/apply", response_model=PermitView)
def apply_extension(
    permit_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: PermitLifecycleService = Depends(get_lifecycle_service),
):
    return service.apply_extension(permit_id, actor_id=actor.user_id)


@router.post("/{permit_id}/extension/deny", response_model=PermitView)
def deny_extension(
    permit_id: UUID,
    body: Optional[ExtensionDenyRequest] = None,
    actor: Actor = Depends(get_current_actor),
    service: PermitLifecycleService = Depends(get_lifecycle_service),
):
    reason = body.reason if body else None
    return service.deny_extension(permit_id, reason, actor_id=actor.user_id)


@router.post("/{permit_id}/close", response_model=PermitView)
def close_permit(
    permit_id: UUID,
    body: CloseRequest,
    actor: Actor = Depends(get_current_actor),
    service: PermitLifecycleService = Depends(get_lifecycle_service),
):
    """Close the permit with the completion checklist and signature."""
    checklist = ChecklistResult(
        housekeeping_done=body.housekeeping_done,
        tools_removed=body.tools_removed,
        locks_removed=body.locks_removed,
        area_restored=body.area_restored,
        signature=body.signature,
        notes=body.notes,
        incident_report=body.incident_report,
    )
    return service.close(permit_id, checklist, actor_id=actor.user_id)
