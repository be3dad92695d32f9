"""Read models returned by the lifecycle service.

Views are snapshots taken right after commit; they are safe to hand to
notification sinks and HTTP responses once the permit lock is released.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ptw.db.models import Permit

from .states import ApprovalDecision, ApproverRole, PermitStatus

ROLE_ORDER = {role.value: index for index, role in enumerate(ApproverRole)}


class ApprovalView(BaseModel):
    role: ApproverRole
    decision: ApprovalDecision
    approver_id: Optional[str] = None
    comment: Optional[str] = None
    decided_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ExtensionView(BaseModel):
    id: UUID
    original_end_time: datetime
    new_end_time: datetime
    reason: str
    completion_percent: int
    status: str
    requested_by: Optional[str] = None
    requested_at: datetime
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ClosureView(BaseModel):
    housekeeping_done: bool
    tools_removed: bool
    locks_removed: bool
    area_restored: bool
    notes: Optional[str] = None
    incident_report: Optional[str] = None
    signature: str
    closed_by: Optional[str] = None
    closed_at: datetime

    class Config:
        from_attributes = True


class HistoryEntryView(BaseModel):
    sequence: int
    from_status: PermitStatus
    to_status: PermitStatus
    transition: str
    user_id: Optional[str] = None
    comment: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    class Config:
        from_attributes = True


class PermitView(BaseModel):
    """Everything a caller needs to render a permit's current state."""

    id: UUID
    serial: str
    status: PermitStatus
    site_id: str
    work_description: str
    work_location: str
    permit_types: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None
    start_time: datetime
    end_time: datetime
    rejection_reason: Optional[str] = None
    final_submitted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    required_approvers: List[ApproverRole] = Field(default_factory=list)
    approvals: List[ApprovalView] = Field(default_factory=list)
    pending_extension: Optional[ExtensionView] = None
    closure: Optional[ClosureView] = None
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_permit(cls, permit: Permit) -> "PermitView":
        records = sorted(permit.approvals.values(), key=lambda r: ROLE_ORDER[r.role])
        pending = permit.pending_extension
        return cls(
            id=permit.id,
            serial=permit.serial,
            status=PermitStatus(permit.status),
            site_id=permit.site_id,
            work_description=permit.work_description,
            work_location=permit.work_location,
            permit_types=list(permit.permit_types or []),
            details=dict(permit.details or {}),
            created_by=permit.created_by,
            start_time=permit.start_time,
            end_time=permit.end_time,
            rejection_reason=permit.rejection_reason,
            final_submitted_at=permit.final_submitted_at,
            started_at=permit.started_at,
            closed_at=permit.closed_at,
            required_approvers=[ApproverRole(r.role) for r in records],
            approvals=[ApprovalView.model_validate(r) for r in records],
            pending_extension=ExtensionView.model_validate(pending) if pending else None,
            closure=ClosureView.model_validate(permit.closure) if permit.closure else None,
            version=permit.version,
            created_at=permit.created_at,
            updated_at=permit.updated_at,
        )
