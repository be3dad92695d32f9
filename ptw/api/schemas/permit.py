"""Permit request schemas.

Timestamps may be sent with an offset; the service stores them as naive UTC.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ptw.core.permit import ApprovalDecision, ApproverRole


class PermitCreate(BaseModel):
    site_id: str
    work_description: str
    work_location: str
    start_time: datetime
    end_time: datetime
    permit_types: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict, description="Hazards, PPE, team members")
    approvers: Optional[Dict[ApproverRole, Optional[str]]] = Field(
        None, description="Approver id per role; the site's defaults when omitted"
    )


class ApprovalDecisionRequest(BaseModel):
    role: Optional[ApproverRole] = Field(None, description="Defaults to the role in the caller's token")
    decision: ApprovalDecision
    comment: Optional[str] = None


class ExtensionRequestBody(BaseModel):
    new_end_time: datetime
    reason: str
    completion_percent: int


class ExtensionDenyRequest(BaseModel):
    reason: Optional[str] = None


class CloseRequest(BaseModel):
    housekeeping_done: bool = False
    tools_removed: bool = False
    locks_removed: bool = False
    area_restored: bool = False
    signature: str = ""
    notes: Optional[str] = None
    incident_report: Optional[str] = None
