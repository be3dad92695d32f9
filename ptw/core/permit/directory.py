"""Approver lookup.

The lifecycle service asks the directory who is assigned to sign off for a
role, both when a permit is initiated and when an approval comes in.
"""

from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional

from ptw.db.models import Permit

from .states import ApproverRole


class ApproverDirectory(ABC):
    """Resolves approver identities for permits and sites."""

    @abstractmethod
    def resolve_approver(self, permit: Permit, role: ApproverRole) -> Optional[str]:
        """Identity allowed to decide for ``role`` on ``permit``, or None."""

    def site_approvers(self, site_id: str) -> Dict[ApproverRole, str]:
        """Default approvers for a site, used when the draft names none."""
        return {}


class AssignedApproverDirectory(ApproverDirectory):
    """Uses the approver recorded on the permit at initiation."""

    def resolve_approver(self, permit: Permit, role: ApproverRole) -> Optional[str]:
        record = permit.approvals.get(ApproverRole(role).value)
        return record.approver_id if record else None


class StaticApproverDirectory(AssignedApproverDirectory):
    """Site approver assignments held in memory, keyed by site id."""

    def __init__(self, assignments: Mapping[str, Mapping[str, str]]):
        self._assignments = {
            site_id: {ApproverRole(role): user_id for role, user_id in roles.items() if user_id}
            for site_id, roles in assignments.items()
        }

    def site_approvers(self, site_id: str) -> Dict[ApproverRole, str]:
        return dict(self._assignments.get(site_id, {}))
