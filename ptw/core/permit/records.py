"""Value objects consumed by the permit state machine."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from .errors import IncompleteChecklist, InvalidInput, MissingSignature


CHECKLIST_ITEMS = ("housekeeping_done", "tools_removed", "locks_removed", "area_restored")


@dataclass(frozen=True)
class ChecklistResult:
    """Closure checklist answers and the supervisor's signature."""

    housekeeping_done: bool
    tools_removed: bool
    locks_removed: bool
    area_restored: bool
    signature: str
    notes: Optional[str] = None
    incident_report: Optional[str] = None

    @property
    def missing_items(self) -> List[str]:
        return [item for item in CHECKLIST_ITEMS if not getattr(self, item)]

    def validate(self, permit_id: Optional[UUID] = None) -> None:
        """
        Check the checklist is complete and signed.

        Raises:
            IncompleteChecklist: If any of the four items is not checked
            MissingSignature: If the signature is blank
        """
        missing = self.missing_items
        if missing:
            raise IncompleteChecklist(missing, permit_id)
        if not self.signature or not self.signature.strip():
            raise MissingSignature("A signature is required to close the permit", permit_id)


@dataclass(frozen=True)
class ExtensionRequest:
    """A single request to push a permit's end time out."""

    new_end_time: datetime
    reason: str
    completion_percent: int
    requested_at: datetime
    requested_by: Optional[str] = None

    def validate(self, permit_id: Optional[UUID] = None) -> None:
        """Raises InvalidInput on a blank reason or an out-of-range completion."""
        if not self.reason or not self.reason.strip():
            raise InvalidInput("Extension reason is required", permit_id)
        if isinstance(self.completion_percent, bool) or not 0 <= self.completion_percent <= 100:
            raise InvalidInput(
                f"completion_percent must be between 0 and 100, got {self.completion_percent}",
                permit_id,
            )


@dataclass
class PermitDraft:
    """Form content submitted by the supervisor when initiating a permit."""

    site_id: str
    work_description: str
    work_location: str
    start_time: datetime
    end_time: datetime
    permit_types: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        missing = [
            name for name in ("site_id", "work_description", "work_location")
            if not getattr(self, name) or not str(getattr(self, name)).strip()
        ]
        if missing:
            raise InvalidInput(f"Missing required fields: {', '.join(missing)}")
        if self.start_time >= self.end_time:
            raise InvalidInput("end_time must be after start_time")
