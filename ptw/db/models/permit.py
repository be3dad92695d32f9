"""Permit database models.

Stores permits, their per-role approval records, extension requests,
closure checklists and status transition history.
"""

import uuid
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text,
    UniqueConstraint, Uuid,
)
from sqlalchemy.orm import relationship
from sqlalchemy.orm.collections import attribute_keyed_dict

from ptw.core.clock import utcnow
from ptw.db.base import Base


class Permit(Base):
    """
    A Permit-to-Work document.

    The aggregate root: approval records, extensions, the closure checklist
    and history rows are only written through the lifecycle service.
    """
    __tablename__ = "permits"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    serial = Column(String(20), nullable=False, unique=True)

    # Work details
    site_id = Column(String(100), nullable=False, index=True)
    work_description = Column(Text, nullable=False)
    work_location = Column(String(255), nullable=False)
    permit_types = Column(JSON, nullable=False, default=list)
    details = Column(JSON, nullable=False, default=dict)  # hazards, PPE, team members

    # Supervisor who initiated the permit
    created_by = Column(String(100), nullable=True, index=True)

    # Workflow state
    status = Column(String(50), nullable=False, default="Initiated", index=True)
    rejection_reason = Column(Text, nullable=True)

    # Scheduled work window
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)

    # Lifecycle timestamps
    final_submitted_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Optimistic concurrency counter
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    approvals = relationship(
        "ApprovalRecord",
        back_populates="permit",
        collection_class=attribute_keyed_dict("role"),
        cascade="all, delete-orphan",
    )
    extensions = relationship(
        "PermitExtension",
        back_populates="permit",
        order_by="PermitExtension.requested_at",
        cascade="all, delete-orphan",
    )
    closure = relationship(
        "PermitClosure",
        back_populates="permit",
        uselist=False,
        cascade="all, delete-orphan",
    )
    history = relationship(
        "PermitHistory",
        back_populates="permit",
        order_by="PermitHistory.sequence",
        cascade="all, delete-orphan",
    )

    @property
    def pending_extension(self):
        for extension in self.extensions:
            if extension.status == "pending":
                return extension
        return None

    def __repr__(self) -> str:
        return f"<Permit {self.serial} [{self.status}]>"


class ApprovalRecord(Base):
    """
    One approver role's decision on one permit.

    Created as Pending for every required role when the permit is initiated.
    """
    __tablename__ = "permit_approvals"
    __table_args__ = (UniqueConstraint("permit_id", "role", name="uq_permit_approvals_permit_role"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    permit_id = Column(Uuid, ForeignKey("permits.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(50), nullable=False)

    # Identity assigned to sign off for this role
    approver_id = Column(String(100), nullable=True, index=True)

    decision = Column(String(20), nullable=False, default="Pending")
    comment = Column(Text, nullable=True)
    decided_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    permit = relationship("Permit", back_populates="approvals")

    @property
    def is_pending(self) -> bool:
        return self.decision == "Pending"

    def __repr__(self) -> str:
        return f"<ApprovalRecord {self.role} [{self.decision}]>"


class PermitExtension(Base):
    """Audit row for an extension request and its outcome."""
    __tablename__ = "permit_extensions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    permit_id = Column(Uuid, ForeignKey("permits.id", ondelete="CASCADE"), nullable=False, index=True)

    requested_by = Column(String(100), nullable=True)
    original_end_time = Column(DateTime, nullable=False)
    new_end_time = Column(DateTime, nullable=False)
    reason = Column(Text, nullable=False)
    completion_percent = Column(Integer, nullable=False)

    # pending, applied, denied
    status = Column(String(20), nullable=False, default="pending", index=True)
    decision_reason = Column(Text, nullable=True)

    requested_at = Column(DateTime, nullable=False, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    permit = relationship("Permit", back_populates="extensions")

    def __repr__(self) -> str:
        return f"<PermitExtension {self.original_end_time} -> {self.new_end_time} [{self.status}]>"


class PermitClosure(Base):
    """The closure checklist, written once when the permit is closed."""
    __tablename__ = "permit_closures"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    permit_id = Column(Uuid, ForeignKey("permits.id", ondelete="CASCADE"), nullable=False, unique=True)
    closed_by = Column(String(100), nullable=True)

    housekeeping_done = Column(Boolean, nullable=False)
    tools_removed = Column(Boolean, nullable=False)
    locks_removed = Column(Boolean, nullable=False)
    area_restored = Column(Boolean, nullable=False)

    notes = Column(Text, nullable=True)
    incident_report = Column(Text, nullable=True)
    signature = Column(String(255), nullable=False)

    closed_at = Column(DateTime, nullable=False, default=utcnow)

    permit = relationship("Permit", back_populates="closure")


class PermitHistory(Base):
    """
    Records all status transitions for a permit.

    Provides a complete audit trail of the permit lifecycle.
    """
    __tablename__ = "permit_history"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    permit_id = Column(Uuid, ForeignKey("permits.id", ondelete="CASCADE"), nullable=False, index=True)

    # Position in the permit's history, starting at 1
    sequence = Column(Integer, nullable=False)

    # Transition details
    from_status = Column(String(50), nullable=False)
    to_status = Column(String(50), nullable=False)
    transition = Column(String(50), nullable=False)

    # Actor
    user_id = Column(String(100), nullable=True)

    comment = Column(Text, nullable=True)
    details = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=utcnow, index=True)

    permit = relationship("Permit", back_populates="history")

    def __repr__(self) -> str:
        return f"<PermitHistory {self.from_status} -> {self.to_status}>"
