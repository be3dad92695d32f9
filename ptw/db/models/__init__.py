"""Database models for the PTW service."""

from ptw.db.models.permit import (
    Permit,
    ApprovalRecord,
    PermitExtension,
    PermitClosure,
    PermitHistory,
)

__all__ = [
    "Permit",
    "ApprovalRecord",
    "PermitExtension",
    "PermitClosure",
    "PermitHistory",
]
