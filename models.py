"""
Invoice Number Tracker Models
=============================
Record types returned by the invoice number service.

All records are immutable and validated when constructed, so a row
read back from the database is checked the same way as a new one.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

DEFAULT_TRACKER_ID = "invoice_tracker"


def _check_number(number):
    # bool is an int subclass, reject it explicitly
    if isinstance(number, bool) or not isinstance(number, int) or number < 1:
        raise ValueError(f"number must be a positive integer, got {number!r}")


def _check_text(value, field_name: str):
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field_name} must be a non-empty string")


def _check_timestamp(value, field_name: str):
    if not isinstance(value, datetime):
        raise ValueError(f"{field_name} must be a datetime, got {type(value).__name__}")


@dataclass(frozen=True)
class AvailableEntry:
    """A released number waiting in the pool to be reassigned."""
    number: int
    formatted_number: str
    released_at: datetime
    source_invoice_ref: Optional[str] = None

    def __post_init__(self):
        _check_number(self.number)
        _check_text(self.formatted_number, "formatted_number")
        _check_timestamp(self.released_at, "released_at")
        if self.source_invoice_ref is not None and not isinstance(self.source_invoice_ref, str):
            raise ValueError("source_invoice_ref must be a string or None")

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "formatted_number": self.formatted_number,
            "released_at": self.released_at.isoformat(),
            "source_invoice_ref": self.source_invoice_ref,
        }


@dataclass(frozen=True)
class AssignmentRecord:
    """One permanent entry in the assignment history."""
    number: int
    formatted_number: str
    invoice_ref: str
    assigned_at: datetime
    was_reassigned: bool

    def __post_init__(self):
        _check_number(self.number)
        _check_text(self.formatted_number, "formatted_number")
        _check_text(self.invoice_ref, "invoice_ref")
        _check_timestamp(self.assigned_at, "assigned_at")
        if not isinstance(self.was_reassigned, bool):
            raise ValueError("was_reassigned must be a bool")

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "formatted_number": self.formatted_number,
            "invoice_ref": self.invoice_ref,
            "assigned_at": self.assigned_at.isoformat(),
            "was_reassigned": self.was_reassigned,
        }


@dataclass(frozen=True)
class AssignmentResult:
    """What assign_number() hands back to the invoice workflow."""
    number: int
    formatted_number: str
    was_reassigned: bool

    def __post_init__(self):
        _check_number(self.number)
        _check_text(self.formatted_number, "formatted_number")

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "formatted_number": self.formatted_number,
            "was_reassigned": self.was_reassigned,
        }


@dataclass(frozen=True)
class NextNumberPreview:
    """Advisory preview of the next assignment. Not a reservation."""
    number: int
    formatted_number: str
    would_be_reassigned: bool

    def __post_init__(self):
        _check_number(self.number)
        _check_text(self.formatted_number, "formatted_number")

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "formatted_number": self.formatted_number,
            "would_be_reassigned": self.would_be_reassigned,
        }


@dataclass(frozen=True)
class TrackerStatus:
    tracker_id: str
    current_sequence: int
    available_count: int
    assignment_count: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        _check_text(self.tracker_id, "tracker_id")
        _check_number(self.current_sequence)
        if self.available_count < 0 or self.assignment_count < 0:
            raise ValueError("counts cannot be negative")

    def to_dict(self) -> dict:
        return {
            "tracker_id": self.tracker_id,
            "current_sequence": self.current_sequence,
            "available_count": self.available_count,
            "assignment_count": self.assignment_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
