"""Domain event types for payroll workflow operations.

All events are:
- Immutable (frozen dataclasses)
- Typed with explicit payloads
- Traceable via metadata
- Serializable for delivery by the notification subsystem
"""

from __future__ import annotations

import base64
import json
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from hr_payroll.models.base import utcnow


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    CALCULATION = "calculation"
    APPROVAL = "approval"
    RELEASE = "release"
    CORRECTION = "correction"
    PROCESSING = "processing"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    correlation_id: UUID
    actor_id: str | None
    source_service: str
    version: int = 1

    @classmethod
    def create(
        cls,
        actor_id: str | None = None,
        correlation_id: UUID | None = None,
        source_service: str = "payroll",
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=utcnow(),
            correlation_id=correlation_id or uuid4(),
            actor_id=actor_id,
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        """Event category for filtering."""
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        data = asdict(self)
        data["event_type"] = self.event_type
        data["category"] = self.category.value
        return _serialize_dict(data)

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


def _serialize_dict(obj: Any) -> Any:
    """Recursively serialize objects for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: _serialize_dict(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_serialize_dict(v) for v in obj]
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return str(obj)
    elif isinstance(obj, Enum):
        return obj.value
    elif isinstance(obj, bytes):
        return base64.b64encode(obj).decode("ascii")
    return obj


# =============================================================================
# Calculation Events
# =============================================================================


@dataclass(frozen=True)
class PayrollRecordCalculated(DomainEvent):
    """A record was (re)calculated and is ready for approval."""

    payroll_record_id: UUID
    employee_id: str
    branch_id: str
    period: str
    gross: Decimal
    net: Decimal
    currency: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.CALCULATION


@dataclass(frozen=True)
class PayrollCalculationFailed(DomainEvent):
    """Calculation failed for one employee; the record stays in draft."""

    employee_id: str
    branch_id: str
    period: str
    error_code: str
    message: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.CALCULATION


# =============================================================================
# Approval Events
# =============================================================================


@dataclass(frozen=True)
class RecordSubmittedForApproval(DomainEvent):
    """A record entered the approval chain at level 1."""

    payroll_record_id: UUID
    employee_id: str
    level: int
    required_role: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


@dataclass(frozen=True)
class ApprovalDecisionRecorded(DomainEvent):
    """An approver decided on a record at one level."""

    payroll_record_id: UUID
    employee_id: str
    level: int
    decision: str
    new_status: str
    next_level: int | None
    notes: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


@dataclass(frozen=True)
class ApprovalOverdue(DomainEvent):
    """A record has waited at one level longer than the configured SLA."""

    payroll_record_id: UUID
    branch_id: str
    level: int
    pending_since: datetime

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


# =============================================================================
# Release Events
# =============================================================================


@dataclass(frozen=True)
class PayslipReleased(DomainEvent):
    """A record became visible to the employee; carries the rendered payslip."""

    payroll_record_id: UUID
    employee_id: str
    period: str
    version: int
    net: Decimal
    currency: str
    document: bytes | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.RELEASE


# =============================================================================
# Correction Events
# =============================================================================


@dataclass(frozen=True)
class CorrectionStatusChanged(DomainEvent):
    """An error correction moved between states."""

    correction_id: UUID
    payroll_record_id: UUID
    from_status: str | None
    to_status: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.CORRECTION


@dataclass(frozen=True)
class PayrollRecordCorrected(DomainEvent):
    """A correction produced a new released version of a record."""

    correction_id: UUID
    original_record_id: UUID
    new_record_id: UUID
    employee_id: str
    version: int
    net: Decimal
    currency: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.CORRECTION


# =============================================================================
# Processing Events
# =============================================================================


@dataclass(frozen=True)
class BranchRunFinished(DomainEvent):
    """A branch-wide processing run completed or was cancelled."""

    run_id: UUID
    branch_id: str
    period: str
    status: str
    success_count: int
    failure_count: int
    skipped_count: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.PROCESSING
