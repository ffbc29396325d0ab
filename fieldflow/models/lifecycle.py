"""
FieldFlow - Job Lifecycle Models

Plain value objects passed into the lifecycle state machine. The machine never
loads these itself: callers rebuild the context from the persisted job on
every request.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional

from .db_models import JobLifecycleState


class TransitionEventType(str, Enum):
    QUALIFY = "QUALIFY"
    SEND_ESTIMATE = "SEND_ESTIMATE"
    APPROVE_ESTIMATE = "APPROVE_ESTIMATE"
    REJECT_ESTIMATE = "REJECT_ESTIMATE"
    SCHEDULE = "SCHEDULE"
    DISPATCH = "DISPATCH"
    START_WORK = "START_WORK"
    COMPLETE_WORK = "COMPLETE_WORK"
    CREATE_INVOICE = "CREATE_INVOICE"
    MARK_PAID = "MARK_PAID"
    CANCEL = "CANCEL"
    MARK_LOST = "MARK_LOST"


@dataclass(frozen=True)
class TransitionEvent:
    """
    An externally triggerable lifecycle action.

    Only SCHEDULE (scheduled_date), CREATE_INVOICE (invoice_id) and
    CANCEL / MARK_LOST (reason) carry a payload; use the constructors below.
    """
    type: TransitionEventType
    scheduled_date: Optional[date] = None
    invoice_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def of(cls, event_type: TransitionEventType) -> "TransitionEvent":
        return cls(type=TransitionEventType(event_type))

    @classmethod
    def schedule(cls, scheduled_date: Optional[date]) -> "TransitionEvent":
        return cls(type=TransitionEventType.SCHEDULE, scheduled_date=scheduled_date)

    @classmethod
    def create_invoice(cls, invoice_id: str) -> "TransitionEvent":
        return cls(type=TransitionEventType.CREATE_INVOICE, invoice_id=invoice_id)

    @classmethod
    def cancel(cls, reason: str = "") -> "TransitionEvent":
        return cls(type=TransitionEventType.CANCEL, reason=reason)

    @classmethod
    def mark_lost(cls, reason: str = "") -> "TransitionEvent":
        return cls(type=TransitionEventType.MARK_LOST, reason=reason)

    @classmethod
    def from_action(
        cls,
        action: str,
        scheduled_date: Optional[date] = None,
        invoice_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> "TransitionEvent":
        """Build an event from a raw action name, keeping only the payload that action uses."""
        event_type = TransitionEventType(action)
        if event_type == TransitionEventType.SCHEDULE:
            return cls.schedule(scheduled_date)
        if event_type == TransitionEventType.CREATE_INVOICE:
            return cls.create_invoice(invoice_id)
        if event_type == TransitionEventType.CANCEL:
            return cls.cancel(reason or "")
        if event_type == TransitionEventType.MARK_LOST:
            return cls.mark_lost(reason or "")
        return cls.of(event_type)


@dataclass
class JobLifecycleContext:
    """Facts the state machine reasons about for one job."""
    job_id: str
    tenant_id: str
    status: JobLifecycleState
    scheduled_date: Optional[date] = None
    estimate_id: Optional[str] = None
    invoice_id: Optional[str] = None
    has_contact_info: bool = False
    is_fully_paid: bool = False
    version: int = 0

    def with_status(self, status: JobLifecycleState) -> "JobLifecycleContext":
        return replace(self, status=status)


@dataclass
class JobRecord:
    """
    The lifecycle projection of a job as the external job store hands it over.

    The store owns everything else about a job; the core only reads and writes
    these fields.
    """
    id: str
    tenant_id: str
    status: JobLifecycleState
    version: int = 0
    scheduled_date: Optional[date] = None
    estimate_id: Optional[str] = None
    invoice_id: Optional[str] = None
    has_contact_info: bool = False
    is_fully_paid: bool = False
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def to_context(self) -> JobLifecycleContext:
        return JobLifecycleContext(
            job_id=self.id,
            tenant_id=self.tenant_id,
            status=self.status,
            scheduled_date=self.scheduled_date,
            estimate_id=self.estimate_id,
            invoice_id=self.invoice_id,
            has_contact_info=self.has_contact_info,
            is_fully_paid=self.is_fully_paid,
            version=self.version,
        )

    def snapshot(self) -> Dict[str, Any]:
        """Flat key/value view handed to the rule engine."""
        data = dict(self.attributes)
        data.update({
            "id": self.id,
            "status": self.status.value,
            "scheduled_date": self.scheduled_date.isoformat() if self.scheduled_date else None,
            "estimate_id": self.estimate_id,
            "invoice_id": self.invoice_id,
            "has_contact_info": self.has_contact_info,
            "is_fully_paid": self.is_fully_paid,
        })
        return data


@dataclass(frozen=True)
class TransitionHistoryEntry:
    """One accepted transition, as handed to the history sink."""
    tenant_id: str
    job_id: str
    previous_state: Optional[JobLifecycleState]
    new_state: JobLifecycleState
    timestamp: datetime
    event_type: Optional[str] = None
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
