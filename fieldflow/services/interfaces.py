"""
Ports to the collaborators the workflow core depends on.

Business entity storage, the history sink and action delivery are provided
by the surrounding application. The core only talks to these contracts.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..models.lifecycle import JobRecord, TransitionHistoryEntry


@dataclass
class DispatchOutcome:
    """What a dispatcher reports back for one action."""
    success: bool
    details: Optional[str] = None

    @classmethod
    def ok(cls, details: str = "Action executed successfully") -> "DispatchOutcome":
        return cls(success=True, details=details)

    @classmethod
    def failed(cls, details: str) -> "DispatchOutcome":
        return cls(success=False, details=details)


class ActionDispatcher(ABC):
    """
    Performs the side effect behind an action type: send_email, send_sms,
    create_task, update_field, ...

    Implementations must report failure through the returned outcome or by
    raising; they must never swallow an error and report success. Dispatch
    must be idempotent: a step that timed out is retried on the next heartbeat.
    """

    @abstractmethod
    def dispatch(
        self,
        action_type: str,
        config: Dict[str, Any],
        entity_context: Dict[str, Any],
    ) -> DispatchOutcome:
        """Perform one action for the given entity."""


class JobStore(ABC):
    """Port to wherever jobs are persisted."""

    @abstractmethod
    def load_job(self, tenant_id: str, job_id: str) -> Optional[JobRecord]:
        """Return the job, or None if the tenant has no such job."""

    @abstractmethod
    def persist_job(self, job: JobRecord, expected_version: int) -> bool:
        """
        Write the job if its stored version still equals expected_version.

        Returns False when another writer got there first.
        """


class HistorySink(ABC):
    """Append-only store of transition history."""

    @abstractmethod
    def append_history(self, entry: TransitionHistoryEntry) -> None:
        """Store one entry. Entries are never updated or removed."""

    @abstractmethod
    def get_history(self, tenant_id: str, job_id: str) -> List[Any]:
        """Entries for one job, oldest first."""
