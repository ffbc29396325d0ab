"""
Job Lifecycle Service

Drives a job through the lifecycle state machine:
load → stale check → apply → persist (optimistic) → record history → emit event.

The service never retries. A StaleContextError tells the caller to reload
the job and decide again.
"""
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional

from ...exceptions import InvalidTransitionError, JobNotFoundError, StaleContextError
from ...models.db_models import JobLifecycleState
from ...models.lifecycle import JobRecord, TransitionEvent, TransitionEventType, TransitionHistoryEntry
from ..clock import Clock, SystemClock
from ..interfaces import HistorySink, JobStore
from .state_machine import JobStateMachine

logger = logging.getLogger(__name__)

JOB_TRANSITIONED_EVENT = "job.transitioned"
JOB_ENTITY_TYPE = "job"


class JobLifecycleService:
    """Applies lifecycle transitions to persisted jobs."""

    def __init__(
        self,
        job_store: JobStore,
        history_sink: HistorySink,
        state_machine: Optional[JobStateMachine] = None,
        clock: Optional[Clock] = None,
        rule_engine=None,
    ):
        self.job_store = job_store
        self.history_sink = history_sink
        self.state_machine = state_machine or JobStateMachine()
        self.clock = clock or SystemClock()
        self.rule_engine = rule_engine

    def transition(
        self,
        tenant_id: str,
        job_id: str,
        event: TransitionEvent,
        expected_status: Optional[JobLifecycleState] = None,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
        has_contact_info: Optional[bool] = None,
        is_fully_paid: Optional[bool] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> JobRecord:
        """
        Apply one event to a job.

        Args:
            expected_status: The status the caller based its decision on.
                A mismatch with the stored job raises StaleContextError.
            has_contact_info / is_fully_paid: Facts only the caller knows;
                when given they override what the store reported.

        Raises:
            JobNotFoundError, StaleContextError, InvalidTransitionError
        """
        job = self._load(tenant_id, job_id)

        if expected_status is not None and job.status != expected_status:
            raise StaleContextError(job_id, expected_status.value, job.status.value)

        context = job.to_context()
        if has_contact_info is not None:
            context.has_contact_info = has_contact_info
        if is_fully_paid is not None:
            context.is_fully_paid = is_fully_paid

        allowed, reason = self.state_machine.check(context, event)
        if not allowed:
            raise InvalidTransitionError(job.status, event.type.value, reason)

        new_state, _ = self.state_machine.apply(context, event)
        now = self.clock.now()
        updated = self._apply_side_fields(job, event, new_state, now)

        if not self.job_store.persist_job(updated, expected_version=context.version):
            current = self.job_store.load_job(tenant_id, job_id)
            actual = current.status.value if current else "deleted"
            raise StaleContextError(job_id, job.status.value, actual)

        entry_metadata = dict(metadata or {})
        if event.scheduled_date is not None:
            entry_metadata["scheduled_date"] = event.scheduled_date.isoformat()
        if event.invoice_id:
            entry_metadata["invoice_id"] = event.invoice_id

        self.history_sink.append_history(TransitionHistoryEntry(
            tenant_id=tenant_id,
            job_id=job_id,
            previous_state=job.status,
            new_state=new_state,
            timestamp=now,
            event_type=event.type.value,
            actor_id=actor_id,
            actor_name=actor_name,
            reason=event.reason,
            metadata=entry_metadata,
        ))

        logger.info(f"Job {job_id}: {job.status.value} + {event.type.value} -> {new_state.value}")

        self._emit_transition_event(tenant_id, updated, job.status, event)
        return updated

    def record_initial_state(
        self,
        job: JobRecord,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> None:
        """Write the first history entry (no previous state) for a newly created job."""
        self.history_sink.append_history(TransitionHistoryEntry(
            tenant_id=job.tenant_id,
            job_id=job.id,
            previous_state=None,
            new_state=job.status,
            timestamp=self.clock.now(),
            actor_id=actor_id,
            actor_name=actor_name,
            reason="Job created",
        ))

    def get_available_transitions(self, tenant_id: str, job_id: str) -> List[str]:
        job = self._load(tenant_id, job_id)
        return [event_type.value for event_type in self.state_machine.get_available_transitions(job.to_context())]

    def get_history(self, tenant_id: str, job_id: str) -> list:
        """Transition history of a job, oldest first."""
        return self.history_sink.get_history(tenant_id, job_id)

    # ---- Private helpers ----

    def _load(self, tenant_id: str, job_id: str) -> JobRecord:
        job = self.job_store.load_job(tenant_id, job_id)
        if job is None or job.tenant_id != tenant_id:
            raise JobNotFoundError(job_id)
        return job

    @staticmethod
    def _apply_side_fields(job: JobRecord, event: TransitionEvent, new_state: JobLifecycleState, now) -> JobRecord:
        changes: Dict[str, Any] = {"status": new_state, "version": job.version + 1}

        if event.type == TransitionEventType.SCHEDULE:
            changes["scheduled_date"] = event.scheduled_date
        elif event.type == TransitionEventType.CREATE_INVOICE:
            changes["invoice_id"] = event.invoice_id
        elif event.type == TransitionEventType.START_WORK:
            changes["actual_start_time"] = now
        elif event.type == TransitionEventType.COMPLETE_WORK:
            changes["actual_end_time"] = now
            changes["completed_at"] = now

        return replace(job, **changes)

    def _emit_transition_event(
        self,
        tenant_id: str,
        job: JobRecord,
        previous_state: JobLifecycleState,
        event: TransitionEvent,
    ) -> None:
        if self.rule_engine is None:
            return

        snapshot = job.snapshot()
        snapshot.update({
            "previous_status": previous_state.value,
            "new_status": job.status.value,
            "transition": event.type.value,
        })
        try:
            self.rule_engine.evaluate_event(tenant_id, JOB_TRANSITIONED_EVENT, JOB_ENTITY_TYPE, job.id, snapshot)
        except Exception:
            # The transition is already persisted
            logger.exception(f"Rule evaluation failed after transition of job {job.id}")
