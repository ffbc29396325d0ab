"""
Follow-Up Sequence Scheduler

Multi-step, time-delayed outreach to a lead. Management calls
(start / pause / resume / cancel) change a sequence directly; the heartbeat
(process_due_steps) advances due sequences one step per run.

Heartbeat protocol:
    1. Scan active sequences with next_step_at <= now.
    2. Claim each one with a compare-and-swap on version, pushing
       next_step_at past the end of this batch (the longest the fan-out can
       take, plus the claim lease). A concurrent scan no longer sees a claimed
       sequence as due; a lost CAS means someone else has it.
    3. Fan the claimed steps out to the dispatcher (bounded, with timeout).
    4. Success: stamp the step, advance or complete.
       Timeout: release the claim so the step is due again.
       Failure: count the attempt and release; after max_attempts the step is
       stamped failed and the sequence moves on.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Union
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import (
    DISPATCH_TIMEOUT_SECONDS, FOLLOW_UP_MAX_ATTEMPTS, SCHEDULER_MAX_CONCURRENCY, SEQUENCE_CLAIM_LEASE_SECONDS,
)
from ...exceptions import InvalidSequenceStateError, SequenceNotFoundError
from ...models.db_models import FollowUpChannel, FollowUpSequenceDB, SequenceStatus
from ...models.rule_schemas import FollowUpStepSpec
from ..clock import Clock, SystemClock
from ..interfaces import ActionDispatcher
from .fanout import DispatchJob, DispatchResult, batch_deadline_seconds, dispatch_concurrently

logger = logging.getLogger(__name__)

FOLLOW_UP_STEP_EVENT = "follow_up.step_due"
LEAD_ENTITY_TYPE = "lead"

# Channel → dispatcher action type
CHANNEL_ACTIONS = {
    FollowUpChannel.EMAIL: "send_email",
    FollowUpChannel.TEXT: "send_sms",
    FollowUpChannel.CALL_TASK: "create_task",
}


@dataclass
class StepClaim:
    """A due step this heartbeat owns until it is advanced or released."""
    sequence_id: str
    tenant_id: str
    lead_id: str
    step_index: int
    steps: List[Dict[str, Any]]
    claimed_version: int
    original_next_step_at: Optional[datetime]

    @property
    def step(self) -> Dict[str, Any]:
        return self.steps[self.step_index]


class SequenceScheduler:
    """
    Owns follow-up sequences: management operations and the due-step heartbeat.

    Only the heartbeat needs a dispatcher.
    """

    def __init__(
        self,
        db: Session,
        dispatcher: Optional[ActionDispatcher] = None,
        clock: Optional[Clock] = None,
        max_concurrency: int = SCHEDULER_MAX_CONCURRENCY,
        dispatch_timeout: float = DISPATCH_TIMEOUT_SECONDS,
        claim_lease_seconds: int = SEQUENCE_CLAIM_LEASE_SECONDS,
        max_attempts: int = FOLLOW_UP_MAX_ATTEMPTS,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.max_concurrency = max_concurrency
        self.dispatch_timeout = dispatch_timeout
        self.claim_lease = timedelta(seconds=claim_lease_seconds)
        self.max_attempts = max_attempts

    # =========================================================================
    # MANAGEMENT
    # =========================================================================

    def start_sequence(
        self,
        tenant_id: str,
        lead_id: str,
        steps: Sequence[Union[FollowUpStepSpec, Dict[str, Any]]],
    ) -> FollowUpSequenceDB:
        """
        Start a sequence for a lead.

        The first step is due steps[0].delay_hours from now. With no steps the
        sequence is due immediately and the next heartbeat completes it.
        """
        now = self.clock.now()
        step_dicts = [self._normalize_step(step) for step in steps]

        first_delay = step_dicts[0]["delay_hours"] if step_dicts else 0
        sequence = FollowUpSequenceDB(
            id=str(uuid4()),
            tenant_id=tenant_id,
            lead_id=lead_id,
            status=SequenceStatus.ACTIVE,
            current_step=0,
            steps=step_dicts,
            next_step_at=now + timedelta(hours=first_delay),
            version=0,
            started_at=now,
        )
        self.db.add(sequence)
        self.db.commit()
        self.db.refresh(sequence)

        logger.info(f"Started follow-up sequence {sequence.id} for lead {lead_id} ({len(step_dicts)} steps)")
        return sequence

    def pause(self, tenant_id: str, sequence_id: str) -> FollowUpSequenceDB:
        sequence = self.find_one_sequence(tenant_id, sequence_id)
        if sequence.status != SequenceStatus.ACTIVE:
            raise InvalidSequenceStateError(
                f"Cannot pause sequence {sequence_id} in status {sequence.status.value}"
            )

        sequence.status = SequenceStatus.PAUSED
        sequence.paused_at = self.clock.now()
        sequence.next_step_at = None
        sequence.version += 1
        self.db.commit()
        self.db.refresh(sequence)

        logger.info(f"Paused follow-up sequence {sequence_id}")
        return sequence

    def resume(self, tenant_id: str, sequence_id: str) -> FollowUpSequenceDB:
        """Reactivate a paused sequence; its current step is due immediately."""
        sequence = self.find_one_sequence(tenant_id, sequence_id)
        if sequence.status != SequenceStatus.PAUSED:
            raise InvalidSequenceStateError(
                f"Cannot resume sequence {sequence_id} in status {sequence.status.value}"
            )

        sequence.status = SequenceStatus.ACTIVE
        sequence.paused_at = None
        sequence.next_step_at = self.clock.now()
        sequence.version += 1
        self.db.commit()
        self.db.refresh(sequence)

        logger.info(f"Resumed follow-up sequence {sequence_id}")
        return sequence

    def cancel(self, tenant_id: str, sequence_id: str) -> FollowUpSequenceDB:
        sequence = self.find_one_sequence(tenant_id, sequence_id)
        if sequence.status in (SequenceStatus.COMPLETED, SequenceStatus.CANCELLED):
            raise InvalidSequenceStateError(
                f"Cannot cancel sequence {sequence_id} in status {sequence.status.value}"
            )

        sequence.status = SequenceStatus.CANCELLED
        sequence.cancelled_at = self.clock.now()
        sequence.next_step_at = None
        sequence.version += 1
        self.db.commit()
        self.db.refresh(sequence)

        logger.info(f"Cancelled follow-up sequence {sequence_id}")
        return sequence

    def find_sequences(
        self,
        tenant_id: str,
        lead_id: Optional[str] = None,
        status: Optional[SequenceStatus] = None,
    ) -> List[FollowUpSequenceDB]:
        query = self.db.query(FollowUpSequenceDB).filter(FollowUpSequenceDB.tenant_id == tenant_id)
        if lead_id:
            query = query.filter(FollowUpSequenceDB.lead_id == lead_id)
        if status:
            query = query.filter(FollowUpSequenceDB.status == SequenceStatus(status))
        return query.order_by(FollowUpSequenceDB.started_at.desc()).all()

    def find_one_sequence(self, tenant_id: str, sequence_id: str) -> FollowUpSequenceDB:
        sequence = self.db.query(FollowUpSequenceDB).filter(
            FollowUpSequenceDB.id == sequence_id,
            FollowUpSequenceDB.tenant_id == tenant_id,
        ).first()
        if not sequence:
            raise SequenceNotFoundError(sequence_id)
        return sequence


    # =========================================================================
    # HEARTBEAT
    # =========================================================================

    def process_due_steps(self, now: Optional[datetime] = None, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Advance every due sequence by one step.

        One sequence failing never stops the others; failures are logged and
        reported in the returned summary.
        """
        if self.dispatcher is None:
            raise ValueError("process_due_steps needs an action dispatcher")

        now = now or self.clock.now()
        claims: List[StepClaim] = []
        jobs: List[DispatchJob] = []
        invalid: Dict[str, str] = {}
        completed = []
        lost = []
        errors = []

        due = self.get_due_sequences(now, tenant_id)
        lease = self.claim_lease + timedelta(
            seconds=batch_deadline_seconds(len(due), self.max_concurrency, self.dispatch_timeout),
        )
        for sequence in due:
            sequence_id = sequence.id
            try:
                if sequence.current_step >= len(sequence.steps or []):
                    if self._complete_exhausted(sequence, now):
                        completed.append(sequence_id)
                    else:
                        lost.append(sequence_id)
                    continue

                claim = self._claim(sequence, now, lease)
                if claim is None:
                    lost.append(sequence_id)
                    continue

                claims.append(claim)
                try:
                    jobs.append(self._build_job(claim))
                except (KeyError, ValueError) as e:
                    logger.error(f"Follow-up sequence {sequence_id} step {claim.step_index} is invalid: {e}")
                    invalid[sequence_id] = f"Invalid step: {e}"
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to claim follow-up sequence {sequence_id}: {e}")
                errors.append({"sequence_id": sequence_id, "error": str(e)})

        results = dispatch_concurrently(self.dispatcher, jobs, self.max_concurrency, self.dispatch_timeout)
        for sequence_id, error in invalid.items():
            results[sequence_id] = DispatchResult(key=sequence_id, error=error)

        executed = []
        failed = []
        for claim in claims:
            result = results[claim.sequence_id]
            try:
                if result.succeeded:
                    finished = self._advance(claim, now)
                    if finished is None:
                        lost.append(claim.sequence_id)
                        continue
                    executed.append({"sequence_id": claim.sequence_id, "step": claim.step_index})
                    if finished:
                        completed.append(claim.sequence_id)
                    continue

                logger.error(
                    f"Follow-up step {claim.step_index} of sequence {claim.sequence_id} failed: "
                    f"{result.failure_details}"
                )
                finished = self._settle_failure(claim, result, now, give_up=claim.sequence_id in invalid)
                failed.append({
                    "sequence_id": claim.sequence_id,
                    "step": claim.step_index,
                    "error": result.failure_details,
                    "abandoned": finished is not None,
                })
                if finished:
                    completed.append(claim.sequence_id)
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to record step {claim.step_index} of sequence {claim.sequence_id}: {e}")
                errors.append({"sequence_id": claim.sequence_id, "error": str(e)})

        summary = {
            "run_date": now.isoformat(),
            "sequences_due": len(due),
            "steps_executed": len(executed),
            "steps_failed": len(failed),
            "steps_abandoned": len([f for f in failed if f["abandoned"]]),
            "sequences_completed": len(completed),
            "claims_lost": len(lost),
            "errors": len(errors),
            "details": {
                "executed": executed,
                "failed": failed,
                "completed": completed,
                "errors": errors,
            },
        }
        if claims or completed or errors:
            logger.info(
                f"Follow-up heartbeat: {len(executed)} executed, {len(failed)} failed, "
                f"{len(completed)} completed, {len(lost)} claims lost"
            )
        return summary

    def get_due_sequences(self, now: datetime, tenant_id: Optional[str] = None) -> List[FollowUpSequenceDB]:
        query = self.db.query(FollowUpSequenceDB).filter(
            FollowUpSequenceDB.status == SequenceStatus.ACTIVE,
            FollowUpSequenceDB.next_step_at.isnot(None),
            FollowUpSequenceDB.next_step_at <= now,
        )
        if tenant_id:
            query = query.filter(FollowUpSequenceDB.tenant_id == tenant_id)
        return query.order_by(FollowUpSequenceDB.next_step_at.asc()).all()

    # ---- Claim protocol ----

    def _compare_and_swap(self, sequence_id: str, expected_version: int, values: Dict[str, Any]) -> bool:
        values = dict(values)
        values[FollowUpSequenceDB.version] = expected_version + 1
        updated = self.db.query(FollowUpSequenceDB).filter(
            FollowUpSequenceDB.id == sequence_id,
            FollowUpSequenceDB.version == expected_version,
            FollowUpSequenceDB.status == SequenceStatus.ACTIVE,
        ).update(values, synchronize_session=False)
        self.db.commit()
        return updated == 1

    def _claim(self, sequence: FollowUpSequenceDB, now: datetime, lease: timedelta) -> Optional[StepClaim]:
        """
        Take the current step of a due sequence.

        The lease must outlast the whole batch's dispatch, otherwise a second
        runner can claim a step that is still queued or in flight.
        """
        claim = StepClaim(
            sequence_id=sequence.id,
            tenant_id=sequence.tenant_id,
            lead_id=sequence.lead_id,
            step_index=sequence.current_step,
            steps=[dict(step) for step in sequence.steps],
            claimed_version=sequence.version + 1,
            original_next_step_at=sequence.next_step_at,
        )
        if not self._compare_and_swap(
            sequence.id, sequence.version, {FollowUpSequenceDB.next_step_at: now + lease},
        ):
            logger.info(f"Follow-up sequence {sequence.id} already claimed by another worker")
            return None
        return claim

    def _release(self, claim: StepClaim, attempts: Optional[int] = None, error: Optional[str] = None) -> None:
        """Hand the step back so the next heartbeat retries it, recording the failed attempt if given."""
        values: Dict[str, Any] = {FollowUpSequenceDB.next_step_at: claim.original_next_step_at}
        if attempts is not None:
            steps = [dict(step) for step in claim.steps]
            steps[claim.step_index]["attempts"] = attempts
            steps[claim.step_index]["last_error"] = error
            values[FollowUpSequenceDB.steps] = steps

        if not self._compare_and_swap(claim.sequence_id, claim.claimed_version, values):
            logger.warning(f"Could not release claim on sequence {claim.sequence_id}: it changed during dispatch")
        else:
            logger.warning(f"Released claim on sequence {claim.sequence_id}; step {claim.step_index} stays due")

    def _settle_failure(
        self,
        claim: StepClaim,
        result: DispatchResult,
        now: datetime,
        give_up: bool = False,
    ) -> Optional[bool]:
        """
        Retry or abandon a step whose dispatch did not succeed.

        A timed-out step is released without using up an attempt. Any other
        failure counts; at max_attempts (or right away when give_up is set)
        the step is stamped failed and the sequence moves on.

        Returns None when the step stays due, otherwise whether abandoning it
        completed the sequence.
        """
        if result.timed_out:
            self._release(claim)
            return None

        attempts = (claim.step.get("attempts") or 0) + 1
        if not give_up and attempts < self.max_attempts:
            self._release(claim, attempts=attempts, error=result.failure_details)
            return None

        logger.error(
            f"Giving up on step {claim.step_index} of sequence {claim.sequence_id} "
            f"after {attempts} attempt(s)"
        )
        finished = self._advance(claim, now, error=result.failure_details, attempts=attempts)
        return bool(finished)

    def _complete_exhausted(self, sequence: FollowUpSequenceDB, now: datetime) -> bool:
        done = self._compare_and_swap(sequence.id, sequence.version, {
            FollowUpSequenceDB.status: SequenceStatus.COMPLETED,
            FollowUpSequenceDB.completed_at: now,
            FollowUpSequenceDB.next_step_at: None,
        })
        if done:
            logger.info(f"Follow-up sequence {sequence.id} had no steps left; marked completed")
        return done

    def _advance(
        self,
        claim: StepClaim,
        now: datetime,
        error: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> Optional[bool]:
        """
        Stamp the step (executed, or failed when error is given) and move the sequence on.

        Returns None when the sequence moved on during dispatch and nothing was
        recorded, otherwise whether this step completed the sequence. A
        sequence that was paused or cancelled while the step was in flight
        keeps its status; the step is still recorded.
        """
        sequence = self.db.query(FollowUpSequenceDB).filter(
            FollowUpSequenceDB.id == claim.sequence_id,
        ).populate_existing().first()
        if sequence is None or sequence.current_step != claim.step_index:
            logger.warning(f"Sequence {claim.sequence_id} moved on during dispatch; step result not recorded")
            return None

        steps = [dict(step) for step in sequence.steps]
        step = steps[claim.step_index]
        if error is None:
            step["executed_at"] = now.isoformat()
        else:
            step["failed_at"] = now.isoformat()
            step["last_error"] = error
        if attempts is not None:
            step["attempts"] = attempts
        sequence.steps = steps
        sequence.current_step = claim.step_index + 1
        sequence.version += 1

        finished = False
        if sequence.status == SequenceStatus.ACTIVE:
            if sequence.current_step < len(steps):
                delay_hours = steps[sequence.current_step].get("delay_hours") or 0
                sequence.next_step_at = now + timedelta(hours=delay_hours)
            else:
                sequence.status = SequenceStatus.COMPLETED
                sequence.completed_at = now
                sequence.next_step_at = None
                finished = True

        self.db.commit()
        return finished

    # ---- Helpers ----

    def _build_job(self, claim: StepClaim) -> DispatchJob:
        channel = FollowUpChannel(claim.step.get("channel"))
        return DispatchJob(
            key=claim.sequence_id,
            action_type=CHANNEL_ACTIONS[channel],
            config={
                "channel": channel.value,
                "template_id": claim.step.get("template_id"),
                "message": claim.step.get("message"),
            },
            entity_context={
                "tenant_id": claim.tenant_id,
                "entity_type": LEAD_ENTITY_TYPE,
                "entity_id": claim.lead_id,
                "trigger_event": FOLLOW_UP_STEP_EVENT,
                "sequence_id": claim.sequence_id,
                "step_index": claim.step_index,
            },
        )

    @staticmethod
    def _normalize_step(step: Union[FollowUpStepSpec, Dict[str, Any]]) -> Dict[str, Any]:
        if not isinstance(step, FollowUpStepSpec):
            step = FollowUpStepSpec(**step)
        data = step.model_dump(mode="json")
        data["executed_at"] = None
        data["failed_at"] = None
        data["attempts"] = 0
        data["last_error"] = None
        return data
