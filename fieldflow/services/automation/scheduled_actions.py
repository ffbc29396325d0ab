"""
Deferred rule actions.

A fired rule action with delay_minutes is stored as a pending scheduled
action. The heartbeat dispatches the ones that are due, using the same claim,
fan-out and release rules as follow-up steps. An action that keeps failing is
marked failed after SCHEDULED_ACTION_MAX_ATTEMPTS tries.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ...config import (
    DISPATCH_TIMEOUT_SECONDS, SCHEDULED_ACTION_MAX_ATTEMPTS, SCHEDULER_MAX_CONCURRENCY,
    SEQUENCE_CLAIM_LEASE_SECONDS,
)
from ...models.db_models import AutomationExecutionDB, ScheduledActionDB, ScheduledActionStatus
from ..clock import Clock, SystemClock
from ..interfaces import ActionDispatcher
from .fanout import DispatchJob, batch_deadline_seconds, dispatch_concurrently
from .rule_engine import RuleEngine

logger = logging.getLogger(__name__)


@dataclass
class ActionClaim:
    action_id: str
    attempt: int
    original_due_at: datetime
    job: DispatchJob


class ScheduledActionProcessor:
    """Dispatches pending scheduled actions once they are due."""

    def __init__(
        self,
        db: Session,
        dispatcher: ActionDispatcher,
        clock: Optional[Clock] = None,
        max_concurrency: int = SCHEDULER_MAX_CONCURRENCY,
        dispatch_timeout: float = DISPATCH_TIMEOUT_SECONDS,
        claim_lease_seconds: int = SEQUENCE_CLAIM_LEASE_SECONDS,
        max_attempts: int = SCHEDULED_ACTION_MAX_ATTEMPTS,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.max_concurrency = max_concurrency
        self.dispatch_timeout = dispatch_timeout
        self.claim_lease = timedelta(seconds=claim_lease_seconds)
        self.max_attempts = max_attempts

    def get_due_actions(self, now: datetime, tenant_id: Optional[str] = None) -> List[ScheduledActionDB]:
        query = self.db.query(ScheduledActionDB).filter(
            ScheduledActionDB.status == ScheduledActionStatus.PENDING,
            ScheduledActionDB.due_at <= now,
        )
        if tenant_id:
            query = query.filter(ScheduledActionDB.tenant_id == tenant_id)
        return query.order_by(ScheduledActionDB.due_at.asc()).all()

    def process_due_actions(self, now: Optional[datetime] = None, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        now = now or self.clock.now()
        due = self.get_due_actions(now, tenant_id)
        lease = self.claim_lease + timedelta(
            seconds=batch_deadline_seconds(len(due), self.max_concurrency, self.dispatch_timeout),
        )
        claims: List[ActionClaim] = []
        lost = []
        errors = []

        for action in due:
            action_id = action.id
            try:
                claim = self._claim(action, now, lease)
                if claim is None:
                    lost.append(action_id)
                else:
                    claims.append(claim)
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to claim scheduled action {action_id}: {e}")
                errors.append({"action_id": action_id, "error": str(e)})

        results = dispatch_concurrently(
            self.dispatcher, [claim.job for claim in claims], self.max_concurrency, self.dispatch_timeout,
        )

        executed = []
        retrying = []
        failed = []
        for claim in claims:
            result = results[claim.action_id]
            try:
                action = self.db.query(ScheduledActionDB).filter(
                    ScheduledActionDB.id == claim.action_id,
                ).populate_existing().first()

                if result.succeeded:
                    action.status = ScheduledActionStatus.EXECUTED
                    action.executed_at = now
                    action.last_error = None
                    executed.append(claim.action_id)
                else:
                    action.last_error = result.failure_details
                    logger.error(
                        f"Scheduled action {claim.action_id} ({claim.job.action_type}) attempt "
                        f"{claim.attempt} failed: {result.failure_details}"
                    )
                    if claim.attempt >= self.max_attempts:
                        action.status = ScheduledActionStatus.FAILED
                        failed.append({"action_id": claim.action_id, "error": result.failure_details})
                    else:
                        action.due_at = claim.original_due_at
                        retrying.append({"action_id": claim.action_id, "error": result.failure_details})
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to record result of scheduled action {claim.action_id}: {e}")
                errors.append({"action_id": claim.action_id, "error": str(e)})

        if claims or errors:
            logger.info(
                f"Scheduled action heartbeat: {len(executed)} executed, {len(retrying)} retrying, "
                f"{len(failed)} failed"
            )

        return {
            "run_date": now.isoformat(),
            "actions_due": len(due),
            "actions_executed": len(executed),
            "actions_retrying": len(retrying),
            "actions_failed": len(failed),
            "claims_lost": len(lost),
            "errors": len(errors),
            "details": {
                "executed": executed,
                "retrying": retrying,
                "failed": failed,
                "errors": errors,
            },
        }

    def _claim(self, action: ScheduledActionDB, now: datetime, lease: timedelta) -> Optional[ActionClaim]:
        attempts = action.attempts or 0
        trigger_event = self.db.query(AutomationExecutionDB.trigger_event).filter(
            AutomationExecutionDB.id == action.execution_id,
        ).scalar()

        claim = ActionClaim(
            action_id=action.id,
            attempt=attempts + 1,
            original_due_at=action.due_at,
            job=DispatchJob(
                key=action.id,
                action_type=action.action_type,
                config=dict(action.action_config or {}),
                entity_context=RuleEngine.build_entity_context(
                    action.tenant_id, action.entity_type, action.entity_id,
                    trigger_event, action.rule_id, dict(action.entity_snapshot or {}),
                ),
            ),
        )

        updated = self.db.query(ScheduledActionDB).filter(
            ScheduledActionDB.id == action.id,
            ScheduledActionDB.status == ScheduledActionStatus.PENDING,
            ScheduledActionDB.attempts == attempts,
        ).update({
            ScheduledActionDB.attempts: attempts + 1,
            ScheduledActionDB.due_at: now + lease,
        }, synchronize_session=False)
        self.db.commit()

        if updated != 1:
            logger.info(f"Scheduled action {action.id} already claimed by another worker")
            return None
        return claim
