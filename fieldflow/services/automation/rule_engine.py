"""
Rule Engine

The single entry point other modules call when a domain event happens
(job created, job transitioned, estimate sent, invoice overdue, ...).

For every active rule of the tenant listening to the event:

    1. Suppression policy (cooldown, max fires, quiet hours, business days).
       A suppressed rule is logged with its reason; conditions are skipped.
    2. Conditions (AND) against the entity snapshot.
    3. Conditions passed:
       - live rule: actions dispatched in order, each isolated and time-limited
       - test-mode rule: nothing dispatched, every action logged as skipped
    4. Exactly one execution row per rule, whatever happened.

Dispatch failures and timeouts are recorded on the execution and never raised to the
caller. The cooldown read and the execution write are not atomic, so two
concurrent events for the same entity can both fire; this is tolerated.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import DEFAULT_TIMEZONE, DISPATCH_TIMEOUT_SECONDS
from ...models.db_models import (
    ActionStatus, AutomationExecutionDB, AutomationRuleDB, ScheduledActionDB, ScheduledActionStatus,
)
from ..clock import Clock, SystemClock
from ..interfaces import ActionDispatcher
from .conditions import evaluate_conditions
from .execution_log import ExecutionLogService
from .fanout import DispatchJob, dispatch_concurrently
from .suppression import FiringHistory, check_suppression, needs_history

logger = logging.getLogger(__name__)

TEST_MODE_DETAILS = "Test mode - action not executed"


class RuleEngine:
    """Evaluates domain events against a tenant's automation rules."""

    def __init__(
        self,
        db: Session,
        dispatcher: ActionDispatcher,
        clock: Optional[Clock] = None,
        default_timezone: str = DEFAULT_TIMEZONE,
        dispatch_timeout: float = DISPATCH_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.default_timezone = default_timezone
        self.dispatch_timeout = dispatch_timeout
        self.execution_log = ExecutionLogService(db)

    def evaluate_event(
        self,
        tenant_id: str,
        event_name: str,
        entity_type: str,
        entity_id: str,
        entity_snapshot: Optional[Dict[str, Any]] = None,
    ) -> List[AutomationExecutionDB]:
        """
        Run every matching rule for one event.

        Returns the execution rows written (one per matching active rule).
        Rows are flushed, not committed; the caller owns the transaction.
        """
        snapshot = dict(entity_snapshot or {})
        executions = []

        for rule in self.get_matching_rules(tenant_id, event_name):
            executions.append(
                self._evaluate_rule(rule, tenant_id, event_name, entity_type, entity_id, snapshot)
            )

        if executions:
            fired = sum(1 for e in executions if e.conditions_passed and not e.is_test_mode)
            logger.info(
                f"Event {event_name} for {entity_type} {entity_id}: "
                f"{len(executions)} rule(s) evaluated, {fired} fired"
            )
        return executions

    def get_matching_rules(self, tenant_id: str, event_name: str) -> List[AutomationRuleDB]:
        """Active rules of the tenant whose trigger listens to event_name."""
        rules = self.db.query(AutomationRuleDB).filter(
            AutomationRuleDB.tenant_id == tenant_id,
            AutomationRuleDB.is_active.is_(True),
        ).order_by(AutomationRuleDB.created_at.asc()).all()

        return [rule for rule in rules if rule.trigger_event == event_name]

    # =========================================================================
    # PER-RULE EVALUATION
    # =========================================================================

    def _evaluate_rule(
        self,
        rule: AutomationRuleDB,
        tenant_id: str,
        event_name: str,
        entity_type: str,
        entity_id: str,
        snapshot: Dict[str, Any],
    ) -> AutomationExecutionDB:
        now = self.clock.now()
        execution_id = str(uuid4())

        suppression_reason = self.check_constraints(rule, tenant_id, entity_id, now)
        if suppression_reason:
            logger.info(f"Rule {rule.name} ({rule.id}) suppressed for {entity_type} {entity_id}: {suppression_reason}")
            return self.execution_log.log_execution(
                tenant_id, rule, entity_type, entity_id, event_name,
                conditions_passed=False,
                actions_taken=None,
                suppression_reason=suppression_reason,
                executed_at=now,
                execution_id=execution_id,
            )

        conditions = (rule.trigger or {}).get("conditions") or []
        conditions_passed = evaluate_conditions(conditions, snapshot)

        actions_taken = None
        if conditions_passed and not rule.test_mode:
            actions_taken = self.execute_actions(
                rule, tenant_id, event_name, entity_type, entity_id, snapshot, execution_id, now,
            )
        elif conditions_passed and rule.test_mode:
            actions_taken = [
                {
                    "type": action.get("type"),
                    "status": ActionStatus.SKIPPED.value,
                    "details": TEST_MODE_DETAILS,
                }
                for action in rule.actions or []
            ]

        execution = self.execution_log.log_execution(
            tenant_id, rule, entity_type, entity_id, event_name,
            conditions_passed=conditions_passed,
            actions_taken=actions_taken,
            suppression_reason=None,
            executed_at=now,
            execution_id=execution_id,
        )
        self._schedule_deferred(rule, tenant_id, entity_type, entity_id, snapshot, execution, now)
        return execution

    def check_constraints(self, rule: AutomationRuleDB, tenant_id: str, entity_id: str, now=None) -> Optional[str]:
        """Suppression reason for this rule and entity right now, or None."""
        constraints = rule.constraints or {}
        history = FiringHistory()
        if needs_history(constraints):
            history = self.execution_log.get_firing_history(tenant_id, rule.lineage_id, entity_id)

        return check_suppression(constraints, now or self.clock.now(), history, self.default_timezone)

    # =========================================================================
    # ACTIONS
    # =========================================================================

    def execute_actions(
        self,
        rule: AutomationRuleDB,
        tenant_id: str,
        event_name: str,
        entity_type: str,
        entity_id: str,
        snapshot: Dict[str, Any],
        execution_id: str,
        now,
    ) -> List[Dict[str, Any]]:
        """
        Dispatch each action in order. A failing action is recorded and the
        rest still run. Actions with delay_minutes are only queued here.
        """
        entity_context = self.build_entity_context(
            tenant_id, entity_type, entity_id, event_name, rule.id, snapshot,
        )
        results = []

        for action in rule.actions or []:
            action_type = action.get("type")
            delay_minutes = action.get("delay_minutes") or 0

            if delay_minutes > 0:
                due_at = now + timedelta(minutes=delay_minutes)
                results.append({
                    "type": action_type,
                    "status": ActionStatus.SCHEDULED.value,
                    "details": f"Scheduled for {due_at.isoformat()}",
                })
                continue

            job = DispatchJob(
                key=(execution_id, len(results)),
                action_type=action_type,
                config=action.get("config") or {},
                entity_context=entity_context,
            )
            # One at a time, in order, each with its own timeout
            result = dispatch_concurrently(self.dispatcher, [job], 1, self.dispatch_timeout)[job.key]

            if result.succeeded:
                results.append({
                    "type": action_type,
                    "status": ActionStatus.EXECUTED.value,
                    "details": result.outcome.details or "Action executed successfully",
                })
            else:
                logger.error(f"Failed to execute action: {action_type} for rule {rule.id}: {result.failure_details}")
                results.append({
                    "type": action_type,
                    "status": ActionStatus.FAILED.value,
                    "details": result.failure_details,
                })

        return results

    @staticmethod
    def build_entity_context(
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        event_name: str,
        rule_id: str,
        snapshot: Dict[str, Any],
    ) -> Dict[str, Any]:
        return {
            "tenant_id": tenant_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "trigger_event": event_name,
            "rule_id": rule_id,
            "data": snapshot,
        }

    def _schedule_deferred(
        self,
        rule: AutomationRuleDB,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        snapshot: Dict[str, Any],
        execution: AutomationExecutionDB,
        now,
    ) -> None:
        if not execution.conditions_passed or rule.test_mode:
            return

        for action in rule.actions or []:
            delay_minutes = action.get("delay_minutes") or 0
            if delay_minutes <= 0:
                continue
            self.db.add(ScheduledActionDB(
                id=str(uuid4()),
                tenant_id=tenant_id,
                execution_id=execution.id,
                rule_id=rule.id,
                entity_type=entity_type,
                entity_id=entity_id,
                entity_snapshot=snapshot,
                action_type=action.get("type"),
                action_config=action.get("config") or {},
                status=ScheduledActionStatus.PENDING,
                due_at=now + timedelta(minutes=delay_minutes),
            ))
        self.db.flush()
