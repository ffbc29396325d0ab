"""
Automation Execution Log

Read and write side of the automation_executions table.

Core Principles:
1. One row per (rule, triggering event) evaluation, whatever the outcome.
2. Append-only. Rows are never edited after insert.
3. The suppression policy reads its firing history from here.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models.db_models import AutomationExecutionDB, AutomationRuleDB
from .suppression import FiringHistory


class ExecutionLogService:
    """Append and query automation executions, always scoped to one tenant."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # WRITE
    # =========================================================================

    def log_execution(
        self,
        tenant_id: str,
        rule: AutomationRuleDB,
        entity_type: str,
        entity_id: str,
        trigger_event: str,
        conditions_passed: bool,
        actions_taken: Optional[List[Dict[str, Any]]],
        suppression_reason: Optional[str],
        executed_at: datetime,
        execution_id: Optional[str] = None,
    ) -> AutomationExecutionDB:
        execution = AutomationExecutionDB(
            id=execution_id or str(uuid4()),
            tenant_id=tenant_id,
            rule_id=rule.id,
            rule_lineage_id=rule.lineage_id,
            entity_type=entity_type,
            entity_id=entity_id,
            trigger_event=trigger_event,
            conditions_passed=conditions_passed,
            actions_taken=actions_taken,
            suppression_reason=suppression_reason,
            is_test_mode=bool(rule.test_mode),
            executed_at=executed_at,
        )
        self.db.add(execution)
        self.db.flush()
        return execution

    # =========================================================================
    # SUPPRESSION LOOKUPS
    # =========================================================================

    def get_firing_history(
        self,
        tenant_id: str,
        rule_lineage_id: str,
        entity_id: str,
    ) -> FiringHistory:
        """Most recent passing execution and passing count for a rule lineage + entity."""
        last_fired_at, fire_count = self.db.query(
            func.max(AutomationExecutionDB.executed_at),
            func.count(AutomationExecutionDB.id),
        ).filter(
            AutomationExecutionDB.tenant_id == tenant_id,
            AutomationExecutionDB.rule_lineage_id == rule_lineage_id,
            AutomationExecutionDB.entity_id == entity_id,
            AutomationExecutionDB.conditions_passed.is_(True),
        ).one()

        return FiringHistory(last_fired_at=last_fired_at, fire_count=fire_count or 0)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def find_executions(
        self,
        tenant_id: str,
        rule_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[AutomationExecutionDB], int]:
        """Filtered page of executions, newest first, with the total match count."""
        query = self.db.query(AutomationExecutionDB).filter(
            AutomationExecutionDB.tenant_id == tenant_id,
        )

        if rule_id:
            query = query.filter(AutomationExecutionDB.rule_id == rule_id)
        if entity_type:
            query = query.filter(AutomationExecutionDB.entity_type == entity_type)
        if entity_id:
            query = query.filter(AutomationExecutionDB.entity_id == entity_id)
        if start_date:
            query = query.filter(AutomationExecutionDB.executed_at >= start_date)
        if end_date:
            query = query.filter(AutomationExecutionDB.executed_at <= end_date)

        total = query.count()
        data = (
            query.order_by(AutomationExecutionDB.executed_at.desc())
            .offset((max(page, 1) - 1) * limit)
            .limit(limit)
            .all()
        )
        return data, total

    def get_execution_stats(
        self,
        tenant_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Summarise a window of executions for operator dashboards.

        Suppressed rows are counted on their own and not as condition
        failures: the two are distinct outcomes.
        """
        query = self.db.query(AutomationExecutionDB, AutomationRuleDB.name).outerjoin(
            AutomationRuleDB, AutomationRuleDB.id == AutomationExecutionDB.rule_id,
        ).filter(
            AutomationExecutionDB.tenant_id == tenant_id,
        )
        if start_date:
            query = query.filter(AutomationExecutionDB.executed_at >= start_date)
        if end_date:
            query = query.filter(AutomationExecutionDB.executed_at <= end_date)

        rows = query.all()

        stats = {
            "total_executions": len(rows),
            "conditions_passed": 0,
            "conditions_failed": 0,
            "suppressed": 0,
            "test_mode": 0,
            "fired": 0,
            "by_rule": [],
        }
        by_rule: Dict[str, Dict[str, Any]] = {}

        for execution, rule_name in rows:
            if execution.suppression_reason:
                stats["suppressed"] += 1
            elif execution.conditions_passed:
                stats["conditions_passed"] += 1
                if not execution.is_test_mode:
                    stats["fired"] += 1
            else:
                stats["conditions_failed"] += 1

            if execution.is_test_mode:
                stats["test_mode"] += 1

            entry = by_rule.get(execution.rule_id)
            if entry is None:
                entry = by_rule[execution.rule_id] = {
                    "rule_id": execution.rule_id,
                    "rule_name": rule_name or "Unknown",
                    "count": 0,
                }
            entry["count"] += 1

        stats["by_rule"] = sorted(by_rule.values(), key=lambda item: item["count"], reverse=True)
        return stats
