"""
Automation Rule Service

CRUD for automation rules. Edits are copy-on-write: the live version is
closed and a new version is inserted, so executions always point at the
exact definition that produced them.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from ...exceptions import RuleNotFoundError
from ...models.db_models import AutomationRuleDB
from ...models.rule_schemas import RuleCreate, RuleUpdate
from ..clock import Clock, SystemClock

logger = logging.getLogger(__name__)


def _dump_constraints(constraints) -> Optional[Dict[str, Any]]:
    if constraints is None:
        return None
    return constraints.model_dump(exclude_none=True)


class RuleService:
    """Tenant-scoped management of automation rules."""

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or SystemClock()

    def create_rule(self, tenant_id: str, data: RuleCreate) -> AutomationRuleDB:
        now = self.clock.now()
        rule_id = str(uuid4())
        rule = AutomationRuleDB(
            id=rule_id,
            tenant_id=tenant_id,
            name=data.name,
            description=data.description,
            is_active=data.is_active,
            test_mode=data.test_mode,
            trigger=data.trigger.model_dump(),
            actions=[action.model_dump() for action in data.actions],
            constraints=_dump_constraints(data.constraints),
            lineage_id=rule_id,
            version=1,
            effective_date=now,
            created_at=now,
            updated_at=now,
        )
        self.db.add(rule)
        self.db.commit()
        self.db.refresh(rule)

        logger.info(f"Created automation rule {rule.name} ({rule.id}) for tenant {tenant_id}")
        return rule

    def find_all_rules(
        self,
        tenant_id: str,
        is_active: Optional[bool] = None,
        test_mode: Optional[bool] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[AutomationRuleDB], int]:
        """
        Page of rule versions, newest first.

        Closed versions are inactive, so is_active=True lists only the
        current definition of each live rule.
        """
        query = self.db.query(AutomationRuleDB).filter(AutomationRuleDB.tenant_id == tenant_id)
        if is_active is not None:
            query = query.filter(AutomationRuleDB.is_active.is_(is_active))
        if test_mode is not None:
            query = query.filter(AutomationRuleDB.test_mode.is_(test_mode))

        total = query.count()
        data = (
            query.order_by(AutomationRuleDB.created_at.desc())
            .offset((max(page, 1) - 1) * limit)
            .limit(limit)
            .all()
        )
        return data, total

    def find_one_rule(self, tenant_id: str, rule_id: str) -> AutomationRuleDB:
        rule = self.db.query(AutomationRuleDB).filter(
            AutomationRuleDB.id == rule_id,
            AutomationRuleDB.tenant_id == tenant_id,
        ).first()
        if not rule:
            raise RuleNotFoundError(rule_id)
        return rule

    def update_rule(self, tenant_id: str, rule_id: str, data: RuleUpdate) -> AutomationRuleDB:
        """
        Close the given version and insert its successor.

        The new version keeps the lineage, so cooldown and max-fires
        history carries across the edit.
        """
        current = self.find_one_rule(tenant_id, rule_id)
        now = self.clock.now()
        changes = data.model_dump(exclude_unset=True)

        new_rule = AutomationRuleDB(
            id=str(uuid4()),
            tenant_id=tenant_id,
            name=data.name if data.name is not None else current.name,
            description=changes.get("description", current.description),
            is_active=current.is_active,
            test_mode=data.test_mode if data.test_mode is not None else current.test_mode,
            trigger=data.trigger.model_dump() if data.trigger is not None else current.trigger,
            actions=(
                [action.model_dump() for action in data.actions]
                if data.actions is not None else current.actions
            ),
            constraints=(
                _dump_constraints(data.constraints)
                if "constraints" in changes else current.constraints
            ),
            lineage_id=current.lineage_id,
            version=current.version + 1,
            previous_version_id=current.id,
            effective_date=now,
            created_at=now,
            updated_at=now,
        )

        current.is_active = False
        current.end_date = now
        current.updated_at = now

        self.db.add(new_rule)
        self.db.commit()
        self.db.refresh(new_rule)

        logger.info(
            f"Rule {current.lineage_id} updated: version {current.version} -> {new_rule.version} ({new_rule.id})"
        )
        return new_rule

    def toggle_active(self, tenant_id: str, rule_id: str) -> AutomationRuleDB:
        rule = self.find_one_rule(tenant_id, rule_id)
        rule.is_active = not rule.is_active
        rule.updated_at = self.clock.now()
        self.db.commit()
        self.db.refresh(rule)
        logger.info(f"Rule {rule.id} is_active={rule.is_active}")
        return rule

    def toggle_test_mode(self, tenant_id: str, rule_id: str) -> AutomationRuleDB:
        rule = self.find_one_rule(tenant_id, rule_id)
        rule.test_mode = not rule.test_mode
        rule.updated_at = self.clock.now()
        self.db.commit()
        self.db.refresh(rule)
        logger.info(f"Rule {rule.id} test_mode={rule.test_mode}")
        return rule

    def get_rule_history(self, tenant_id: str, rule_id: str) -> List[AutomationRuleDB]:
        """Every version of the rule's lineage, oldest first."""
        rule = self.find_one_rule(tenant_id, rule_id)
        return self.db.query(AutomationRuleDB).filter(
            AutomationRuleDB.tenant_id == tenant_id,
            AutomationRuleDB.lineage_id == rule.lineage_id,
        ).order_by(AutomationRuleDB.version.asc()).all()
