"""FieldFlow - Data Models"""
from .db_models import (
    # Enums
    JobLifecycleState, ActionStatus, SequenceStatus, FollowUpChannel, ScheduledActionStatus,
    TERMINAL_STATES,
    # Tables
    TransitionHistoryDB, AutomationRuleDB, AutomationExecutionDB, FollowUpSequenceDB, ScheduledActionDB,
)
from .lifecycle import (
    TransitionEventType, TransitionEvent, JobLifecycleContext, JobRecord, TransitionHistoryEntry,
)
from .rule_schemas import (
    ConditionSpec, TriggerSpec, ActionSpec, ConstraintSpec, RuleCreate, RuleUpdate, FollowUpStepSpec,
)

__all__ = [
    "JobLifecycleState", "ActionStatus", "SequenceStatus", "FollowUpChannel", "ScheduledActionStatus",
    "TERMINAL_STATES",
    "TransitionHistoryDB", "AutomationRuleDB", "AutomationExecutionDB", "FollowUpSequenceDB", "ScheduledActionDB",
    "TransitionEventType", "TransitionEvent", "JobLifecycleContext", "JobRecord", "TransitionHistoryEntry",
    "ConditionSpec", "TriggerSpec", "ActionSpec", "ConstraintSpec", "RuleCreate", "RuleUpdate", "FollowUpStepSpec",
]
