"""
FieldFlow - SQLAlchemy ORM Models
Tables owned by the workflow core: transition history, automation rules,
the automation execution log, follow-up sequences and deferred rule actions.

Business entities (jobs, leads, invoices) live elsewhere; these tables only
reference them by id. Every row carries tenant_id and every query filters on it.
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum, Boolean, Index
from sqlalchemy.orm import relationship
from ..database import Base


# =============================================================================
# ENUMS
# =============================================================================

class JobLifecycleState(str, Enum):
    """States a Job moves through from first contact to payment."""
    LEAD = "LEAD"
    QUALIFIED = "QUALIFIED"
    ESTIMATE_SENT = "ESTIMATE_SENT"
    ESTIMATE_APPROVED = "ESTIMATE_APPROVED"
    SCHEDULED = "SCHEDULED"
    DISPATCHED = "DISPATCHED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    INVOICED = "INVOICED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    LOST = "LOST"


TERMINAL_STATES = frozenset({
    JobLifecycleState.PAID,
    JobLifecycleState.CANCELLED,
    JobLifecycleState.LOST,
})


class ActionStatus(str, Enum):
    """Outcome of a single action inside an execution."""
    EXECUTED = "executed"
    SKIPPED = "skipped"
    FAILED = "failed"
    SCHEDULED = "scheduled"  # deferred to the heartbeat via delay_minutes


class SequenceStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class FollowUpChannel(str, Enum):
    EMAIL = "email"
    TEXT = "text"
    CALL_TASK = "call_task"


class ScheduledActionStatus(str, Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"


# =============================================================================
# JOB LIFECYCLE AUDIT TRAIL
# =============================================================================

class TransitionHistoryDB(Base):
    """
    Immutable record of one accepted Job transition.

    Append-only. Never updated or deleted, even when the job is removed.
    previous_state is NULL for the entry written when the job is created.
    """
    __tablename__ = "job_transition_history"
    __table_args__ = (
        Index("idx_transition_history_job", "tenant_id", "job_id"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    tenant_id = Column(String(36), nullable=False)
    job_id = Column(String(36), nullable=False)

    previous_state = Column(SQLEnum(JobLifecycleState, native_enum=False), nullable=True)
    new_state = Column(SQLEnum(JobLifecycleState, native_enum=False), nullable=False)
    event_type = Column(String(50), nullable=True)  # NULL for the initial entry

    # NULL actor means the transition was system-triggered
    actor_id = Column(String(36), nullable=True)
    actor_name = Column(String(255), nullable=True)

    reason = Column(Text, nullable=True)
    event_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# =============================================================================
# AUTOMATION RULES
# =============================================================================

class AutomationRuleDB(Base):
    """
    One version of an automation rule.

    Editing a rule never overwrites it: the current row is closed (is_active
    False, end_date set) and a new row is inserted with previous_version_id
    pointing back. All versions of a rule share lineage_id, which is what the
    suppression lookups key on.
    """
    __tablename__ = "automation_rules"
    __table_args__ = (
        Index("idx_automation_rules_tenant_active", "tenant_id", "is_active"),
        Index("idx_automation_rules_lineage", "tenant_id", "lineage_id"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    tenant_id = Column(String(36), nullable=False)

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    test_mode = Column(Boolean, nullable=False, default=False)

    # {"event": "job.transitioned", "conditions": [{"field": ..., "op": ..., "value": ...}]}
    trigger = Column(JSON, nullable=False)
    # [{"type": "send_email", "config": {...}, "delay_minutes": 30}]
    actions = Column(JSON, nullable=False, default=list)
    # {"cooldown_minutes", "max_fires_per_entity", "quiet_hours_start",
    #  "quiet_hours_end", "business_days_only", "timezone"}
    constraints = Column(JSON, nullable=True)

    # Versioning
    lineage_id = Column(String(36), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    previous_version_id = Column(String(36), ForeignKey("automation_rules.id", ondelete="SET NULL"), nullable=True)
    effective_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    end_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    executions = relationship("AutomationExecutionDB", back_populates="rule")

    @property
    def trigger_event(self):
        return (self.trigger or {}).get("event")


class AutomationExecutionDB(Base):
    """
    One row per (rule, triggering event) evaluation.

    Written for every active matching rule whether it was suppressed, failed
    its conditions, or fired. Cooldown and max-fires checks read this table,
    filtered to conditions_passed rows of the same rule lineage and entity.
    """
    __tablename__ = "automation_executions"
    __table_args__ = (
        Index("idx_automation_exec_rule", "tenant_id", "rule_id"),
        Index("idx_automation_exec_lineage_entity", "tenant_id", "rule_lineage_id", "entity_id"),
        Index("idx_automation_exec_entity", "tenant_id", "entity_type", "entity_id"),
        Index("idx_automation_exec_time", "tenant_id", "executed_at"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    tenant_id = Column(String(36), nullable=False)
    rule_id = Column(String(36), ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False)
    rule_lineage_id = Column(String(36), nullable=False)

    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(36), nullable=False)
    trigger_event = Column(String(100), nullable=False)

    conditions_passed = Column(Boolean, nullable=False, default=False)
    # [{"type": "send_email", "status": "executed", "details": "..."}]
    actions_taken = Column(JSON, nullable=True)
    suppression_reason = Column(Text, nullable=True)
    is_test_mode = Column(Boolean, nullable=False, default=False)

    executed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    rule = relationship("AutomationRuleDB", back_populates="executions")


# =============================================================================
# FOLLOW-UP SEQUENCES
# =============================================================================

class FollowUpSequenceDB(Base):
    """
    Multi-step, time-delayed outreach to a lead.

    next_step_at is set only while status is active. current_step always
    points at the first unexecuted step, or equals len(steps) once the
    sequence has completed. version is bumped by every heartbeat claim.
    """
    __tablename__ = "follow_up_sequences"
    __table_args__ = (
        Index("idx_follow_up_tenant_lead", "tenant_id", "lead_id"),
        Index("idx_follow_up_due", "status", "next_step_at"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    tenant_id = Column(String(36), nullable=False)
    lead_id = Column(String(36), nullable=False)

    status = Column(SQLEnum(SequenceStatus, native_enum=False), nullable=False, default=SequenceStatus.ACTIVE)
    current_step = Column(Integer, nullable=False, default=0)
    # [{"delay_hours": 24, "channel": "email", "template_id": ..., "message": ..., "executed_at": ...}]
    steps = Column(JSON, nullable=False, default=list)

    next_step_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=0)

    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    paused_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)


# =============================================================================
# DEFERRED RULE ACTIONS
# =============================================================================

class ScheduledActionDB(Base):
    """A rule action with delay_minutes, waiting for the heartbeat."""
    __tablename__ = "scheduled_actions"
    __table_args__ = (
        Index("idx_scheduled_actions_due", "status", "due_at"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    tenant_id = Column(String(36), nullable=False)
    execution_id = Column(String(36), ForeignKey("automation_executions.id", ondelete="CASCADE"), nullable=False, index=True)
    rule_id = Column(String(36), nullable=False)

    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(36), nullable=False)
    entity_snapshot = Column(JSON, nullable=True)

    action_type = Column(String(100), nullable=False)
    action_config = Column(JSON, nullable=True)

    status = Column(SQLEnum(ScheduledActionStatus, native_enum=False), nullable=False, default=ScheduledActionStatus.PENDING)
    due_at = Column(DateTime, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    executed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
