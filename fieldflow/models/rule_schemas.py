"""
FieldFlow - Rule and Sequence Definitions

Validated shapes for the JSON stored on automation rules and follow-up
sequences. Services accept these models and persist their plain-dict dump.
"""
import re
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

from .db_models import FollowUpChannel


HHMM_PATTERN = re.compile(r'^([01]\d|2[0-3]):[0-5]\d$')


class ConditionSpec(BaseModel):
    """A (field, operator, value) predicate against the entity snapshot."""
    field: str = Field(..., description="Snapshot key to evaluate")
    op: str = Field(..., description="eq, neq, gt, gte, lt, lte, contains, in, exists")
    value: Any = Field(None, description="Value to compare against")


class TriggerSpec(BaseModel):
    event: str = Field(..., min_length=1, description="Event name that fires this rule")
    conditions: List[ConditionSpec] = Field(default_factory=list, description="Conditions that must all pass")


class ActionSpec(BaseModel):
    type: str = Field(..., min_length=1, description="send_email, send_sms, create_task, update_field, notify, ...")
    config: Dict[str, Any] = Field(default_factory=dict, description="Action-specific configuration")
    delay_minutes: Optional[int] = Field(None, ge=0, description="Defer the action by this many minutes")


class ConstraintSpec(BaseModel):
    cooldown_minutes: Optional[int] = Field(None, ge=0)
    max_fires_per_entity: Optional[int] = Field(None, ge=0)
    quiet_hours_start: Optional[str] = Field(None, description="HH:mm")
    quiet_hours_end: Optional[str] = Field(None, description="HH:mm")
    business_days_only: bool = False
    timezone: Optional[str] = Field(None, description="IANA zone for quiet hours and business days")

    @field_validator('quiet_hours_start', 'quiet_hours_end')
    @classmethod
    def validate_hhmm(cls, v):
        if v is not None and not HHMM_PATTERN.match(v):
            raise ValueError('Quiet hours must use 24h HH:mm format')
        return v

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v):
        if v is not None:
            try:
                ZoneInfo(v)
            except (ZoneInfoNotFoundError, ValueError):
                raise ValueError(f'Unknown timezone: {v}')
        return v

    @model_validator(mode='after')
    def quiet_hours_pair(self):
        if (self.quiet_hours_start is None) != (self.quiet_hours_end is None):
            raise ValueError('quiet_hours_start and quiet_hours_end must be set together')
        return self


class RuleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    trigger: TriggerSpec
    actions: List[ActionSpec] = Field(default_factory=list)
    constraints: Optional[ConstraintSpec] = None
    test_mode: bool = False
    is_active: bool = True


class RuleUpdate(BaseModel):
    """Partial edit; unset fields are carried over from the current version."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    trigger: Optional[TriggerSpec] = None
    actions: Optional[List[ActionSpec]] = None
    constraints: Optional[ConstraintSpec] = None
    test_mode: Optional[bool] = None


class FollowUpStepSpec(BaseModel):
    delay_hours: float = Field(..., ge=0, description="Hours after the previous step")
    channel: FollowUpChannel
    template_id: Optional[str] = None
    message: Optional[str] = None
    executed_at: Optional[str] = None
    failed_at: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
