"""
Automation Services

Event-driven rules (conditions, suppression, actions), the execution log,
follow-up sequences and deferred rule actions.
"""

from .conditions import evaluate_condition, evaluate_conditions
from .suppression import FiringHistory, check_suppression
from .execution_log import ExecutionLogService
from .dispatchers import LoggingActionDispatcher, RoutingActionDispatcher
from .rule_engine import RuleEngine
from .rule_service import RuleService
from .sequence_scheduler import SequenceScheduler
from .scheduled_actions import ScheduledActionProcessor

__all__ = [
    'evaluate_condition',
    'evaluate_conditions',
    'FiringHistory',
    'check_suppression',
    'ExecutionLogService',
    'LoggingActionDispatcher',
    'RoutingActionDispatcher',
    'RuleEngine',
    'RuleService',
    'SequenceScheduler',
    'ScheduledActionProcessor',
]
