"""
Job Lifecycle Services

Guarded state machine for jobs, the append-only transition recorder and the
service that ties them to the job store and the rule engine.
"""

from .state_machine import JobStateMachine, TRANSITIONS
from .transition_recorder import TransitionRecorder
from .job_lifecycle_service import JobLifecycleService, JOB_TRANSITIONED_EVENT

__all__ = [
    'JobStateMachine',
    'TRANSITIONS',
    'TransitionRecorder',
    'JobLifecycleService',
    'JOB_TRANSITIONED_EVENT',
]
