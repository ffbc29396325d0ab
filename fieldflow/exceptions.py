"""
Workflow core exceptions.

Suppression is not an error and has no exception type: a suppressed rule is a
normal, logged outcome.
"""


class WorkflowError(Exception):
    """Base class for all workflow core errors."""
    pass


class InvalidTransitionError(WorkflowError):
    """Raised when an event is not legal from the current state or its guard fails."""

    def __init__(self, current_state, event_type: str, message: str = None):
        self.current_state = current_state
        self.event_type = event_type
        state_value = getattr(current_state, "value", current_state)
        super().__init__(
            message or f"Cannot transition job from {state_value} with action {event_type}"
        )


class StaleContextError(WorkflowError):
    """Raised when the persisted job no longer matches the context the caller computed against."""

    def __init__(self, job_id: str, expected, actual):
        self.job_id = job_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Job {job_id} changed underneath the request: expected {expected}, found {actual}"
        )


class ActionDispatchError(WorkflowError):
    """Raised by dispatchers when an action could not be performed."""
    pass


class RuleNotFoundError(WorkflowError):
    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Automation rule with ID {rule_id} not found")


class SequenceNotFoundError(WorkflowError):
    def __init__(self, sequence_id: str):
        self.sequence_id = sequence_id
        super().__init__(f"Follow-up sequence with ID {sequence_id} not found")


class InvalidSequenceStateError(WorkflowError):
    """Raised when pause/cancel is requested from a status that does not allow it."""
    pass


class JobNotFoundError(WorkflowError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job with ID {job_id} not found")
