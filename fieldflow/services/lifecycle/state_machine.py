"""
Job Lifecycle State Machine

Deterministic, side-effect free state machine for the Job lifecycle.
The caller persists the accepted state and records history; this module
only answers "is this legal, and where does it lead".

    LEAD → QUALIFIED → ESTIMATE_SENT → ESTIMATE_APPROVED → SCHEDULED
    → DISPATCHED → IN_PROGRESS → COMPLETED → INVOICED → PAID

CANCELLED and LOST are reachable from the pre-work states. PAID, CANCELLED
and LOST are terminal.
"""
from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, List, Optional, Tuple

from ...models.db_models import JobLifecycleState, TERMINAL_STATES
from ...models.lifecycle import JobLifecycleContext, TransitionEvent, TransitionEventType


Guard = Callable[[JobLifecycleContext, TransitionEvent], bool]


# =============================================================================
# GUARDS
# =============================================================================

def has_contact_info(context: JobLifecycleContext, event: TransitionEvent) -> bool:
    return bool(context.has_contact_info)


def has_scheduled_date(context: JobLifecycleContext, event: TransitionEvent) -> bool:
    return event.scheduled_date is not None and str(event.scheduled_date).strip() != ""


def is_fully_paid(context: JobLifecycleContext, event: TransitionEvent) -> bool:
    return bool(context.is_fully_paid)


@dataclass(frozen=True)
class Edge:
    target: JobLifecycleState
    guard: Optional[Guard] = None
    guard_failure: Optional[str] = None


# =============================================================================
# TRANSITION TABLE
# =============================================================================
#
# state -> {event type -> Edge}. A state with an empty mapping is terminal.
#
# =============================================================================

S = JobLifecycleState
E = TransitionEventType

_SCHEDULE = Edge(S.SCHEDULED, has_scheduled_date, "Scheduling requires a date")
_CANCEL = Edge(S.CANCELLED)
_LOST = Edge(S.LOST)

TRANSITIONS: Dict[JobLifecycleState, Dict[TransitionEventType, Edge]] = {
    S.LEAD: {
        E.QUALIFY: Edge(S.QUALIFIED, has_contact_info, "Qualifying a lead requires contact info"),
        E.CANCEL: _CANCEL,
        E.MARK_LOST: _LOST,
    },
    S.QUALIFIED: {
        E.SEND_ESTIMATE: Edge(S.ESTIMATE_SENT),
        E.SCHEDULE: _SCHEDULE,
        E.CANCEL: _CANCEL,
        E.MARK_LOST: _LOST,
    },
    S.ESTIMATE_SENT: {
        E.APPROVE_ESTIMATE: Edge(S.ESTIMATE_APPROVED),
        E.REJECT_ESTIMATE: Edge(S.QUALIFIED),  # revise and resend
        E.CANCEL: _CANCEL,
        E.MARK_LOST: _LOST,
    },
    S.ESTIMATE_APPROVED: {
        E.SCHEDULE: _SCHEDULE,
        E.CANCEL: _CANCEL,
    },
    S.SCHEDULED: {
        E.DISPATCH: Edge(S.DISPATCHED),
        E.START_WORK: Edge(S.IN_PROGRESS),
        E.SCHEDULE: _SCHEDULE,  # reschedule
        E.CANCEL: _CANCEL,
    },
    S.DISPATCHED: {
        E.START_WORK: Edge(S.IN_PROGRESS),
        E.CANCEL: _CANCEL,
    },
    S.IN_PROGRESS: {
        E.COMPLETE_WORK: Edge(S.COMPLETED),
        E.CANCEL: _CANCEL,
    },
    S.COMPLETED: {
        E.CREATE_INVOICE: Edge(S.INVOICED),
    },
    S.INVOICED: {
        E.MARK_PAID: Edge(S.PAID, is_fully_paid, "Job is not fully paid"),
    },
    S.PAID: {},
    S.CANCELLED: {},
    S.LOST: {},
}


# =============================================================================
# STATE MACHINE
# =============================================================================

class JobStateMachine:
    """
    Pure lifecycle machine for jobs.

    Core Principles:
    - One declarative table, no per-state code
    - A transition needs an edge AND a passing guard
    - Never mutates the context it is given
    - Terminal states have no outgoing edges
    """

    def __init__(self, transitions: Optional[Dict[JobLifecycleState, Dict[TransitionEventType, Edge]]] = None):
        self.transitions = transitions if transitions is not None else TRANSITIONS

    def check(
        self,
        context: JobLifecycleContext,
        event: TransitionEvent,
    ) -> Tuple[bool, str]:
        """
        Check if an event is legal from the context's state.

        Returns (allowed, reason)
        """
        edge = self.transitions.get(context.status, {}).get(event.type)
        if edge is None:
            return False, f"Cannot transition from {context.status.value} with action {event.type.value}"

        if edge.guard is not None and not edge.guard(context, event):
            return False, edge.guard_failure or f"Guard rejected {event.type.value}"

        return True, "Transition allowed"

    def can_transition(self, context: JobLifecycleContext, event: TransitionEvent) -> bool:
        allowed, _ = self.check(context, event)
        return allowed

    def apply(
        self,
        context: JobLifecycleContext,
        event: TransitionEvent,
    ) -> Tuple[Optional[JobLifecycleState], bool]:
        """
        Compute the state the event leads to.

        Returns (new_state, True) when accepted and (None, False) otherwise.
        The context is left untouched either way.
        """
        if not self.can_transition(context, event):
            return None, False
        return self.transitions[context.status][event.type].target, True

    def get_available_transitions(self, context: JobLifecycleContext) -> List[TransitionEventType]:
        """
        Event types that would currently succeed.

        Payload-guarded events (SCHEDULE) are checked as if a payload were
        supplied; context-guarded ones (QUALIFY, MARK_PAID) use the context.
        """
        available = []
        for event_type in TransitionEventType:
            if self.can_transition(context, self._sample_event(event_type)):
                available.append(event_type)
        return available

    def is_terminal_state(self, state: JobLifecycleState) -> bool:
        """Check if a state is terminal (no further transitions)."""
        return state in TERMINAL_STATES or not self.transitions.get(state)

    def get_next_states(self, state: JobLifecycleState) -> List[JobLifecycleState]:
        """Possible next states from a state, ignoring guards."""
        targets = []
        for edge in self.transitions.get(state, {}).values():
            if edge.target not in targets:
                targets.append(edge.target)
        return targets

    def get_status_transition_map(self) -> Dict[str, List[str]]:
        """state -> reachable states, for documentation and diagrams."""
        return {
            state.value: [target.value for target in self.get_next_states(state)]
            for state in JobLifecycleState
        }

    @staticmethod
    def _sample_event(event_type: TransitionEventType) -> TransitionEvent:
        if event_type == TransitionEventType.SCHEDULE:
            # Any non-empty date satisfies the payload guard
            return TransitionEvent.schedule(date.max)
        if event_type == TransitionEventType.CREATE_INVOICE:
            return TransitionEvent.create_invoice("pending")
        return TransitionEvent.of(event_type)
