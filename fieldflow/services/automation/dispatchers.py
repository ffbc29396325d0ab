"""
Action dispatchers shipped with the core.

The host application normally plugs in its own ActionDispatcher wired to
email/SMS providers and the task service. These two cover local runs and
simple wiring.
"""
import logging
from typing import Any, Callable, Dict, Optional

from ...exceptions import ActionDispatchError
from ..interfaces import ActionDispatcher, DispatchOutcome

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any], Dict[str, Any]], Optional[DispatchOutcome]]


class LoggingActionDispatcher(ActionDispatcher):
    """Logs each action and reports success. Delivers nothing."""

    def dispatch(self, action_type, config, entity_context) -> DispatchOutcome:
        logger.info(
            f"Executing action: {action_type} for {entity_context.get('entity_type')} "
            f"{entity_context.get('entity_id')} with config: {config}"
        )
        return DispatchOutcome.ok()


class RoutingActionDispatcher(ActionDispatcher):
    """
    Routes each action type to a handler callable.

    A handler receives (config, entity_context) and may return a
    DispatchOutcome; returning None counts as success. Unknown action types
    raise ActionDispatchError so they are recorded as failed.
    """

    def __init__(self, handlers: Optional[Dict[str, Handler]] = None):
        self.handlers: Dict[str, Handler] = dict(handlers or {})

    def register(self, action_type: str, handler: Handler) -> None:
        self.handlers[action_type] = handler

    def dispatch(self, action_type, config, entity_context) -> DispatchOutcome:
        handler = self.handlers.get(action_type)
        if handler is None:
            raise ActionDispatchError(f"No handler registered for action type '{action_type}'")

        outcome = handler(config or {}, entity_context)
        return outcome if outcome is not None else DispatchOutcome.ok()
