import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class HookEvent(str, Enum):
    """Lifecycle points, in the order a submission reaches them."""

    BEFORE_VALIDATE = "beforeValidate"
    AFTER_VALIDATE = "afterValidate"
    BEFORE_SAVE = "beforeSave"
    BEFORE_CREATE = "beforeCreate"
    BEFORE_UPDATE = "beforeUpdate"
    AFTER_CREATE = "afterCreate"
    AFTER_UPDATE = "afterUpdate"
    AFTER_SAVE = "afterSave"
    BEFORE_DELETE = "beforeDelete"
    AFTER_DELETE = "afterDelete"


# Payload hooks receive the payload (plus the id on create/update events);
# delete hooks receive only the id.
Hook = Callable[..., Optional[Any]]


class HookRegistry:
    """
    Ordered callables per lifecycle event.

    Hooks registered on one event run first-in first-out; each receives the
    previous hook's output. Returning None keeps the payload unchanged.
    Raising aborts the surrounding transaction.
    """

    def __init__(self):
        self._hooks: Dict[HookEvent, List[Hook]] = {event: [] for event in HookEvent}

    def on(self, event: Union[HookEvent, str], hook: Hook) -> "HookRegistry":
        self._hooks[HookEvent(event)].append(hook)
        return self

    def hooks(self, event: Union[HookEvent, str]) -> List[Hook]:
        return list(self._hooks[HookEvent(event)])

    def run(self, event: Union[HookEvent, str], payload: Any, *extra: Any) -> Any:
        """Fold the payload through every hook of the event."""
        event = HookEvent(event)
        for hook in self._hooks[event]:
            result = hook(payload, *extra)
            if result is not None:
                payload = result
        return payload

    def notify(self, event: Union[HookEvent, str], *args: Any) -> None:
        """Call every hook of the event for its side effects (delete events)."""
        for hook in self._hooks[HookEvent(event)]:
            hook(*args)
