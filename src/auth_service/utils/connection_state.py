"""
Connection states and the state-change channel shared by connection controllers.

Each controller owns one ``StateChannel``. Observability and orchestration
code subscribe to it instead of listening to driver-specific events.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Lifecycle of a datastore or cache connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERRORED = "errored"


class BrokerState(Enum):
    """Lifecycle of the broker client and its producer session."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    PRODUCER_CONNECTING = "producer_connecting"
    PRODUCER_CONNECTED = "producer_connected"
    FAILED = "failed"


@dataclass
class StateChange:
    """A single transition published on a channel."""
    component: str
    previous: Enum
    current: Enum
    context: Dict[str, Any] = field(default_factory=dict)


StateListener = Callable[[StateChange], None]


class StateChannel:
    """Holds the single live state of a component and notifies subscribers."""

    def __init__(self, component: str, initial: Enum):
        self.component = component
        self._state = initial
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> Enum:
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def transition(self, new_state: Enum, **context) -> StateChange:
        """Move to ``new_state`` and publish the change to every listener."""
        change = StateChange(
            component=self.component,
            previous=self._state,
            current=new_state,
            context=context
        )
        self._state = new_state

        logger.debug(
            f"{self.component}: {change.previous.value} -> {change.current.value}",
            extra={"ctx_component": self.component, "ctx_state": new_state.value}
        )

        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error(f"State listener for {self.component} failed: {e}", exc_info=True)

        return change
