"""Connection lifecycle state machine."""

from enum import Enum


class ConnectionState(str, Enum):
    """Lifecycle states of a pool. The value doubles as the event name."""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    RECONNECTED = "reconnected"


class StateMachine:
    """
    Decides which event a finished batch publishes.

    Transitions:
    - DISCONNECTED --first batch--> CONNECTED ("connected")
    - CONNECTED --watch fired, batch--> RECONNECTED ("reconnected")
    - RECONNECTED --watch fired, batch--> RECONNECTED ("reconnected")

    A proxy removal always publishes "reconnected" without changing state.
    """

    def __init__(self):
        self._state = ConnectionState.DISCONNECTED
        self._connected_once = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def has_connected(self) -> bool:
        """True once the first batch has completed."""
        return self._connected_once

    def mark_watch_fired(self):
        """Record that a watch fired; later batches are reconnections."""
        if self._state != ConnectionState.DISCONNECTED:
            self._state = ConnectionState.RECONNECTED

    def complete_batch(self) -> str:
        """
        Transition after a batch and return the event name to publish.

        "connected" is only ever returned for the first batch, even when a
        watch fired while that batch was still running.
        """
        if self._state != ConnectionState.RECONNECTED:
            if self._connected_once:
                self._state = ConnectionState.RECONNECTED
            else:
                self._state = ConnectionState.CONNECTED
        self._connected_once = True
        return self._state.value

    @staticmethod
    def removal_event() -> str:
        """Event name published for every removed proxy."""
        return ConnectionState.RECONNECTED.value
