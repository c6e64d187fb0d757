from pydantic import Field

from parley.app.events.base_event import BaseEvent, EventPriority
from parley.app.services.session.session_models import ConnectionState


class TransportStateChangedEvent(BaseEvent):
    """Connection state of the streaming channel changed.

    Attributes:
        state: New connection state.
        terminal: True when automatic reconnection has given up.
        reconnect_attempt: Current reconnect attempt counter (0 after a successful open).
    """

    state: ConnectionState
    terminal: bool = False
    reconnect_attempt: int = 0
    priority: EventPriority = EventPriority.HIGH


class TransportMessageEvent(BaseEvent):
    """One text message received from the remote endpoint, in delivery order.

    Attributes:
        raw: Undecoded message text.
        sequence: Receive sequence number within the channel lifetime.
    """

    raw: str
    sequence: int = Field(ge=0)
    priority: EventPriority = EventPriority.HIGH


class ReconnectScheduledEvent(BaseEvent):
    """A reconnect attempt is waiting out its backoff delay."""

    attempt: int
    delay_seconds: float
    priority: EventPriority = EventPriority.NORMAL
