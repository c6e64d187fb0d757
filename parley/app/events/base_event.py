from enum import IntEnum

from pydantic import BaseModel


class EventPriority(IntEnum):
    """Priority levels for event processing in the event bus.

    Lower numeric values are dequeued first. Events with equal priority keep
    their publish order.

    Attributes:
        CRITICAL: Audio frames, which arrive at a fixed real-time cadence.
        HIGH: Transport traffic, voice activity edges, timers and session control.
        NORMAL: Default for notifications with no ordering requirement.
        LOW: UI snapshots that may be dropped under backpressure.
    """

    CRITICAL = 10
    HIGH = 20
    NORMAL = 50
    LOW = 80


class BaseEvent(BaseModel):
    """Base class for all events published through the EventBus.

    Attributes:
        priority: EventPriority level determining processing order (default NORMAL).
    """

    priority: EventPriority = EventPriority.NORMAL
