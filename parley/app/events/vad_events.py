from typing import Literal

from pydantic import Field

from parley.app.events.base_event import BaseEvent, EventPriority

VoiceActivityPolicy = Literal["amplitude", "semantic"]


class SpeechStartedEvent(BaseEvent):
    """Voice activity source detected the start of speech.

    Attributes:
        timestamp: Monotonic time at which speech was first recognized.
        source: Which voice activity implementation fired.
    """

    timestamp: float = Field(description="Monotonic time speech started")
    source: VoiceActivityPolicy
    priority: EventPriority = EventPriority.HIGH


class SpeechEndedEvent(BaseEvent):
    """Voice activity source detected the end of speech.

    Attributes:
        timestamp: Monotonic time at which the silence threshold elapsed.
        source: Which voice activity implementation fired.
    """

    timestamp: float = Field(description="Monotonic time speech ended")
    source: VoiceActivityPolicy
    priority: EventPriority = EventPriority.HIGH
