from typing import Literal, Optional

from pydantic import Field

from parley.app.events.base_event import BaseEvent, EventPriority


class RecordingTriggerEvent(BaseEvent):
    """Request to start or stop capturing for the current session.

    Published by the UI shell as an alternative to calling the orchestrator
    coroutines directly. HIGH priority so that a stop is handled after the
    audio frames already queued ahead of it.

    Attributes:
        trigger: Recording action (start or stop).
    """

    trigger: Literal["start", "stop"] = Field(..., description="Recording action")
    priority: EventPriority = EventPriority.HIGH


class AudioFrameEvent(BaseEvent):
    """One fixed-size PCM16 mono frame from the capture thread.

    Attributes:
        frame: Little-endian 16-bit PCM samples.
        amplitude: RMS level of the frame normalized to 0.0-1.0.
        sample_rate: Sample rate of the frame.
        timestamp: Capture time (time.monotonic) of the frame.
    """

    frame: bytes
    amplitude: float = Field(ge=0.0)
    sample_rate: int
    timestamp: float = Field(description="Monotonic timestamp when the frame was captured")
    priority: EventPriority = EventPriority.CRITICAL


class AudioCaptureStateEvent(BaseEvent):
    """Capture started or stopped."""

    is_capturing: bool
    priority: EventPriority = EventPriority.HIGH


class AudioCaptureErrorEvent(BaseEvent):
    """The capture thread hit a device error and stopped delivering frames.

    Attributes:
        message: Description of the device failure.
    """

    message: str
    device: Optional[int] = None
    priority: EventPriority = EventPriority.HIGH
