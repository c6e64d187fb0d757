from abc import ABC, abstractmethod
from typing import Callable, Optional

SpeechCallback = Callable[[float], None]


class VoiceActivitySource(ABC):
    """Common interface for voice activity detectors feeding the submission scheduler.

    A source consumes the captured frames through ``process_frame`` and reports
    speech edges through two callbacks, each receiving the monotonic timestamp
    of the edge. ``frame_synchronous`` tells the session where callbacks fire:
    on the caller of ``process_frame`` (safe to bind straight to the scheduler),
    or on a worker thread (must be routed through the event bus).

    Attributes:
        policy: Name of the submission policy this source drives.
        frame_synchronous: True if callbacks fire inside ``process_frame``.
        last_frame_voiced: Whether the most recent frame counted as speech.
    """

    policy: str = ""
    frame_synchronous: bool = True

    def __init__(self) -> None:
        self._on_speech_started: Optional[SpeechCallback] = None
        self._on_speech_ended: Optional[SpeechCallback] = None
        self.last_frame_voiced: bool = False

    def bind(self, on_speech_started: Optional[SpeechCallback], on_speech_ended: Optional[SpeechCallback]) -> None:
        self._on_speech_started = on_speech_started
        self._on_speech_ended = on_speech_ended

    def _notify_started(self, timestamp: float) -> None:
        if self._on_speech_started is not None:
            self._on_speech_started(timestamp)

    def _notify_ended(self, timestamp: float) -> None:
        if self._on_speech_ended is not None:
            self._on_speech_ended(timestamp)

    @property
    @abstractmethod
    def silence_threshold(self) -> float:
        """Seconds of silence that end a speech segment."""

    @property
    @abstractmethod
    def minimum_speech_duration(self) -> float:
        """Speech shorter than this many seconds is treated as noise."""

    @property
    @abstractmethod
    def is_running(self) -> bool:
        ...

    @property
    @abstractmethod
    def is_speech_active(self) -> bool:
        ...

    @abstractmethod
    def start(self) -> None:
        """Begin detecting.

        Raises:
            PermissionDeniedError: The detector is not permitted or not available.
            ResourceSetupError: The detector failed to initialize.
        """

    @abstractmethod
    def stop(self) -> None:
        """Stop detecting. An in-progress speech segment is closed with a speech-ended callback."""

    @abstractmethod
    def process_frame(self, frame: bytes, amplitude: float, timestamp: float) -> None:
        """Feed one captured frame to the detector."""
