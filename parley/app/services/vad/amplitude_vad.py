import logging
from typing import Optional

from parley.app.config.app_config import GlobalAppConfig
from parley.app.services.vad.voice_activity_source import VoiceActivitySource

logger = logging.getLogger(__name__)


class AmplitudeVoiceActivitySource(VoiceActivitySource):
    """Frame-synchronous energy detector.

    A frame whose RMS level exceeds ``amplitude_threshold`` is voiced. The first
    voiced frame after silence fires speech-started. Once no voiced frame has
    been seen for ``silence_threshold`` seconds the segment ends: speech-ended
    fires if the voiced span lasted at least ``minimum_speech_duration``,
    otherwise the blip is forgotten silently.

    Callbacks fire inside ``process_frame``, so they run wherever frames are
    processed (the control context).
    """

    policy = "amplitude"
    frame_synchronous = True

    def __init__(self, config: GlobalAppConfig) -> None:
        super().__init__()
        self.amplitude_threshold: float = config.submission.amplitude_threshold
        self._silence_threshold: float = config.submission.pause_threshold_seconds
        self._minimum_speech_duration: float = config.submission.minimum_speech_duration_seconds

        self._running: bool = False
        self._speaking: bool = False
        self._speech_start_time: Optional[float] = None
        self.last_active_time: Optional[float] = None

    @property
    def silence_threshold(self) -> float:
        return self._silence_threshold

    @silence_threshold.setter
    def silence_threshold(self, value: float) -> None:
        self._silence_threshold = value

    @property
    def minimum_speech_duration(self) -> float:
        return self._minimum_speech_duration

    @minimum_speech_duration.setter
    def minimum_speech_duration(self, value: float) -> None:
        self._minimum_speech_duration = value

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_speech_active(self) -> bool:
        return self._speaking

    def start(self) -> None:
        self._running = True
        self._reset()
        logger.debug(f"Amplitude VAD started (threshold={self.amplitude_threshold})")

    def stop(self) -> None:
        if self._speaking and self.last_active_time is not None:
            self._close_segment(self.last_active_time)
        self._running = False
        self._reset()

    def _reset(self) -> None:
        self._speaking = False
        self._speech_start_time = None
        self.last_active_time = None
        self.last_frame_voiced = False

    def _close_segment(self, timestamp: float) -> None:
        duration = (self.last_active_time or timestamp) - (self._speech_start_time or timestamp)
        self._speaking = False
        self._speech_start_time = None
        if duration >= self._minimum_speech_duration:
            self._notify_ended(timestamp)
        else:
            logger.debug(f"Ignoring {duration * 1000:.0f}ms amplitude blip")

    def process_frame(self, frame: bytes, amplitude: float, timestamp: float) -> None:
        if not self._running:
            return

        self.last_frame_voiced = amplitude > self.amplitude_threshold
        if self.last_frame_voiced:
            self.last_active_time = timestamp
            if not self._speaking:
                self._speaking = True
                self._speech_start_time = timestamp
                self._notify_started(timestamp)
            return

        if self._speaking and self.last_active_time is not None and timestamp - self.last_active_time > self._silence_threshold:
            self._close_segment(timestamp)
