import json
import logging
import os
import queue
import threading
from typing import Optional, Tuple

import vosk

from parley.app.config.app_config import GlobalAppConfig
from parley.app.errors import PermissionDeniedError, ResourceSetupError
from parley.app.services.vad.voice_activity_source import VoiceActivitySource

logger = logging.getLogger(__name__)


class SemanticVoiceActivitySource(VoiceActivitySource):
    """Voice activity driven by an offline speech recognizer.

    Frames are queued to a worker thread that feeds a Vosk recognizer. A frame
    counts as speech when the recognizer produces new non-empty text, so steady
    noise that never turns into words does not open a segment.

    Speech-started fires once speech has persisted for ``speech_start_delay``
    seconds. Speech-ended fires after ``silence_threshold`` seconds without new
    text, provided the segment lasted ``minimum_speech_duration``. Both callbacks
    run on the worker thread; callers must route them into their own context.

    Attributes:
        _model: Loaded Vosk model, None until started.
        _recognizer: Kaldi recognizer running at the capture sample rate.
        _frames: Queue feeding the worker thread.
    """

    policy = "semantic"
    frame_synchronous = False

    def __init__(self, config: GlobalAppConfig) -> None:
        super().__init__()
        self._config = config
        vad_config = config.semantic_vad
        self._model_path: Optional[str] = vad_config.model_path
        self._sample_rate: int = config.audio.sample_rate
        self._silence_threshold: float = vad_config.silence_threshold_seconds
        self._minimum_speech_duration: float = vad_config.minimum_speech_duration_seconds
        self._speech_start_delay: float = vad_config.speech_start_delay_seconds
        self._poll_interval: float = vad_config.poll_interval_seconds

        self._model = None
        self._recognizer = None
        self._frames: "queue.Queue[Tuple[bytes, float]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()

        self._last_text: str = ""
        self._candidate_start: Optional[float] = None
        self._speech_start: Optional[float] = None
        self._last_speech_time: Optional[float] = None
        self._speaking: bool = False

    @property
    def silence_threshold(self) -> float:
        return self._silence_threshold

    @silence_threshold.setter
    def silence_threshold(self, value: float) -> None:
        self._silence_threshold = max(0.5, min(2.0, value))

    @property
    def minimum_speech_duration(self) -> float:
        return self._minimum_speech_duration

    @minimum_speech_duration.setter
    def minimum_speech_duration(self, value: float) -> None:
        self._minimum_speech_duration = max(0.05, min(1.0, value))

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_speech_active(self) -> bool:
        with self._state_lock:
            return self._speaking

    def _load_recognizer(self) -> None:
        if not self._model_path or not os.path.isdir(self._model_path):
            raise PermissionDeniedError(f"Speech recognizer model not available at {self._model_path!r}")
        try:
            self._model = vosk.Model(self._model_path)
            self._recognizer = vosk.KaldiRecognizer(self._model, self._sample_rate)
        except Exception as e:
            self._model = None
            self._recognizer = None
            raise PermissionDeniedError(f"Speech recognizer failed to load: {e}") from e
        logger.debug(f"Semantic VAD recognizer loaded: model={self._model_path}, sample_rate={self._sample_rate}")

    def start(self) -> None:
        """Load the recognizer and start the worker thread.

        Raises:
            PermissionDeniedError: No usable recognizer model is configured.
            ResourceSetupError: The worker thread could not be started.
        """
        if self.is_running:
            return
        if self._recognizer is None:
            self._load_recognizer()

        self._reset_state()
        self._drain_queue()
        self._stop_event.clear()
        try:
            self._thread = threading.Thread(target=self._worker, name="SemanticVAD", daemon=True)
            self._thread.start()
        except RuntimeError as e:
            self._thread = None
            raise ResourceSetupError(f"Cannot start semantic VAD worker: {e}") from e
        logger.info("Semantic VAD started")

    def stop(self) -> None:
        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
            if thread.is_alive():
                logger.error("Semantic VAD worker did not terminate after 2s timeout")

        with self._state_lock:
            was_speaking = self._speaking
            last_speech = self._last_speech_time
        if was_speaking and last_speech is not None:
            self._notify_ended(last_speech)

        self._reset_state()
        self._drain_queue()
        if self._recognizer is not None:
            self._recognizer.Reset()
        logger.info("Semantic VAD stopped")

    def process_frame(self, frame: bytes, amplitude: float, timestamp: float) -> None:
        if self._stop_event.is_set() or self._thread is None:
            return
        self._frames.put((frame, timestamp))
        with self._state_lock:
            self.last_frame_voiced = self._speaking

    def _drain_queue(self) -> None:
        while True:
            try:
                self._frames.get_nowait()
            except queue.Empty:
                return

    def _reset_state(self) -> None:
        with self._state_lock:
            self._last_text = ""
            self._candidate_start = None
            self._speech_start = None
            self._last_speech_time = None
            self._speaking = False
            self.last_frame_voiced = False

    def _worker(self) -> None:
        logger.debug("Semantic VAD worker started")
        while not self._stop_event.is_set():
            try:
                frame, timestamp = self._frames.get(timeout=self._poll_interval)
            except queue.Empty:
                continue
            try:
                self._handle_frame(frame, timestamp)
            except Exception as e:
                logger.error(f"Semantic VAD frame processing failed: {e}", exc_info=True)
        logger.debug("Semantic VAD worker exiting")

    def _recognize(self, frame: bytes) -> bool:
        """Feed one frame and report whether it produced new speech."""
        if self._recognizer.AcceptWaveform(frame):
            text = json.loads(self._recognizer.Result()).get("text", "").strip()
            self._recognizer.Reset()
            self._last_text = ""
            return bool(text)

        partial = json.loads(self._recognizer.PartialResult()).get("partial", "").strip()
        changed = bool(partial) and partial != self._last_text
        self._last_text = partial
        return changed

    def _handle_frame(self, frame: bytes, timestamp: float) -> None:
        is_speech = self._recognize(frame)
        started_at: Optional[float] = None
        ended_at: Optional[float] = None

        with self._state_lock:
            if is_speech:
                self._last_speech_time = timestamp
                if not self._speaking and self._candidate_start is None:
                    self._candidate_start = timestamp

            silent_for = timestamp - self._last_speech_time if self._last_speech_time is not None else None

            if self._candidate_start is not None and not self._speaking:
                if silent_for is not None and silent_for > self._silence_threshold:
                    self._candidate_start = None
                elif is_speech and timestamp - self._candidate_start >= self._speech_start_delay:
                    self._speaking = True
                    self._speech_start = self._candidate_start
                    self._candidate_start = None
                    started_at = self._speech_start

            elif self._speaking and silent_for is not None and silent_for > self._silence_threshold:
                duration = self._last_speech_time - (self._speech_start or self._last_speech_time)
                self._speaking = False
                self._speech_start = None
                if duration >= self._minimum_speech_duration:
                    ended_at = timestamp
                else:
                    logger.debug(f"Ignoring {duration * 1000:.0f}ms recognized blip")

        if started_at is not None:
            self._notify_started(started_at)
        if ended_at is not None:
            self._notify_ended(ended_at)

    def shutdown(self) -> None:
        self.stop()
        self._recognizer = None
        self._model = None
