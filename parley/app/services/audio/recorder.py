import logging
import threading
import time
from typing import Callable, Optional

import numpy as np
import sounddevice as sd

from parley.app.config.app_config import GlobalAppConfig
from parley.app.errors import ResourceSetupError
from parley.app.services.audio.audio_processor import calculate_rms, float_to_pcm16, resample_linear

FrameCallback = Callable[[bytes, float, float], None]


class AudioCapture:
    """Continuous microphone capture in fixed-size PCM16 mono frames.

    Opens one sounddevice input stream and reads ``frame_size`` samples at a time
    on a dedicated thread. Each frame is delivered with its RMS level and a
    monotonic timestamp. If the device refuses the target rate, the stream is
    opened at the device default rate and every block is resampled so consumers
    always see the configured format.

    The callback runs on the capture thread and must not block; the audio
    service uses it only to hand frames to the event loop.

    Attributes:
        sample_rate: Output sample rate in Hz.
        frame_size: Samples per delivered frame.
        device: Input device ID (None = system default).
    """

    def __init__(
        self,
        app_config: GlobalAppConfig,
        on_frame: Optional[FrameCallback] = None,
        on_state_changed: Optional[Callable[[bool], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        """Initialize the capture.

        Args:
            app_config: Global application configuration.
            on_frame: Called for every frame as (frame_bytes, amplitude, timestamp).
            on_state_changed: Called with True after start and False after stop.
            on_error: Called when the device fails while capturing.
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        self.app_config = app_config
        self.on_frame = on_frame
        self.on_state_changed = on_state_changed
        self.on_error = on_error

        self.sample_rate = app_config.audio.sample_rate
        self.frame_size = app_config.audio.frame_size
        self.device = getattr(app_config.audio, "device", None)

        self._device_rate: int = self.sample_rate
        self._read_size: int = self.frame_size
        self._is_recording: bool = False
        self._thread: Optional[threading.Thread] = None
        self._stream: Optional[sd.InputStream] = None
        self._lock = threading.Lock()

        self.logger.debug(f"AudioCapture initialized: frame_size={self.frame_size} samples, sample_rate={self.sample_rate}Hz")

    @property
    def is_resampling(self) -> bool:
        return self._device_rate != self.sample_rate

    def request_permission(self, callback: Callable[[bool], None]) -> None:
        """Report whether an input device is available to capture from.

        Desktop platforms have no runtime microphone prompt, so access is granted
        when PortAudio can see an input device with at least one channel.
        """
        try:
            info = sd.query_devices(self.device, kind="input")
            granted = int(info["max_input_channels"]) > 0
        except (sd.PortAudioError, ValueError) as e:
            self.logger.warning(f"No usable input device: {e}")
            granted = False
        callback(granted)

    def _open_stream(self) -> None:
        try:
            self._stream = sd.InputStream(
                samplerate=self.sample_rate, blocksize=self.frame_size, channels=1, dtype="int16", device=self.device
            )
            self._device_rate = self.sample_rate
            self._read_size = self.frame_size
        except sd.PortAudioError as e:
            self.logger.info(f"Device rejected {self.sample_rate}Hz ({e}), falling back to its default rate")
            try:
                device_rate = int(sd.query_devices(self.device, kind="input")["default_samplerate"])
                if device_rate == self.sample_rate:
                    raise
                read_size = int(round(self.frame_size * device_rate / self.sample_rate))
                self._stream = sd.InputStream(
                    samplerate=device_rate, blocksize=read_size, channels=1, dtype="int16", device=self.device
                )
                self._device_rate = device_rate
                self._read_size = read_size
            except (sd.PortAudioError, ValueError) as fallback_error:
                raise ResourceSetupError(f"Cannot open audio input: {fallback_error}") from fallback_error

        try:
            self._stream.start()
        except sd.PortAudioError as e:
            self._cleanup_stream()
            raise ResourceSetupError(f"Cannot start audio input: {e}") from e

    def _to_frame(self, data: np.ndarray) -> bytes:
        if not self.is_resampling:
            return data.astype("<i2", copy=False).tobytes()
        samples = data.reshape(-1).astype(np.float32) / 32768.0
        resampled = resample_linear(samples, self._device_rate, self.sample_rate, target_length=self.frame_size)
        return float_to_pcm16(resampled)

    def _capture_thread(self) -> None:
        self.logger.debug("Audio capture thread started")
        try:
            while True:
                with self._lock:
                    if not self._is_recording:
                        break
                    stream = self._stream
                if stream is None:
                    break

                try:
                    data, overflowed = stream.read(self._read_size)
                except (OSError, RuntimeError, sd.PortAudioError) as e:
                    self.logger.error(f"Audio device error: {e}")
                    with self._lock:
                        self._is_recording = False
                    if self.on_error:
                        self.on_error(e)
                    return

                if overflowed:
                    self.logger.debug("Audio input overflow")

                timestamp = time.monotonic()
                frame = self._to_frame(data)
                if self.on_frame:
                    self.on_frame(frame, calculate_rms(frame), timestamp)
        except Exception as e:
            self.logger.error(f"Capture thread error: {e}", exc_info=True)
            with self._lock:
                self._is_recording = False
            if self.on_error:
                self.on_error(e)

    def _cleanup_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            if getattr(stream, "active", False):
                stream.stop()
            stream.close()
            self.logger.debug("Audio stream closed")
        except Exception as e:
            self.logger.error(f"Error cleaning up audio stream: {e}", exc_info=True)

    def start(self) -> None:
        """Open the input stream and start the capture thread.

        Repeated calls while capturing are ignored.

        Raises:
            ResourceSetupError: The input stream could not be opened or started.
        """
        with self._lock:
            if self._is_recording:
                return
            self._open_stream()
            self._is_recording = True
            self._thread = threading.Thread(target=self._capture_thread, name="AudioCapture", daemon=True)
            self._thread.start()

        self.logger.info(f"Audio capture started (device rate {self._device_rate}Hz)")
        if self.on_state_changed:
            self.on_state_changed(True)

    def stop(self) -> None:
        """Stop the capture thread and release the stream. Safe to call repeatedly."""
        with self._lock:
            was_recording = self._is_recording
            self._is_recording = False

        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)
            if thread.is_alive():
                self.logger.error("Capture thread did not terminate after 5s timeout")

        self._cleanup_stream()

        if was_recording:
            self.logger.info("Audio capture stopped")
            if self.on_state_changed:
                self.on_state_changed(False)

    def is_recording(self) -> bool:
        with self._lock:
            return self._is_recording
