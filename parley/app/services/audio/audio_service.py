import asyncio
import logging
from typing import Optional

from parley.app.config.app_config import GlobalAppConfig
from parley.app.errors import PermissionDeniedError
from parley.app.event_bus import EventBus
from parley.app.events.core_events import AudioCaptureErrorEvent, AudioCaptureStateEvent, AudioFrameEvent
from parley.app.services.audio.recorder import AudioCapture
from parley.app.utils.event_utils import ThreadSafeEventPublisher

logger = logging.getLogger(__name__)


class AudioService:
    """Bridges the capture thread into the serialized control context.

    Every frame from AudioCapture becomes an AudioFrameEvent published onto the
    bus loop with run_coroutine_threadsafe; the capture thread never waits on the
    network or on session state.

    Attributes:
        _capture: Underlying AudioCapture.
        _publisher: Thread-safe publisher bound to the bus loop.
    """

    def __init__(
        self,
        event_bus: EventBus,
        config: GlobalAppConfig,
        main_event_loop: Optional[asyncio.AbstractEventLoop] = None,
        capture: Optional[AudioCapture] = None,
    ) -> None:
        self._event_bus = event_bus
        self._config = config
        self._publisher = ThreadSafeEventPublisher(event_bus, main_event_loop)
        self._capture = capture or AudioCapture(
            app_config=config,
            on_frame=self._on_frame_callback,
            on_state_changed=self._on_state_changed,
            on_error=self._on_capture_error,
        )
        self.frames_published = 0

    def _on_frame_callback(self, frame: bytes, amplitude: float, timestamp: float) -> None:
        """Capture-thread callback: wrap the frame in an event and hand it to the loop."""
        try:
            event = AudioFrameEvent(
                frame=frame,
                amplitude=amplitude,
                sample_rate=self._config.audio.sample_rate,
                timestamp=timestamp,
            )
        except ValueError as e:
            logger.error(f"Dropping malformed audio frame: {e}")
            return
        if self._publisher.publish(event) is not None:
            self.frames_published += 1

    def _on_state_changed(self, is_capturing: bool) -> None:
        self._publisher.publish(AudioCaptureStateEvent(is_capturing=is_capturing))

    def _on_capture_error(self, error: Exception) -> None:
        self._publisher.publish(AudioCaptureErrorEvent(message=str(error), device=self._config.audio.device))

    async def request_permission(self) -> bool:
        """Ask the capture layer for microphone access.

        Returns:
            True if capture may start.
        """
        loop = asyncio.get_running_loop()
        if self._publisher.event_loop is None:
            self._publisher.event_loop = loop
        result: asyncio.Future = loop.create_future()

        def _resolve(granted: bool) -> None:
            loop.call_soon_threadsafe(lambda: result.done() or result.set_result(bool(granted)))

        await loop.run_in_executor(None, self._capture.request_permission, _resolve)
        return await result

    async def start_processing(self) -> None:
        """Check permission and start capturing.

        Raises:
            PermissionDeniedError: No input device is available.
            ResourceSetupError: The stream could not be opened; nothing is left running.
        """
        if not await self.request_permission():
            raise PermissionDeniedError("Microphone access denied or no input device available")

        if self._publisher.event_loop is None:
            self._publisher.event_loop = asyncio.get_running_loop()

        logger.info("Starting audio capture")
        self._capture.start()

    def stop_processing(self) -> None:
        logger.info("Stopping audio capture")
        self._capture.stop()

    def is_capturing(self) -> bool:
        return self._capture.is_recording()

    async def shutdown(self) -> None:
        self.stop_processing()
        logger.debug(f"AudioService shut down after {self.frames_published} frames")
