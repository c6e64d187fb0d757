import asyncio
import functools
import logging
import time
from datetime import datetime
from typing import Callable, Optional, Tuple

from parley.app.config.app_config import GlobalAppConfig
from parley.app.config.languages import LanguageOption, get_input_language, get_target_language
from parley.app.errors import InvalidCredentialError, ParleyError, PermissionDeniedError, ResourceSetupError
from parley.app.event_bus import EventBus
from parley.app.events.core_events import AudioCaptureErrorEvent, AudioFrameEvent, RecordingTriggerEvent
from parley.app.events.session_events import (
    FinalizeCompletedEvent,
    FinalizeTimeoutEvent,
    LiveTextUpdatedEvent,
    SegmentDiscardedEvent,
    SessionErrorEvent,
    SessionSnapshotEvent,
    SubmissionCheckEvent,
    SubmissionCommittedEvent,
    TranscriptionRecordCreatedEvent,
    UsageUpdatedEvent,
)
from parley.app.events.transport_events import TransportMessageEvent, TransportStateChangedEvent
from parley.app.events.vad_events import SpeechEndedEvent, SpeechStartedEvent
from parley.app.services.audio.audio_service import AudioService
from parley.app.services.session.response_aggregator import ResponseAggregator
from parley.app.services.session.session_models import (
    ConnectionState,
    ConnectionStatus,
    ResponseEncoding,
    SessionMode,
    SessionPhase,
    SessionSnapshot,
    UsageCounters,
)
from parley.app.services.session.submission_scheduler import SubmissionActions, SubmissionScheduler
from parley.app.services.storage.credential_store import CredentialStore
from parley.app.services.storage.history_service import HistoryService
from parley.app.services.storage.storage_models import TranscriptionRecord, UsageData
from parley.app.services.storage.storage_service import StorageService
from parley.app.services.transport import realtime_protocol as protocol
from parley.app.services.transport.websocket_channel import WebSocketChannel
from parley.app.services.vad.amplitude_vad import AmplitudeVoiceActivitySource
from parley.app.services.vad.semantic_vad import SemanticVoiceActivitySource
from parley.app.services.vad.voice_activity_source import VoiceActivitySource
from parley.app.utils.event_utils import EventSubscriptionManager, ThreadSafeEventPublisher
from parley.app.utils.timers import OneShotTimer, PeriodicTimer

logger = logging.getLogger(__name__)

_VALID_TRANSITIONS = {
    SessionPhase.DISCONNECTED: {SessionPhase.CONNECTING},
    SessionPhase.CONNECTING: {SessionPhase.CONNECTED, SessionPhase.DISCONNECTED},
    SessionPhase.CONNECTED: {SessionPhase.LISTENING, SessionPhase.DISCONNECTED},
    SessionPhase.LISTENING: {SessionPhase.FINALIZING, SessionPhase.DISCONNECTED},
    SessionPhase.FINALIZING: {SessionPhase.CONNECTED, SessionPhase.DISCONNECTED},
}

_ERROR_KINDS = {"permission", "resource", "credential", "transport", "remote"}

_STOP_DRAIN_TIMEOUT_SECONDS = 1.0


class SessionOrchestrator:
    """Top-level state machine of a translation session.

    Owns the session state (phase, connection state, live text, usage) and
    mediates between the audio capture, the voice activity source, the
    submission scheduler, the response aggregator and the transport channel.

    All mutation happens inside the event bus worker or inside one of the
    public coroutines, and both paths hold ``_state_lock``, so producers
    (capture thread, recognizer thread, receive task, timers) never touch
    session state directly.

    Stopping capture runs the finalize protocol: the last segment is flushed,
    ``is_finalizing`` is set and a safety-net timeout is armed. The first of
    the final response or the timeout persists one record; ``is_finalizing``
    is checked and cleared in the same locked step, so the other trigger is a
    no-op.

    Attributes:
        finalize_count: How many times the finalize routine has run.
    """

    def __init__(
        self,
        event_bus: EventBus,
        config: GlobalAppConfig,
        audio_service: AudioService,
        channel: WebSocketChannel,
        history: HistoryService,
        credentials: CredentialStore,
        storage: StorageService,
        semantic_vad: Optional[VoiceActivitySource] = None,
        amplitude_vad: Optional[VoiceActivitySource] = None,
        main_event_loop: Optional[asyncio.AbstractEventLoop] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.event_bus = event_bus
        self.config = config
        self._audio = audio_service
        self._channel = channel
        self._history = history
        self._credentials = credentials
        self._storage = storage
        self._semantic_vad = semantic_vad or SemanticVoiceActivitySource(config)
        self._amplitude_vad = amplitude_vad or AmplitudeVoiceActivitySource(config)
        self._clock = clock

        self._state_lock = asyncio.Lock()
        self._phase = SessionPhase.DISCONNECTED
        self._connection_state = ConnectionState.disconnected()
        self._mode = SessionMode(config.session.mode)
        self._encoding = ResponseEncoding(config.session.response_encoding)
        self._target_language: LanguageOption = get_target_language(config.session.target_language)
        self._input_language: LanguageOption = get_input_language(config.session.input_language)

        self._is_capturing = False
        self._is_finalizing = False
        self._is_translating = False
        self._generation = 0
        self._vad: Optional[VoiceActivitySource] = None
        self._usage = UsageCounters()

        self._scheduler = SubmissionScheduler(config.submission, policy="amplitude")
        self._aggregator = ResponseAggregator(
            mode=self._mode,
            encoding=self._encoding,
            transcript_placeholder=config.session.empty_transcript_placeholder,
        )
        self._tick_timer: Optional[PeriodicTimer] = None
        self._finalize_timer: Optional[OneShotTimer] = None
        self.finalize_count = 0

        self.event_publisher = ThreadSafeEventPublisher(event_bus=event_bus, event_loop=main_event_loop)
        self.subscription_manager = EventSubscriptionManager(event_bus=event_bus, component_name="SessionOrchestrator")

        logger.debug(f"SessionOrchestrator initialized: mode={self._mode.value}, encoding={self._encoding.value}")

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection_state

    @property
    def usage(self) -> UsageCounters:
        return self._usage

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def scheduler(self) -> SubmissionScheduler:
        return self._scheduler

    @property
    def aggregator(self) -> ResponseAggregator:
        return self._aggregator

    async def initialize(self) -> None:
        """Restore persisted usage counters."""
        data = await self._storage.read(UsageData)
        self._usage = data.usage
        logger.info(f"Restored usage: {self._usage.total_tokens} tokens ({self._format_cost()})")

    def setup_subscriptions(self) -> None:
        subscriptions = [
            (AudioFrameEvent, self._handle_audio_frame),
            (SpeechStartedEvent, self._handle_speech_started),
            (SpeechEndedEvent, self._handle_speech_ended),
            (SubmissionCheckEvent, self._handle_submission_check),
            (FinalizeTimeoutEvent, self._handle_finalize_timeout),
            (TransportStateChangedEvent, self._handle_transport_state),
            (TransportMessageEvent, self._handle_transport_message),
            (RecordingTriggerEvent, self._handle_recording_trigger),
            (AudioCaptureErrorEvent, self._handle_capture_error),
        ]
        for event_type, handler in subscriptions:
            self.subscription_manager.subscribe(event_type, handler)
        logger.info("Event subscriptions configured")

    def _set_phase(self, new_phase: SessionPhase) -> None:
        """Validated phase transition. Must be called with the lock held."""
        old_phase = self._phase
        if new_phase not in _VALID_TRANSITIONS[old_phase]:
            error_msg = f"Invalid phase transition: {old_phase.value} -> {new_phase.value}"
            logger.error(error_msg)
            raise ValueError(error_msg)
        self._phase = new_phase
        logger.debug(f"Phase transition: {old_phase.value} -> {new_phase.value}")

    # Public API

    async def connect(self) -> None:
        """Open the streaming connection with the stored credential.

        Raises:
            InvalidCredentialError: No credential is available or it is malformed.
        """
        async with self._state_lock:
            if self._phase != SessionPhase.DISCONNECTED:
                logger.debug(f"Connect ignored in phase {self._phase.value}")
                return

            api_key = await self._credentials.get_credential()
            if not api_key or not self._credentials.is_valid(api_key):
                error = InvalidCredentialError("A valid API key is required to connect")
                self._connection_state = ConnectionState.error(error.message)
                await self._report_error(error)
                raise error

            self._set_phase(SessionPhase.CONNECTING)
            self._connection_state = ConnectionState.connecting()
            logger.info(f"Connecting to {self.config.transport.endpoint_url}")
            await self._channel.connect(
                self.config.transport.endpoint_url,
                protocol.build_auth_headers(api_key.strip(), self.config.transport.beta_header),
            )
        await self._publish_snapshot()

    async def disconnect(self) -> None:
        """Close the connection on purpose. An active capture cycle is finalized with its partial content."""
        async with self._state_lock:
            if self._phase == SessionPhase.DISCONNECTED and not self._channel.is_running:
                return
            await self._abort_cycle_locked()
            self._scheduler.reset_pending()
            await self._channel.disconnect()
            self._connection_state = ConnectionState.disconnected()
            if self._phase != SessionPhase.DISCONNECTED:
                self._set_phase(SessionPhase.DISCONNECTED)
        await self._publish_snapshot()

    async def start_capture(self) -> bool:
        """Start capturing and streaming audio.

        Returns:
            False if the session is not connected and idle.

        Raises:
            PermissionDeniedError: Microphone access is unavailable.
            ResourceSetupError: The audio stream or detector could not be set up.
        """
        async with self._state_lock:
            started = await self._start_capture_locked()
        if started:
            await self._publish_snapshot()
        return started

    async def stop_capture(self) -> bool:
        """Stop capturing and run the finalize protocol.

        Returns:
            False if the session was not capturing.
        """
        if self._phase == SessionPhase.LISTENING:
            self._audio.stop_processing()
            await self._drain_queued_frames()
        async with self._state_lock:
            stopped = await self._stop_capture_locked()
        if stopped:
            await self._publish_snapshot()
        return stopped

    async def set_mode(self, mode: SessionMode) -> bool:
        async with self._state_lock:
            if self._phase in (SessionPhase.LISTENING, SessionPhase.FINALIZING):
                logger.warning("Cannot change session mode while a capture cycle is active")
                return False
            self._mode = SessionMode(mode)
            self._aggregator.mode = self._mode
            logger.info(f"Session mode set to {self._mode.value}")
        await self._publish_snapshot()
        return True

    async def set_languages(self, target_language: Optional[str] = None, input_language: Optional[str] = None) -> None:
        """Change languages. While connected the remote session is reconfigured immediately.

        Raises:
            ValueError: A language code is not supported.
        """
        target = get_target_language(target_language) if target_language is not None else None
        source = get_input_language(input_language) if input_language is not None else None

        async with self._state_lock:
            if target is not None:
                self._target_language = target
            if source is not None:
                self._input_language = source
            logger.info(f"Languages: {self._input_language.code} -> {self._target_language.code}")
            if self._connection_state.is_connected:
                await self._send_session_update_locked()
        await self._publish_snapshot()

    async def update_submission_settings(
        self,
        pause_threshold: Optional[float] = None,
        max_buffer_frames: Optional[int] = None,
        max_submission_interval: Optional[float] = None,
    ) -> Tuple[float, int, float]:
        async with self._state_lock:
            return self._scheduler.update_settings(pause_threshold, max_buffer_frames, max_submission_interval)

    def get_submission_settings(self) -> Tuple[float, int, float]:
        return self._scheduler.get_settings()

    async def clear_current_content(self) -> None:
        async with self._state_lock:
            self._aggregator.clear()
            await self._publish_live_text()
        await self._publish_snapshot()

    async def reset_usage(self) -> None:
        async with self._state_lock:
            self._usage = UsageCounters()
            await self._storage.write(UsageData(usage=self._usage, reset_at=datetime.now()))
            await self.event_bus.publish(UsageUpdatedEvent(usage=self._usage, formatted_cost=self._format_cost()))
        logger.info("Usage counters reset")

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            connection_state=self._connection_state,
            phase=self._phase,
            mode=self._mode,
            target_language=self._target_language.code,
            input_language=self._input_language.code,
            is_capturing=self._is_capturing,
            is_finalizing=self._is_finalizing,
            is_translating=self._is_translating,
            is_voice_active=self._scheduler.is_voice_active,
            current_transcription=self._aggregator.transcription,
            current_translation=self._aggregator.translation,
            usage=self._usage,
            voice_activity_policy=self._vad.policy if self._vad is not None else None,
        )

    async def shutdown(self) -> None:
        await self.disconnect()
        self.subscription_manager.unsubscribe_all()
        if isinstance(self._semantic_vad, SemanticVoiceActivitySource):
            self._semantic_vad.shutdown()
        logger.info("SessionOrchestrator shut down")

    # Capture cycle

    async def _start_capture_locked(self) -> bool:
        if self._phase != SessionPhase.CONNECTED:
            logger.warning(f"Cannot start capture in phase {self._phase.value}")
            return False

        try:
            await self._audio.start_processing()
        except (PermissionDeniedError, ResourceSetupError) as e:
            logger.error(f"Capture did not start: {e.message}")
            await self._report_error(e)
            raise

        if self.event_publisher.event_loop is None:
            self.event_publisher.event_loop = asyncio.get_running_loop()

        now = self._clock()
        try:
            self._select_voice_activity(now)
        except ResourceSetupError as e:
            self._audio.stop_processing()
            logger.error(f"Voice activity detection did not start: {e.message}")
            await self._report_error(e)
            raise

        self._generation += 1
        self._aggregator.mode = self._mode
        self._aggregator.clear()
        self._is_capturing = True
        self._is_translating = True
        self._set_phase(SessionPhase.LISTENING)

        if self._mode == SessionMode.CONTINUOUS:
            self._tick_timer = PeriodicTimer(
                self.config.submission.check_interval_seconds,
                functools.partial(self._publish_submission_check, self._generation),
                name="submission-check",
            )
            self._tick_timer.start()

        logger.info(
            f"Capture started (generation {self._generation}, mode={self._mode.value}, "
            f"policy={self._scheduler.policy_name})"
        )
        await self._publish_live_text()
        return True

    def _select_voice_activity(self, now: float) -> None:
        """Pick the voice activity strategy for this capture cycle.

        Single utterances need none. Continuous sessions prefer the semantic
        source and fall back to amplitude detection when it is not permitted.
        """
        self._vad = None
        if self._mode == SessionMode.SINGLE_UTTERANCE:
            self._scheduler.set_policy("manual", now)
            return

        if self.config.submission.policy == "semantic":
            source = self._semantic_vad
            source.bind(self._on_async_speech_started, self._on_async_speech_ended)
            try:
                source.start()
            except PermissionDeniedError as e:
                logger.warning(f"Semantic voice activity unavailable ({e.message}), falling back to amplitude policy")
            else:
                self._vad = source
                self._scheduler.set_policy(source.policy, now)
                return

        source = self._amplitude_vad
        source.bind(self._on_async_speech_started, self._on_async_speech_ended)
        source.start()
        self._vad = source
        self._scheduler.set_policy(source.policy, now)

    def _stop_capture_sources(self) -> None:
        if self._tick_timer is not None:
            self._tick_timer.stop()
            self._tick_timer = None
        self._audio.stop_processing()
        if self._vad is not None:
            self._vad.stop()
        self._is_capturing = False

    async def _stop_capture_locked(self) -> bool:
        if self._phase != SessionPhase.LISTENING:
            logger.debug(f"Stop ignored in phase {self._phase.value}")
            return False

        now = self._clock()
        self._stop_capture_sources()
        self._set_phase(SessionPhase.FINALIZING)
        self._is_finalizing = True
        logger.info(f"Capture stopped (generation {self._generation}), finalizing")

        await self._apply_actions(self._scheduler.flush(now))

        if not self._scheduler.has_outstanding_work:
            await self._finalize_locked("immediate")
            return True

        self._finalize_timer = OneShotTimer(
            self.config.session.finalize_timeout_seconds,
            functools.partial(self._publish_finalize_timeout, self._generation),
            name="finalize-timeout",
        )
        self._finalize_timer.arm()
        return True

    async def _drain_queued_frames(self) -> None:
        """Let frames captured before the stop reach the scheduler ahead of the final flush.

        Inside a bus handler the frames queued before the triggering event have
        already been handled, since frames outrank every control event.
        """
        if self.event_bus.is_worker_task():
            return
        if not await self.event_bus.join(timeout=_STOP_DRAIN_TIMEOUT_SECONDS):
            logger.warning(f"Queued frames not drained within {_STOP_DRAIN_TIMEOUT_SECONDS}s, flushing anyway")

    async def _abort_cycle_locked(self) -> None:
        """End the capture cycle because the connection is going away, keeping partial content."""
        if self._phase == SessionPhase.LISTENING:
            self._stop_capture_sources()
            self._is_finalizing = True
        if self._is_finalizing:
            await self._finalize_locked("disconnect")

    async def _finalize_locked(self, trigger: str) -> Optional[TranscriptionRecord]:
        """Persist the cycle's content exactly once. Later triggers are no-ops."""
        if not self._is_finalizing:
            logger.debug(f"Finalize ({trigger}) ignored: already finalized")
            return None
        self._is_finalizing = False
        if self._finalize_timer is not None:
            self._finalize_timer.cancel()
            self._finalize_timer = None

        transcription = self._aggregator.transcription.strip()
        translation = self._aggregator.translation.strip()
        record: Optional[TranscriptionRecord] = None
        if transcription or translation:
            record = TranscriptionRecord(
                original_text=transcription or self.config.session.empty_transcript_placeholder,
                translated_text=translation or self.config.session.empty_translation_placeholder,
                source_language_code=None if self._input_language.is_auto else self._input_language.code,
                target_language_code=self._target_language.code,
            )
            await self._history.persist(record)
            await self.event_bus.publish(TranscriptionRecordCreatedEvent(record=record))
        else:
            logger.info("Nothing to persist for this capture cycle")

        self._is_translating = False
        self.finalize_count += 1
        if self._phase == SessionPhase.FINALIZING:
            self._set_phase(SessionPhase.CONNECTED)

        logger.info(f"Finalized generation {self._generation} ({trigger})")
        await self.event_bus.publish(
            FinalizeCompletedEvent(generation=self._generation, trigger=trigger, record=record)
        )
        return record

    # Outbound

    async def _apply_actions(self, actions: SubmissionActions) -> None:
        for frame in actions.append:
            await self._channel.send(protocol.build_audio_append(frame))

        if actions.clear:
            await self._channel.send(protocol.build_clear())
            if actions.discarded is not None:
                duration, frames = actions.discarded
                await self.event_bus.publish(SegmentDiscardedEvent(duration_seconds=duration, frame_count=frames))

        if actions.commit is not None:
            self._aggregator.begin_response_cycle()
            await self._channel.send(protocol.build_commit())
            await self._channel.send(protocol.build_response_create(protocol.response_modalities(self.config.session)))
            await self.event_bus.publish(
                SubmissionCommittedEvent(reason=actions.commit, frame_count=actions.committed_frames)
            )

        for frame in actions.append_after_commit:
            await self._channel.send(protocol.build_audio_append(frame))

    async def _send_session_update_locked(self) -> None:
        message = protocol.build_session_update(self.config.session, self._target_language, self._input_language)
        if await self._channel.send(message):
            logger.info(f"Session configured for {self._target_language.code}")

    # Producer hand-off

    def _on_async_speech_started(self, timestamp: float) -> None:
        if self._vad is not None:
            self.event_publisher.publish(SpeechStartedEvent(timestamp=timestamp, source=self._vad.policy))

    def _on_async_speech_ended(self, timestamp: float) -> None:
        if self._vad is not None:
            self.event_publisher.publish(SpeechEndedEvent(timestamp=timestamp, source=self._vad.policy))

    async def _publish_submission_check(self, generation: int) -> None:
        await self.event_bus.publish(SubmissionCheckEvent(generation=generation))

    async def _publish_finalize_timeout(self, generation: int) -> None:
        await self.event_bus.publish(FinalizeTimeoutEvent(generation=generation))

    # Event handlers

    async def _handle_audio_frame(self, event: AudioFrameEvent) -> None:
        async with self._state_lock:
            if self._phase != SessionPhase.LISTENING:
                return
            voiced = False
            if self._vad is not None:
                self._vad.process_frame(event.frame, event.amplitude, event.timestamp)
                voiced = self._vad.last_frame_voiced
            await self._apply_actions(self._scheduler.on_frame(event.frame, event.timestamp, voiced))

    async def _handle_speech_started(self, event: SpeechStartedEvent) -> None:
        async with self._state_lock:
            if not self._accepts_speech_event(event.source):
                return
            logger.debug(f"Speech started ({event.source})")
            await self._apply_actions(self._scheduler.on_speech_started(event.timestamp))
        await self._publish_snapshot()

    async def _handle_speech_ended(self, event: SpeechEndedEvent) -> None:
        async with self._state_lock:
            if not self._accepts_speech_event(event.source):
                return
            logger.debug(f"Speech ended ({event.source})")
            await self._apply_actions(self._scheduler.on_speech_ended(event.timestamp))
        await self._publish_snapshot()

    def _accepts_speech_event(self, source: str) -> bool:
        return self._phase == SessionPhase.LISTENING and self._vad is not None and self._vad.policy == source

    async def _handle_submission_check(self, event: SubmissionCheckEvent) -> None:
        async with self._state_lock:
            if event.generation != self._generation or self._phase != SessionPhase.LISTENING:
                return
            await self._apply_actions(self._scheduler.on_tick(self._clock()))

    async def _handle_finalize_timeout(self, event: FinalizeTimeoutEvent) -> None:
        async with self._state_lock:
            if event.generation != self._generation or not self._is_finalizing:
                logger.debug(f"Finalize timeout for generation {event.generation} is a no-op")
                return
            logger.warning(
                f"No final response within {self.config.session.finalize_timeout_seconds}s, finalizing with current content"
            )
            self._scheduler.reset_pending()
            await self._finalize_locked("timeout")
        await self._publish_snapshot()

    async def _handle_transport_state(self, event: TransportStateChangedEvent) -> None:
        async with self._state_lock:
            if self._phase == SessionPhase.DISCONNECTED:
                return

            self._connection_state = event.state
            status = event.state.status
            if status == ConnectionStatus.CONNECTED:
                self._scheduler.reset_pending()
                if self._phase == SessionPhase.CONNECTING:
                    self._set_phase(SessionPhase.CONNECTED)
                await self._send_session_update_locked()
                if self._is_finalizing:
                    await self._finalize_locked("disconnect")
            elif event.terminal or status == ConnectionStatus.DISCONNECTED:
                await self._abort_cycle_locked()
                self._scheduler.reset_pending()
                self._set_phase(SessionPhase.DISCONNECTED)
                if event.terminal:
                    await self.event_bus.publish(SessionErrorEvent(kind="transport", message=event.state.message))
            else:
                logger.info(f"Transport state: {event.state}")
        await self._publish_snapshot()

    async def _handle_transport_message(self, event: TransportMessageEvent) -> None:
        server_event = protocol.parse_server_event(event.raw)
        if server_event is None:
            return

        async with self._state_lock:
            update = self._aggregator.handle(server_event)
            if update.text_changed:
                await self._publish_live_text()

            if update.error is not None:
                self._connection_state = ConnectionState.error(update.error.message)
                self._scheduler.reset_pending()
                await self._report_error(update.error)
                if self._is_finalizing:
                    await self._finalize_locked("response")

            if update.usage is not None:
                self._usage = self._usage.add(update.usage)
                await self._storage.write(UsageData(usage=self._usage))
                await self.event_bus.publish(UsageUpdatedEvent(usage=self._usage, formatted_cost=self._format_cost()))

            if update.utterance_complete and self._mode == SessionMode.SINGLE_UTTERANCE and self._is_finalizing:
                await self._finalize_locked("response")

            if update.response_complete:
                await self._apply_actions(self._scheduler.on_response_complete(self._clock()))
                if self._is_finalizing and not self._scheduler.has_outstanding_work:
                    await self._finalize_locked("response")

        if update.error is not None or update.response_complete or update.utterance_complete:
            await self._publish_snapshot()

    async def _handle_recording_trigger(self, event: RecordingTriggerEvent) -> None:
        try:
            if event.trigger == "start":
                await self.start_capture()
            else:
                await self.stop_capture()
        except ParleyError as e:
            logger.error(f"Recording {event.trigger} failed: {e.message}")

    async def _handle_capture_error(self, event: AudioCaptureErrorEvent) -> None:
        logger.error(f"Audio device failed: {event.message}")
        await self._report_error(ResourceSetupError(f"Audio device failed: {event.message}"))
        await self.stop_capture()

    # Helpers

    async def _report_error(self, error: ParleyError) -> None:
        kind = error.kind if error.kind in _ERROR_KINDS else "internal"
        await self.event_bus.publish(SessionErrorEvent(kind=kind, message=error.message))

    async def _publish_live_text(self) -> None:
        await self.event_bus.publish(
            LiveTextUpdatedEvent(transcription=self._aggregator.transcription, translation=self._aggregator.translation)
        )

    async def _publish_snapshot(self) -> None:
        await self.event_bus.publish(SessionSnapshotEvent(snapshot=self.snapshot()))

    def _format_cost(self) -> str:
        return self._usage.formatted_cost(
            self.config.usage.input_cost_per_1k_tokens, self.config.usage.output_cost_per_1k_tokens
        )
