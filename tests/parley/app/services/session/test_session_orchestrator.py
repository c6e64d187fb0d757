import json
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio

from parley.app.errors import InvalidCredentialError, PermissionDeniedError
from parley.app.events.core_events import AudioCaptureErrorEvent, AudioFrameEvent, RecordingTriggerEvent
from parley.app.events.session_events import (
    FinalizeCompletedEvent,
    FinalizeTimeoutEvent,
    SegmentDiscardedEvent,
    SessionErrorEvent,
    SubmissionCheckEvent,
    SubmissionCommittedEvent,
    UsageUpdatedEvent,
)
from parley.app.events.transport_events import TransportMessageEvent, TransportStateChangedEvent
from parley.app.events.vad_events import SpeechEndedEvent, SpeechStartedEvent
from parley.app.services.session.session_models import (
    CommitReason,
    ConnectionState,
    SessionMode,
    SessionPhase,
    UsageCounters,
)
from parley.app.services.session.session_orchestrator import SessionOrchestrator
from parley.app.services.storage.storage_models import UsageData

FRAME = b"\x00\x10" * 1024
FRAME_STEP = 1024 / 24000.0
API_KEY = "sk-" + "a" * 40


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def published(mock_event_bus, event_type):
    return [call.args[0] for call in mock_event_bus.publish.await_args_list if isinstance(call.args[0], event_type)]


def sent_types(channel):
    return [call.args[0]["type"] for call in channel.send.await_args_list]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audio_service():
    service = Mock()
    service.start_processing = AsyncMock()
    service.stop_processing = Mock()
    return service


@pytest.fixture
def channel():
    channel = Mock()
    channel.connect = AsyncMock()
    channel.disconnect = AsyncMock()
    channel.send = AsyncMock(return_value=True)
    channel.is_running = False
    return channel


@pytest.fixture
def history():
    history = Mock()
    history.persist = AsyncMock(return_value=True)
    return history


@pytest.fixture
def credentials():
    store = Mock()
    store.get_credential = AsyncMock(return_value=API_KEY)
    store.is_valid = Mock(return_value=True)
    return store


@pytest.fixture
def storage():
    storage = Mock()
    storage.read = AsyncMock(return_value=UsageData())
    storage.write = AsyncMock(return_value=True)
    return storage


@pytest.fixture
def semantic_source():
    source = Mock()
    source.policy = "semantic"
    source.last_frame_voiced = False
    return source


@pytest_asyncio.fixture
async def orchestrator(app_config, mock_event_bus, audio_service, channel, history, credentials, storage, semantic_source, clock):
    app_config.submission.policy = "amplitude"
    orch = SessionOrchestrator(
        event_bus=mock_event_bus,
        config=app_config,
        audio_service=audio_service,
        channel=channel,
        history=history,
        credentials=credentials,
        storage=storage,
        semantic_vad=semantic_source,
        clock=clock,
    )
    await orch.initialize()
    yield orch
    await orch.shutdown()


async def connect(orch):
    await orch.connect()
    await orch._handle_transport_state(TransportStateChangedEvent(state=ConnectionState.connected()))


async def feed_frames(orch, start, end, amplitude):
    t = start
    while t < end:
        await orch._handle_audio_frame(AudioFrameEvent(frame=FRAME, amplitude=amplitude, sample_rate=24000, timestamp=t))
        t += FRAME_STEP


async def deliver(orch, *payloads):
    for sequence, payload in enumerate(payloads):
        await orch._handle_transport_message(TransportMessageEvent(raw=json.dumps(payload), sequence=sequence))


async def commit_one_segment(orch, clock):
    """Speak for a second, pause, and let the tick commit it."""
    await feed_frames(orch, 0.0, 1.0, amplitude=0.3)
    await feed_frames(orch, 1.0, 2.6, amplitude=0.0)
    clock.now = 2.6
    await orch._handle_submission_check(SubmissionCheckEvent(generation=orch.generation))


@pytest.mark.asyncio
async def test_initialize_restores_usage(orchestrator, storage):
    storage.read.return_value = UsageData(usage=UsageCounters(total_tokens=120, input_tokens=100, output_tokens=20))

    await orchestrator.initialize()

    assert orchestrator.usage.total_tokens == 120


@pytest.mark.asyncio
async def test_connect_opens_channel_and_configures_session(orchestrator, channel, app_config):
    await orchestrator.connect()

    assert orchestrator.phase == SessionPhase.CONNECTING
    url, headers = channel.connect.await_args.args
    assert url == app_config.transport.endpoint_url
    assert headers["Authorization"] == f"Bearer {API_KEY}"

    await orchestrator._handle_transport_state(TransportStateChangedEvent(state=ConnectionState.connected()))

    assert orchestrator.phase == SessionPhase.CONNECTED
    assert orchestrator.connection_state.is_connected
    assert sent_types(channel) == ["session.update"]


@pytest.mark.asyncio
async def test_connect_without_credential_raises(orchestrator, credentials, mock_event_bus, channel):
    credentials.get_credential.return_value = None

    with pytest.raises(InvalidCredentialError):
        await orchestrator.connect()

    assert orchestrator.phase == SessionPhase.DISCONNECTED
    assert orchestrator.connection_state.is_error
    assert published(mock_event_bus, SessionErrorEvent)[-1].kind == "credential"
    channel.connect.assert_not_awaited()


@pytest.mark.asyncio
async def test_start_capture_requires_connection(orchestrator, audio_service):
    assert await orchestrator.start_capture() is False
    audio_service.start_processing.assert_not_awaited()


@pytest.mark.asyncio
async def test_start_capture_permission_denied(orchestrator, audio_service, mock_event_bus):
    await connect(orchestrator)
    audio_service.start_processing.side_effect = PermissionDeniedError("Microphone access denied")

    with pytest.raises(PermissionDeniedError):
        await orchestrator.start_capture()

    assert orchestrator.phase == SessionPhase.CONNECTED
    assert published(mock_event_bus, SessionErrorEvent)[-1].kind == "permission"


@pytest.mark.asyncio
async def test_start_capture_clears_previous_live_text(orchestrator):
    await connect(orchestrator)
    orchestrator.aggregator.transcription = "old transcript"
    orchestrator.aggregator.translation = "old translation"

    assert await orchestrator.start_capture() is True

    snapshot = orchestrator.snapshot()
    assert snapshot.phase == SessionPhase.LISTENING
    assert snapshot.is_capturing and snapshot.is_translating
    assert snapshot.current_transcription == ""
    assert snapshot.current_translation == ""
    await orchestrator.stop_capture()


@pytest.mark.asyncio
async def test_semantic_unavailable_falls_back_to_amplitude(orchestrator, app_config, semantic_source):
    app_config.submission.policy = "semantic"
    semantic_source.start.side_effect = PermissionDeniedError("no recognizer model")
    await connect(orchestrator)

    await orchestrator.start_capture()

    assert orchestrator.snapshot().voice_activity_policy == "amplitude"
    assert orchestrator.scheduler.policy_name == "amplitude"
    await orchestrator.stop_capture()


@pytest.mark.asyncio
async def test_commit_sends_appends_then_commit_then_response(orchestrator, channel, clock, mock_event_bus):
    await connect(orchestrator)
    await orchestrator.start_capture()

    await commit_one_segment(orchestrator, clock)

    types = sent_types(channel)
    assert types[0] == "session.update"
    assert types[-2:] == ["input_audio_buffer.commit", "response.create"]
    assert set(types[1:-2]) == {"input_audio_buffer.append"}
    committed = published(mock_event_bus, SubmissionCommittedEvent)
    assert [event.reason for event in committed] == [CommitReason.PAUSE]
    await orchestrator.stop_capture()


@pytest.mark.asyncio
async def test_stale_tick_is_ignored(orchestrator, channel, clock):
    await connect(orchestrator)
    await orchestrator.start_capture()
    await feed_frames(orchestrator, 0.0, 1.0, amplitude=0.3)
    clock.now = 2.6

    await orchestrator._handle_submission_check(SubmissionCheckEvent(generation=orchestrator.generation - 1))

    assert "input_audio_buffer.commit" not in sent_types(channel)
    await orchestrator.stop_capture()


@pytest.mark.asyncio
async def test_finalize_runs_once_on_response_and_timeout_is_noop(orchestrator, clock, history, mock_event_bus):
    await connect(orchestrator)
    await orchestrator.start_capture()
    await commit_one_segment(orchestrator, clock)

    clock.now = 2.8
    assert await orchestrator.stop_capture() is True
    assert orchestrator.phase == SessionPhase.FINALIZING

    clock.now = 3.0
    await deliver(
        orchestrator,
        {"type": "conversation.item.input_audio_transcription.completed", "transcript": "hola mundo"},
        {"type": "response.text.delta", "delta": "hello"},
        {"type": "response.text.delta", "delta": " world"},
        {"type": "response.text.done", "text": "hello world"},
        {"type": "response.done", "response": {"status": "completed"}},
    )

    assert orchestrator.phase == SessionPhase.CONNECTED
    assert history.persist.await_count == 1
    record = history.persist.await_args.args[0]
    assert record.original_text == "hola mundo"
    assert record.translated_text == "hello world"
    assert record.target_language_code == "zh-TW"
    assert record.source_language_code is None

    await orchestrator._handle_finalize_timeout(FinalizeTimeoutEvent(generation=orchestrator.generation))

    assert history.persist.await_count == 1
    assert orchestrator.finalize_count == 1
    completed = published(mock_event_bus, FinalizeCompletedEvent)
    assert [event.trigger for event in completed] == ["response"]
    assert orchestrator.snapshot().is_translating is False


@pytest.mark.asyncio
async def test_finalize_timeout_persists_partial_content(orchestrator, clock, history, mock_event_bus):
    await connect(orchestrator)
    await orchestrator.start_capture()
    await commit_one_segment(orchestrator, clock)
    await orchestrator.stop_capture()
    await deliver(orchestrator, {"type": "response.text.delta", "delta": "partial"})

    await orchestrator._handle_finalize_timeout(FinalizeTimeoutEvent(generation=orchestrator.generation))

    record = history.persist.await_args.args[0]
    assert record.translated_text == "partial"
    assert record.original_text == "(no transcription)"
    assert published(mock_event_bus, FinalizeCompletedEvent)[-1].trigger == "timeout"
    assert orchestrator.scheduler.has_outstanding_work is False
    assert orchestrator.phase == SessionPhase.CONNECTED


@pytest.mark.asyncio
async def test_finalize_timeout_without_content_persists_nothing(orchestrator, clock, history, mock_event_bus):
    await connect(orchestrator)
    await orchestrator.start_capture()
    await commit_one_segment(orchestrator, clock)
    await orchestrator.stop_capture()

    await orchestrator._handle_finalize_timeout(FinalizeTimeoutEvent(generation=orchestrator.generation))

    history.persist.assert_not_awaited()
    completed = published(mock_event_bus, FinalizeCompletedEvent)[-1]
    assert completed.trigger == "timeout"
    assert completed.record is None


@pytest.mark.asyncio
async def test_stale_finalize_timeout_is_ignored(orchestrator, clock):
    await connect(orchestrator)
    await orchestrator.start_capture()
    await commit_one_segment(orchestrator, clock)
    await orchestrator.stop_capture()

    await orchestrator._handle_finalize_timeout(FinalizeTimeoutEvent(generation=orchestrator.generation - 1))

    assert orchestrator.phase == SessionPhase.FINALIZING
    assert orchestrator.finalize_count == 0


@pytest.mark.asyncio
async def test_stop_without_outstanding_work_finalizes_immediately(orchestrator, history, mock_event_bus):
    await connect(orchestrator)
    await orchestrator.start_capture()

    await orchestrator.stop_capture()

    assert orchestrator.phase == SessionPhase.CONNECTED
    history.persist.assert_not_awaited()
    assert published(mock_event_bus, FinalizeCompletedEvent)[-1].trigger == "immediate"


@pytest.mark.asyncio
async def test_stop_handles_frames_still_queued_on_the_bus(
    app_config, event_bus, audio_service, channel, history, credentials, storage, semantic_source, clock
):
    app_config.submission.policy = "amplitude"
    orch = SessionOrchestrator(
        event_bus=event_bus,
        config=app_config,
        audio_service=audio_service,
        channel=channel,
        history=history,
        credentials=credentials,
        storage=storage,
        semantic_vad=semantic_source,
        clock=clock,
    )
    orch.setup_subscriptions()
    await event_bus.start_worker()
    try:
        await connect(orch)
        await orch.start_capture()

        for i in range(10):
            await event_bus.publish(
                AudioFrameEvent(frame=FRAME, amplitude=0.3, sample_rate=24000, timestamp=i * FRAME_STEP)
            )
        clock.now = 1.0

        assert await orch.stop_capture() is True

        types = sent_types(channel)
        assert types.count("input_audio_buffer.append") == 10
        assert types[-2:] == ["input_audio_buffer.commit", "response.create"]
        assert orch.phase == SessionPhase.FINALIZING
    finally:
        await orch.shutdown()
        await event_bus.stop_worker()


@pytest.mark.asyncio
async def test_stop_waits_for_queued_frames_only_outside_the_bus_worker(orchestrator, mock_event_bus):
    await connect(orchestrator)
    await orchestrator.start_capture()
    await orchestrator.stop_capture()

    mock_event_bus.join.assert_awaited_once()

    mock_event_bus.is_worker_task.return_value = True
    await orchestrator.start_capture()
    await orchestrator.stop_capture()

    mock_event_bus.join.assert_awaited_once()
    assert orchestrator.phase == SessionPhase.CONNECTED


@pytest.mark.asyncio
async def test_stop_when_not_listening_returns_false(orchestrator):
    await connect(orchestrator)

    assert await orchestrator.stop_capture() is False


@pytest.mark.asyncio
async def test_single_utterance_finalizes_on_final_text(orchestrator, clock, channel, history):
    assert await orchestrator.set_mode(SessionMode.SINGLE_UTTERANCE) is True
    await connect(orchestrator)
    await orchestrator.start_capture()
    await feed_frames(orchestrator, 0.0, 1.0, amplitude=0.0)

    clock.now = 1.0
    await orchestrator.stop_capture()

    assert sent_types(channel)[-2:] == ["input_audio_buffer.commit", "response.create"]
    assert orchestrator.phase == SessionPhase.FINALIZING

    await deliver(
        orchestrator,
        {"type": "conversation.item.input_audio_transcription.completed", "transcript": "bonjour"},
        {"type": "response.text.delta", "delta": "hel"},
        {"type": "response.text.done", "text": "hello"},
    )

    assert orchestrator.phase == SessionPhase.CONNECTED
    record = history.persist.await_args.args[0]
    assert record.translated_text == "hello"
    assert record.original_text == "bonjour"

    await deliver(orchestrator, {"type": "response.done", "response": {"status": "completed"}})
    assert history.persist.await_count == 1


@pytest.mark.asyncio
async def test_set_mode_rejected_while_listening(orchestrator):
    await connect(orchestrator)
    await orchestrator.start_capture()

    assert await orchestrator.set_mode(SessionMode.SINGLE_UTTERANCE) is False
    await orchestrator.stop_capture()


@pytest.mark.asyncio
async def test_semantic_speech_edges_drive_commits(orchestrator, app_config, channel, mock_event_bus):
    app_config.submission.policy = "semantic"
    await connect(orchestrator)
    await orchestrator.start_capture()
    await feed_frames(orchestrator, 0.0, 0.5, amplitude=0.3)

    assert "input_audio_buffer.append" not in sent_types(channel)

    await orchestrator._handle_speech_started(SpeechStartedEvent(timestamp=0.5, source="semantic"))
    await feed_frames(orchestrator, 0.5, 1.5, amplitude=0.3)
    await orchestrator._handle_speech_ended(SpeechEndedEvent(timestamp=1.5, source="semantic"))

    committed = published(mock_event_bus, SubmissionCommittedEvent)
    assert [event.reason for event in committed] == [CommitReason.SPEECH_END]
    await orchestrator.stop_capture()


@pytest.mark.asyncio
async def test_short_semantic_segment_clears_remote_buffer(orchestrator, app_config, channel, mock_event_bus):
    app_config.submission.policy = "semantic"
    await connect(orchestrator)
    await orchestrator.start_capture()

    await orchestrator._handle_speech_started(SpeechStartedEvent(timestamp=1.0, source="semantic"))
    await feed_frames(orchestrator, 1.0, 1.03, amplitude=0.3)
    await orchestrator._handle_speech_ended(SpeechEndedEvent(timestamp=1.03, source="semantic"))

    assert "input_audio_buffer.clear" in sent_types(channel)
    assert "input_audio_buffer.commit" not in sent_types(channel)
    assert len(published(mock_event_bus, SegmentDiscardedEvent)) == 1
    await orchestrator.stop_capture()


@pytest.mark.asyncio
async def test_speech_events_from_inactive_source_are_ignored(orchestrator, channel):
    await connect(orchestrator)
    await orchestrator.start_capture()

    await orchestrator._handle_speech_started(SpeechStartedEvent(timestamp=0.5, source="semantic"))

    assert orchestrator.scheduler.is_voice_active is False
    await orchestrator.stop_capture()


@pytest.mark.asyncio
async def test_usage_accumulates_and_persists(orchestrator, storage, mock_event_bus):
    await connect(orchestrator)
    usage = {"total_tokens": 30, "input_tokens": 20, "output_tokens": 10}

    await deliver(orchestrator, {"type": "response.done", "response": {"usage": usage}})
    await deliver(orchestrator, {"type": "response.done", "response": {"usage": usage}})

    assert orchestrator.usage.total_tokens == 60
    assert storage.write.await_args.args[0].usage.total_tokens == 60
    assert published(mock_event_bus, UsageUpdatedEvent)[-1].formatted_cost == "$0.0008"


@pytest.mark.asyncio
async def test_reset_usage(orchestrator, storage):
    await deliver(orchestrator, {"type": "response.done", "response": {"usage": {"total_tokens": 5}}})

    await orchestrator.reset_usage()

    assert orchestrator.usage.total_tokens == 0
    written = storage.write.await_args.args[0]
    assert written.usage.total_tokens == 0
    assert written.reset_at is not None


@pytest.mark.asyncio
async def test_remote_error_finalizes_pending_cycle(orchestrator, clock, mock_event_bus, history):
    await connect(orchestrator)
    await orchestrator.start_capture()
    await commit_one_segment(orchestrator, clock)
    await orchestrator.stop_capture()

    await deliver(orchestrator, {"type": "error", "error": {"message": "Rate limit reached", "code": "rate_limit"}})

    assert orchestrator.connection_state.is_error
    assert orchestrator.phase == SessionPhase.CONNECTED
    assert published(mock_event_bus, SessionErrorEvent)[-1].kind == "remote"
    assert orchestrator.scheduler.has_outstanding_work is False
    history.persist.assert_not_awaited()


@pytest.mark.asyncio
async def test_malformed_messages_are_ignored(orchestrator, history):
    await connect(orchestrator)

    await orchestrator._handle_transport_message(TransportMessageEvent(raw="{broken", sequence=0))

    assert orchestrator.phase == SessionPhase.CONNECTED


@pytest.mark.asyncio
async def test_connection_loss_while_listening_keeps_partial_content(orchestrator, clock, history, audio_service, mock_event_bus):
    await connect(orchestrator)
    await orchestrator.start_capture()
    await commit_one_segment(orchestrator, clock)
    await deliver(orchestrator, {"type": "response.text.delta", "delta": "half a sen"})

    await orchestrator._handle_transport_state(TransportStateChangedEvent(state=ConnectionState.disconnected()))

    assert orchestrator.phase == SessionPhase.DISCONNECTED
    audio_service.stop_processing.assert_called()
    assert history.persist.await_args.args[0].translated_text == "half a sen"
    assert published(mock_event_bus, FinalizeCompletedEvent)[-1].trigger == "disconnect"


@pytest.mark.asyncio
async def test_reconnect_during_finalize_completes_cycle(orchestrator, clock, history):
    await connect(orchestrator)
    await orchestrator.start_capture()
    await commit_one_segment(orchestrator, clock)
    await orchestrator.stop_capture()
    await deliver(orchestrator, {"type": "response.text.delta", "delta": "before drop"})

    await orchestrator._handle_transport_state(
        TransportStateChangedEvent(state=ConnectionState.error("Connection lost, reconnecting in 2s"), reconnect_attempt=1)
    )
    assert orchestrator.phase == SessionPhase.FINALIZING

    await orchestrator._handle_transport_state(TransportStateChangedEvent(state=ConnectionState.connected()))

    assert orchestrator.phase == SessionPhase.CONNECTED
    assert history.persist.await_args.args[0].translated_text == "before drop"


@pytest.mark.asyncio
async def test_terminal_transport_error_is_reported(orchestrator, mock_event_bus):
    await connect(orchestrator)

    await orchestrator._handle_transport_state(
        TransportStateChangedEvent(state=ConnectionState.error("Reconnection failed after 5 attempts"), terminal=True)
    )

    assert orchestrator.phase == SessionPhase.DISCONNECTED
    error = published(mock_event_bus, SessionErrorEvent)[-1]
    assert error.kind == "transport"
    assert "5 attempts" in error.message


@pytest.mark.asyncio
async def test_disconnect_closes_channel(orchestrator, channel):
    await connect(orchestrator)
    channel.is_running = True

    await orchestrator.disconnect()

    channel.disconnect.assert_awaited_once()
    assert orchestrator.phase == SessionPhase.DISCONNECTED
    assert orchestrator.connection_state == ConnectionState.disconnected()


@pytest.mark.asyncio
async def test_set_languages_reconfigures_connected_session(orchestrator, channel):
    await connect(orchestrator)

    await orchestrator.set_languages(target_language="ja", input_language="en")

    snapshot = orchestrator.snapshot()
    assert snapshot.target_language == "ja"
    assert snapshot.input_language == "en"
    assert sent_types(channel) == ["session.update", "session.update"]


@pytest.mark.asyncio
async def test_set_languages_rejects_unknown_code(orchestrator):
    with pytest.raises(ValueError):
        await orchestrator.set_languages(target_language="xx")


@pytest.mark.asyncio
async def test_submission_settings_are_clamped(orchestrator):
    settings = await orchestrator.update_submission_settings(pause_threshold=0.1, max_buffer_frames=999)

    assert settings == (0.5, 300, 4.0)
    assert orchestrator.get_submission_settings() == settings


@pytest.mark.asyncio
async def test_clear_current_content(orchestrator):
    orchestrator.aggregator.translation = "some text"

    await orchestrator.clear_current_content()

    assert orchestrator.snapshot().current_translation == ""


@pytest.mark.asyncio
async def test_recording_trigger_starts_and_stops_capture(orchestrator):
    await connect(orchestrator)

    await orchestrator._handle_recording_trigger(RecordingTriggerEvent(trigger="start"))
    assert orchestrator.phase == SessionPhase.LISTENING

    await orchestrator._handle_recording_trigger(RecordingTriggerEvent(trigger="stop"))
    assert orchestrator.phase == SessionPhase.CONNECTED


@pytest.mark.asyncio
async def test_capture_device_error_stops_capture(orchestrator, mock_event_bus):
    await connect(orchestrator)
    await orchestrator.start_capture()

    await orchestrator._handle_capture_error(AudioCaptureErrorEvent(message="device unplugged"))

    assert orchestrator.phase == SessionPhase.CONNECTED
    assert published(mock_event_bus, SessionErrorEvent)[-1].kind == "resource"


@pytest.mark.asyncio
async def test_setup_subscriptions_registers_handlers(orchestrator, mock_event_bus):
    orchestrator.setup_subscriptions()

    subscribed = {call.kwargs["event_type"] for call in mock_event_bus.subscribe.call_args_list}
    assert AudioFrameEvent in subscribed
    assert TransportMessageEvent in subscribed
    assert FinalizeTimeoutEvent in subscribed
