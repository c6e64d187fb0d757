import json

import pytest

from parley.app.errors import PayloadParseError
from parley.app.services.session.response_aggregator import ResponseAggregator, parse_structured_payload
from parley.app.services.session.session_models import ResponseEncoding, SessionMode
from parley.app.services.transport.realtime_protocol import parse_server_event


def server_event(payload):
    return parse_server_event(json.dumps(payload))


def delta(text):
    return server_event({"type": "response.text.delta", "delta": text})


def text_done(text):
    return server_event({"type": "response.text.done", "text": text})


def transcript(text):
    return server_event({"type": "conversation.item.input_audio_transcription.completed", "transcript": text})


@pytest.fixture
def continuous_incremental():
    return ResponseAggregator(SessionMode.CONTINUOUS, ResponseEncoding.INCREMENTAL)


@pytest.fixture
def single_incremental():
    return ResponseAggregator(SessionMode.SINGLE_UTTERANCE, ResponseEncoding.INCREMENTAL)


@pytest.fixture
def continuous_structured():
    return ResponseAggregator(SessionMode.CONTINUOUS, ResponseEncoding.STRUCTURED)


@pytest.fixture
def single_structured():
    return ResponseAggregator(SessionMode.SINGLE_UTTERANCE, ResponseEncoding.STRUCTURED, transcript_placeholder="(none)")


def test_deltas_concatenate_without_separator(continuous_incremental):
    continuous_incremental.begin_response_cycle()
    first = continuous_incremental.handle(delta("hello"))
    second = continuous_incremental.handle(delta(" world"))

    assert first.text_changed and second.text_changed
    assert continuous_incremental.translation == "hello world"


def test_new_response_cycle_starts_on_new_line(continuous_incremental):
    continuous_incremental.begin_response_cycle()
    continuous_incremental.handle(delta("first"))
    continuous_incremental.begin_response_cycle()
    continuous_incremental.handle(delta("second"))
    continuous_incremental.handle(delta(" part"))

    assert continuous_incremental.translation == "first\nsecond part"


def test_first_cycle_has_no_leading_separator(continuous_incremental):
    continuous_incremental.begin_response_cycle()
    continuous_incremental.handle(delta("only"))

    assert continuous_incremental.translation == "only"


def test_continuous_transcripts_join_with_space(continuous_incremental):
    continuous_incremental.handle(transcript("Hola"))
    continuous_incremental.handle(transcript(" amigos "))

    assert continuous_incremental.transcription == "Hola amigos"


def test_empty_transcript_is_ignored(continuous_incremental):
    update = continuous_incremental.handle(transcript("   "))

    assert update.text_changed is False
    assert continuous_incremental.transcription == ""


def test_continuous_text_done_does_not_replace_deltas(continuous_incremental):
    continuous_incremental.handle(delta("hello world"))
    update = continuous_incremental.handle(text_done("something else"))

    assert update.text_changed is False
    assert update.utterance_complete is False
    assert continuous_incremental.translation == "hello world"


def test_single_utterance_text_done_replaces_and_completes(single_incremental):
    single_incremental.handle(delta("hel"))
    update = single_incremental.handle(text_done("hello"))

    assert update.utterance_complete is True
    assert single_incremental.translation == "hello"


def test_single_utterance_transcript_replaces(single_incremental):
    single_incremental.handle(transcript("first"))
    single_incremental.handle(transcript("second"))

    assert single_incremental.transcription == "second"


def test_response_done_reports_usage(continuous_incremental):
    update = continuous_incremental.handle(
        server_event(
            {
                "type": "response.done",
                "response": {
                    "status": "completed",
                    "usage": {
                        "total_tokens": 30,
                        "input_tokens": 20,
                        "output_tokens": 10,
                        "input_token_details": {"audio_tokens": 15},
                    },
                },
            }
        )
    )

    assert update.response_complete is True
    assert update.usage.total_tokens == 30
    assert update.usage.audio_tokens == 15


def test_response_done_without_usage(continuous_incremental):
    update = continuous_incremental.handle(server_event({"type": "response.done"}))

    assert update.response_complete is True
    assert update.usage is None


def test_error_event_is_reported(continuous_incremental):
    update = continuous_incremental.handle(
        server_event({"type": "error", "error": {"message": "Invalid audio", "code": "invalid_value"}})
    )

    assert update.error is not None
    assert update.error.message == "Invalid audio"
    assert update.error.code == "invalid_value"


def test_unknown_event_changes_nothing(continuous_incremental):
    update = continuous_incremental.handle(server_event({"type": "rate_limits.updated"}))

    assert not (update.text_changed or update.response_complete or update.utterance_complete)


def test_structured_payload_populates_both_fields(single_structured):
    update = single_structured.handle(text_done('{"transcript": "Bonjour", "translation": "你好"}'))

    assert update.utterance_complete is True
    assert single_structured.transcription == "Bonjour"
    assert single_structured.translation == "你好"


def test_structured_payload_ignores_deltas_and_transcripts(single_structured):
    single_structured.handle(delta("partial"))
    single_structured.handle(transcript("whisper text"))

    assert single_structured.translation == ""
    assert single_structured.transcription == ""


def test_malformed_structured_payload_falls_back_to_raw_text(single_structured):
    update = single_structured.handle(text_done("  just a plain sentence  "))

    assert update.utterance_complete is True
    assert single_structured.translation == "just a plain sentence"
    assert single_structured.transcription == "(none)"
    assert single_structured.parse_fallbacks == 1


def test_continuous_structured_appends_payloads(continuous_structured):
    continuous_structured.handle(text_done('{"transcript": "one", "translation": "uno"}'))
    continuous_structured.handle(text_done('{"transcript": "two", "translation": "dos"}'))

    assert continuous_structured.transcription == "one two"
    assert continuous_structured.translation == "uno\ndos"


def test_continuous_structured_fallback_keeps_transcript(continuous_structured):
    continuous_structured.handle(text_done('{"transcript": "one", "translation": "uno"}'))
    continuous_structured.handle(text_done("not json"))

    assert continuous_structured.transcription == "one"
    assert continuous_structured.translation == "uno\nnot json"


def test_clear_resets_live_text(continuous_incremental):
    continuous_incremental.handle(transcript("a"))
    continuous_incremental.handle(delta("b"))

    continuous_incremental.clear()

    assert continuous_incremental.transcription == ""
    assert continuous_incremental.translation == ""


def test_parse_structured_payload_accepts_code_fence():
    text = '```json\n{"transcript": "hi", "translation": "hola"}\n```'

    assert parse_structured_payload(text) == ("hi", "hola")


@pytest.mark.parametrize(
    "payload",
    ["not json", "[1, 2]", '{"transcript": "hi"}', '{"transcript": 1, "translation": "x"}'],
)
def test_parse_structured_payload_rejects_malformed(payload):
    with pytest.raises(PayloadParseError) as exc_info:
        parse_structured_payload(payload)

    assert exc_info.value.raw_payload == payload
