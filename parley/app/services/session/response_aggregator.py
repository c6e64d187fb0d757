import json
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from parley.app.errors import PayloadParseError, RemoteProtocolError
from parley.app.services.session.session_models import ResponseEncoding, SessionMode, UsageCounters
from parley.app.services.transport.realtime_protocol import (
    ErrorEvent,
    ResponseDoneEvent,
    ServerEvent,
    TextDeltaEvent,
    TextDoneEvent,
    TranscriptionCompletedEvent,
)

logger = logging.getLogger(__name__)

TRANSCRIPT_SEPARATOR = " "
TRANSLATION_SEPARATOR = "\n"


@dataclass
class AggregatorUpdate:
    """Outcome of feeding one server event to the aggregator.

    Attributes:
        text_changed: Live transcript or translation changed.
        utterance_complete: A single-utterance response delivered its final text.
        response_complete: A terminal response event arrived.
        usage: Usage counters carried by the terminal event.
        error: Remote error reported by the service.
    """

    text_changed: bool = False
    utterance_complete: bool = False
    response_complete: bool = False
    usage: Optional[UsageCounters] = None
    error: Optional[RemoteProtocolError] = None


def parse_structured_payload(text: str) -> Tuple[str, str]:
    """Extract (transcript, translation) from a structured response.

    Tolerates a Markdown code fence around the JSON object.

    Raises:
        PayloadParseError: The payload is not a JSON object with string
            ``transcript`` and ``translation`` fields.
    """
    body = text.strip()
    if body.startswith("```"):
        body = body.strip("`")
        if body.lower().startswith("json"):
            body = body[4:]
        body = body.strip()

    try:
        payload = json.loads(body)
    except ValueError as e:
        raise PayloadParseError(f"Response is not valid JSON: {e}", raw_payload=text) from e

    if not isinstance(payload, dict):
        raise PayloadParseError("Response JSON is not an object", raw_payload=text)
    transcript = payload.get("transcript")
    translation = payload.get("translation")
    if not isinstance(transcript, str) or not isinstance(translation, str):
        raise PayloadParseError("Response JSON lacks transcript or translation", raw_payload=text)
    return transcript, translation


class ResponseAggregator:
    """Builds the live transcript and translation from streamed server events.

    Two independent axes shape the output. Encoding: incremental responses
    stream translation deltas (with the transcript arriving separately from
    input transcription), structured responses deliver one JSON payload per
    response. Mode: continuous sessions append each response to the live
    text, separated only where a new response cycle begins, while single
    utterances replace the live text with the final payload.
    """

    def __init__(self, mode: SessionMode, encoding: ResponseEncoding, transcript_placeholder: str = "(no transcription)") -> None:
        self.mode = mode
        self.encoding = encoding
        self.transcript_placeholder = transcript_placeholder
        self.transcription = ""
        self.translation = ""
        self._new_cycle = True
        self.parse_fallbacks = 0

    def begin_response_cycle(self) -> None:
        """Mark the next translation output as belonging to a new commit."""
        self._new_cycle = True

    def clear(self, transcription: bool = True, translation: bool = True) -> None:
        if transcription:
            self.transcription = ""
        if translation:
            self.translation = ""
        self._new_cycle = True

    def handle(self, event: ServerEvent) -> AggregatorUpdate:
        if isinstance(event, TranscriptionCompletedEvent):
            return self._on_transcript(event.transcript)
        if isinstance(event, TextDeltaEvent):
            return self._on_delta(event.delta)
        if isinstance(event, TextDoneEvent):
            return self._on_text_done(event.text)
        if isinstance(event, ResponseDoneEvent):
            usage = event.response.usage.to_counters() if event.response.usage else None
            logger.debug(f"Response complete (status={event.response.status})")
            return AggregatorUpdate(response_complete=True, usage=usage)
        if isinstance(event, ErrorEvent):
            error = RemoteProtocolError(event.error.message, code=event.error.code)
            logger.error(f"Remote error: {error.message} (code={error.code})")
            return AggregatorUpdate(error=error)

        logger.debug(f"Ignoring server event '{event.type}'")
        return AggregatorUpdate()

    def _on_transcript(self, transcript: str) -> AggregatorUpdate:
        transcript = transcript.strip()
        if self.encoding == ResponseEncoding.STRUCTURED or not transcript:
            return AggregatorUpdate()

        if self.mode == SessionMode.CONTINUOUS:
            self.transcription = self._join(self.transcription, transcript, TRANSCRIPT_SEPARATOR)
        else:
            self.transcription = transcript
        return AggregatorUpdate(text_changed=True)

    def _on_delta(self, delta: str) -> AggregatorUpdate:
        if self.encoding == ResponseEncoding.STRUCTURED or not delta:
            return AggregatorUpdate()

        if self.mode == SessionMode.CONTINUOUS and self._new_cycle and self.translation:
            self.translation += TRANSLATION_SEPARATOR
        self._new_cycle = False
        self.translation += delta
        return AggregatorUpdate(text_changed=True)

    def _on_text_done(self, text: str) -> AggregatorUpdate:
        if self.encoding == ResponseEncoding.STRUCTURED:
            return self._on_structured_payload(text)

        if self.mode == SessionMode.CONTINUOUS:
            logger.debug(f"Response text complete ({len(text)} chars)")
            return AggregatorUpdate()

        changed = text != self.translation
        self.translation = text
        self._new_cycle = False
        return AggregatorUpdate(text_changed=changed, utterance_complete=True)

    def _on_structured_payload(self, text: str) -> AggregatorUpdate:
        try:
            transcript, translation = parse_structured_payload(text)
        except PayloadParseError as e:
            self.parse_fallbacks += 1
            logger.warning(f"{e.message}; using the raw text as translation")
            transcript, translation = None, e.raw_payload.strip()

        if self.mode == SessionMode.CONTINUOUS:
            if transcript:
                self.transcription = self._join(self.transcription, transcript.strip(), TRANSCRIPT_SEPARATOR)
            if translation:
                self.translation = self._join(self.translation, translation, TRANSLATION_SEPARATOR)
            self._new_cycle = False
            return AggregatorUpdate(text_changed=True)

        self.transcription = transcript.strip() if transcript is not None else self.transcript_placeholder
        self.translation = translation
        self._new_cycle = False
        return AggregatorUpdate(text_changed=True, utterance_complete=True)

    @staticmethod
    def _join(existing: str, addition: str, separator: str) -> str:
        if not existing:
            return addition
        return existing + separator + addition
