"""Wire format of the realtime translation endpoint.

Outbound messages are plain dicts built by the ``build_*`` helpers and
serialized by the channel. Inbound messages are decoded into pydantic models
keyed by their ``type`` field. Unknown types decode to ``UnknownServerEvent``
and are ignored by consumers.
"""
import json
import logging
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from parley.app.config.app_config import SessionConfig
from parley.app.config.languages import LanguageOption
from parley.app.services.audio.audio_processor import encode_base64_pcm16
from parley.app.services.session.session_models import ResponseEncoding, UsageCounters

logger = logging.getLogger(__name__)

AUDIO_FORMAT = "pcm16"

SESSION_UPDATE = "session.update"
INPUT_AUDIO_BUFFER_APPEND = "input_audio_buffer.append"
INPUT_AUDIO_BUFFER_COMMIT = "input_audio_buffer.commit"
INPUT_AUDIO_BUFFER_CLEAR = "input_audio_buffer.clear"
RESPONSE_CREATE = "response.create"


def build_auth_headers(api_key: str, beta_header: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {api_key}", "OpenAI-Beta": beta_header}


def response_modalities(session_config: SessionConfig) -> List[str]:
    if session_config.response_modalities == "text_audio":
        return ["text", "audio"]
    return ["text"]


def build_instructions(target: LanguageOption, source: LanguageOption, encoding: ResponseEncoding) -> str:
    """Translation instructions sent with every session configuration."""
    lines = [
        "You are a professional real-time interpreter.",
        f"Translate what the user says into {target.name} (language code: {target.code}).",
    ]
    if not source.is_auto:
        lines.append(f"The user speaks {source.name} (language code: {source.code}).")

    if encoding == ResponseEncoding.STRUCTURED:
        lines.append(
            'Reply with a single JSON object {"transcript": "<what the user said>", '
            '"translation": "<the translation>"} and nothing else.'
        )
    else:
        lines.append("Output only the translation, without explanations or extra content.")
    lines.append("Keep the translation accurate and fluent.")
    return "\n".join(lines)


def build_session_update(session_config: SessionConfig, target: LanguageOption, source: LanguageOption) -> Dict[str, Any]:
    encoding = ResponseEncoding(session_config.response_encoding)
    session: Dict[str, Any] = {
        "modalities": response_modalities(session_config),
        "instructions": build_instructions(target, source, encoding),
        "input_audio_format": AUDIO_FORMAT,
        "output_audio_format": AUDIO_FORMAT,
        "turn_detection": None,
        "temperature": session_config.temperature,
        "max_response_output_tokens": session_config.max_response_output_tokens,
    }
    if encoding == ResponseEncoding.INCREMENTAL:
        transcription: Dict[str, Any] = {"model": session_config.transcription_model}
        if not source.is_auto:
            transcription["language"] = source.code.split("-")[0]
        session["input_audio_transcription"] = transcription
    return {"type": SESSION_UPDATE, "session": session}


def build_audio_append(frame: bytes) -> Dict[str, Any]:
    return {"type": INPUT_AUDIO_BUFFER_APPEND, "audio": encode_base64_pcm16(frame)}


def build_commit() -> Dict[str, Any]:
    return {"type": INPUT_AUDIO_BUFFER_COMMIT}


def build_clear() -> Dict[str, Any]:
    return {"type": INPUT_AUDIO_BUFFER_CLEAR}


def build_response_create(modalities: List[str]) -> Dict[str, Any]:
    return {"type": RESPONSE_CREATE, "response": {"modalities": list(modalities)}}


class ServerEvent(BaseModel):
    """Base for decoded inbound events. Unrecognized fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    type: str
    event_id: Optional[str] = None


class SessionCreatedEvent(ServerEvent):
    pass


class SessionUpdatedEvent(ServerEvent):
    pass


class ItemCreatedEvent(ServerEvent):
    pass


class BufferCommittedEvent(ServerEvent):
    item_id: Optional[str] = None


class TranscriptionCompletedEvent(ServerEvent):
    item_id: Optional[str] = None
    transcript: str = ""


class TextDeltaEvent(ServerEvent):
    response_id: Optional[str] = None
    delta: str = ""


class TextDoneEvent(ServerEvent):
    response_id: Optional[str] = None
    text: str = ""


class InputTokenDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audio_tokens: int = 0


class ResponseUsage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    input_token_details: Optional[InputTokenDetails] = None

    def to_counters(self) -> UsageCounters:
        audio = self.input_token_details.audio_tokens if self.input_token_details else 0
        return UsageCounters(
            total_tokens=max(0, self.total_tokens),
            input_tokens=max(0, self.input_tokens),
            output_tokens=max(0, self.output_tokens),
            audio_tokens=max(0, audio),
        )


class ResponseBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    status: Optional[str] = None
    usage: Optional[ResponseUsage] = None


class ResponseDoneEvent(ServerEvent):
    response: ResponseBody = Field(default_factory=ResponseBody)


class ErrorDetail(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: str = "Unknown error"
    type: Optional[str] = None
    code: Optional[str] = None


class ErrorEvent(ServerEvent):
    error: ErrorDetail = Field(default_factory=ErrorDetail)


class UnknownServerEvent(ServerEvent):
    pass


SERVER_EVENT_TYPES: Dict[str, Type[ServerEvent]] = {
    "session.created": SessionCreatedEvent,
    "session.updated": SessionUpdatedEvent,
    "conversation.item.created": ItemCreatedEvent,
    "input_audio_buffer.committed": BufferCommittedEvent,
    "conversation.item.input_audio_transcription.completed": TranscriptionCompletedEvent,
    "response.text.delta": TextDeltaEvent,
    "response.audio_transcript.delta": TextDeltaEvent,
    "response.text.done": TextDoneEvent,
    "response.audio_transcript.done": TextDoneEvent,
    "response.done": ResponseDoneEvent,
    "error": ErrorEvent,
}


def parse_server_event(raw: str) -> Optional[ServerEvent]:
    """Decode one inbound message.

    Returns:
        The decoded event, ``UnknownServerEvent`` for unrecognized types, or
        None when the message is not a JSON object with a ``type`` field.
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning(f"Ignoring undecodable message: {e}")
        return None

    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        logger.warning("Ignoring message without a type field")
        return None

    event_cls = SERVER_EVENT_TYPES.get(payload["type"], UnknownServerEvent)
    try:
        return event_cls.model_validate(payload)
    except ValidationError as e:
        logger.warning(f"Ignoring malformed '{payload['type']}' message: {e.error_count()} validation errors")
        return None
