from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class ConnectionState(BaseModel):
    """Tagged connection state: a status, plus a message only for errors.

    Build instances through the classmethods so that an error always carries a
    reason and the other variants never do.
    """

    model_config = ConfigDict(frozen=True)

    status: ConnectionStatus
    message: Optional[str] = None

    @model_validator(mode="after")
    def _message_only_for_errors(self) -> "ConnectionState":
        if self.status == ConnectionStatus.ERROR and not self.message:
            raise ValueError("Error connection state requires a message")
        if self.status != ConnectionStatus.ERROR and self.message is not None:
            raise ValueError(f"Connection state '{self.status.value}' cannot carry a message")
        return self

    @classmethod
    def disconnected(cls) -> "ConnectionState":
        return cls(status=ConnectionStatus.DISCONNECTED)

    @classmethod
    def connecting(cls) -> "ConnectionState":
        return cls(status=ConnectionStatus.CONNECTING)

    @classmethod
    def connected(cls) -> "ConnectionState":
        return cls(status=ConnectionStatus.CONNECTED)

    @classmethod
    def error(cls, message: str) -> "ConnectionState":
        return cls(status=ConnectionStatus.ERROR, message=message)

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    @property
    def is_error(self) -> bool:
        return self.status == ConnectionStatus.ERROR

    def __str__(self) -> str:
        if self.is_error:
            return f"error: {self.message}"
        return self.status.value


class SessionPhase(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LISTENING = "listening"
    FINALIZING = "finalizing"


class SessionMode(str, Enum):
    """How commits are grouped into records.

    SINGLE_UTTERANCE: one recording per start/stop cycle, committed on stop.
    CONTINUOUS: many scheduler-driven commits accumulated into one record per cycle.
    """

    SINGLE_UTTERANCE = "single_utterance"
    CONTINUOUS = "continuous"


class ResponseEncoding(str, Enum):
    INCREMENTAL = "incremental"
    STRUCTURED = "structured"


class CommitReason(str, Enum):
    PAUSE = "pause"
    BUFFER_OVERFLOW = "buffer_overflow"
    SAFETY_NET = "safety_net"
    SPEECH_END = "speech_end"
    FINAL_FLUSH = "final_flush"


class UsageCounters(BaseModel):
    """Cumulative token counters reported by terminal response events."""

    total_tokens: int = Field(default=0, ge=0)
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    audio_tokens: int = Field(default=0, ge=0)

    def add(self, other: "UsageCounters") -> "UsageCounters":
        return UsageCounters(
            total_tokens=self.total_tokens + other.total_tokens,
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            audio_tokens=self.audio_tokens + other.audio_tokens,
        )

    def estimated_cost(self, input_cost_per_1k: float = 0.01, output_cost_per_1k: float = 0.02) -> float:
        return self.input_tokens / 1000.0 * input_cost_per_1k + self.output_tokens / 1000.0 * output_cost_per_1k

    def formatted_cost(self, input_cost_per_1k: float = 0.01, output_cost_per_1k: float = 0.02) -> str:
        return f"${self.estimated_cost(input_cost_per_1k, output_cost_per_1k):.4f}"


@dataclass
class AudioSegment:
    """In-flight accumulator of frames not yet committed.

    Attributes:
        frame_count: Number of accumulated frames, used as a duration proxy.
        accumulation_start_time: When the current segment started accumulating.
        last_activity_time: Last time voice activity refreshed this segment.
    """

    frame_count: int = 0
    accumulation_start_time: Optional[float] = None
    last_activity_time: Optional[float] = None

    def reset(self, now: Optional[float]) -> None:
        self.frame_count = 0
        self.accumulation_start_time = now
        self.last_activity_time = now

    @property
    def is_empty(self) -> bool:
        return self.frame_count == 0


@dataclass
class VoiceActivityState:
    """Whether the active signal currently considers the user to be speaking."""

    is_active: bool = False
    activity_start_time: Optional[float] = None
    last_active_time: Optional[float] = None

    def activate(self, timestamp: float) -> None:
        self.is_active = True
        self.activity_start_time = timestamp
        self.last_active_time = timestamp

    def refresh(self, timestamp: float) -> None:
        if not self.is_active:
            self.activate(timestamp)
            return
        self.last_active_time = timestamp

    def deactivate(self) -> None:
        self.is_active = False
        self.activity_start_time = None

    def active_duration(self, now: float) -> float:
        if not self.is_active or self.activity_start_time is None:
            return 0.0
        return max(0.0, now - self.activity_start_time)


@dataclass
class PendingResponse:
    """The single permitted outstanding commit round-trip."""

    awaiting_response: bool = False
    committed_at: Optional[float] = None
    commit_reason: Optional[CommitReason] = None

    def mark_sent(self, now: float, reason: CommitReason) -> None:
        self.awaiting_response = True
        self.committed_at = now
        self.commit_reason = reason

    def clear(self) -> None:
        self.awaiting_response = False
        self.committed_at = None
        self.commit_reason = None


class SessionSnapshot(BaseModel):
    """Read-only view of the session handed to the UI collaborator."""

    model_config = ConfigDict(frozen=True)

    connection_state: ConnectionState
    phase: SessionPhase
    mode: SessionMode
    target_language: str
    input_language: str
    is_capturing: bool
    is_finalizing: bool
    is_translating: bool
    is_voice_active: bool
    current_transcription: str
    current_translation: str
    usage: UsageCounters
    voice_activity_policy: Optional[str] = None
