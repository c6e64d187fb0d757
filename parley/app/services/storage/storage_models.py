import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from parley.app.services.session.session_models import UsageCounters

MAX_HISTORY_ITEMS = 100


class StorageData(BaseModel):
    """Base class for all storage models with versioning support."""

    version: int = Field(default=1, description="Schema version for migrations")


class TranscriptionRecord(BaseModel):
    """A finalized utterance: what was said and what it was translated into.

    Immutable once created. One record is produced per start/stop cycle.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    original_text: str
    translated_text: str
    timestamp: datetime = Field(default_factory=datetime.now)
    source_language_code: Optional[str] = None
    target_language_code: str


class TranscriptionHistoryData(StorageData):
    """Storage model for finalized transcription records, oldest first."""

    records: List[TranscriptionRecord] = Field(default_factory=list, description="Finalized transcription records")

    @field_validator("records")
    @classmethod
    def validate_history_limit(cls, v: List[TranscriptionRecord]) -> List[TranscriptionRecord]:
        if len(v) > MAX_HISTORY_ITEMS:
            return v[-MAX_HISTORY_ITEMS:]
        return v


class UsageData(StorageData):
    """Storage model for cumulative token usage."""

    usage: UsageCounters = Field(default_factory=UsageCounters)
    reset_at: Optional[datetime] = None


class CredentialData(StorageData):
    """Storage model for the realtime API credential."""

    api_key: Optional[str] = None
    updated_at: Optional[datetime] = None
