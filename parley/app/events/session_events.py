from typing import Literal, Optional

from parley.app.events.base_event import BaseEvent, EventPriority
from parley.app.services.session.session_models import CommitReason, SessionSnapshot, UsageCounters
from parley.app.services.storage.storage_models import TranscriptionRecord


class SubmissionCheckEvent(BaseEvent):
    """Periodic scheduler evaluation tick.

    Attributes:
        generation: Capture generation that armed the tick timer.
    """

    generation: int
    priority: EventPriority = EventPriority.HIGH


class FinalizeTimeoutEvent(BaseEvent):
    """Safety-net timeout for the finalize protocol.

    Attributes:
        generation: Capture generation that armed the timeout. Stale timeouts are ignored.
    """

    generation: int
    priority: EventPriority = EventPriority.HIGH


class SubmissionCommittedEvent(BaseEvent):
    """A segment was committed and a response requested."""

    reason: CommitReason
    frame_count: int
    priority: EventPriority = EventPriority.NORMAL


class SegmentDiscardedEvent(BaseEvent):
    """A segment failed the minimum duration or frame checks and was dropped."""

    duration_seconds: float
    frame_count: int
    priority: EventPriority = EventPriority.NORMAL


class LiveTextUpdatedEvent(BaseEvent):
    """Live transcript or translation text changed."""

    transcription: str
    translation: str
    priority: EventPriority = EventPriority.LOW


class TranscriptionRecordCreatedEvent(BaseEvent):
    """A finalized record was persisted to history."""

    record: TranscriptionRecord
    priority: EventPriority = EventPriority.NORMAL


class FinalizeCompletedEvent(BaseEvent):
    """The finalize routine ran for a capture cycle.

    Attributes:
        generation: Capture generation that was finalized.
        trigger: What fired the routine.
        record: The persisted record, or None when there was nothing to save.
    """

    generation: int
    trigger: Literal["response", "timeout", "immediate", "disconnect"]
    record: Optional[TranscriptionRecord] = None
    priority: EventPriority = EventPriority.NORMAL


class UsageUpdatedEvent(BaseEvent):
    """Cumulative usage counters changed."""

    usage: UsageCounters
    formatted_cost: str
    priority: EventPriority = EventPriority.NORMAL


class SessionErrorEvent(BaseEvent):
    """A condition that needs user action.

    Attributes:
        kind: Error family (permission, resource, credential, transport, remote).
        message: Human readable reason.
    """

    kind: Literal["permission", "resource", "credential", "transport", "remote", "internal"]
    message: str
    priority: EventPriority = EventPriority.HIGH


class SessionSnapshotEvent(BaseEvent):
    """Snapshot published after each session state change for UI rendering."""

    snapshot: SessionSnapshot
    priority: EventPriority = EventPriority.LOW
