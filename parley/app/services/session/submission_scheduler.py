import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional, Tuple

from parley.app.config.app_config import SubmissionConfig, clamp
from parley.app.services.session.session_models import AudioSegment, CommitReason, PendingResponse, VoiceActivityState

logger = logging.getLogger(__name__)


@dataclass
class SubmissionActions:
    """What the session must send after a scheduler decision, in order.

    Attributes:
        append: Frames to append to the remote input buffer, sent first.
        commit: Reason for a commit to send after the appends, if any.
        committed_frames: Frame count of the committed segment.
        append_after_commit: Frames held back while a commit was deferred,
            sent once that commit has gone out.
        clear: Whether to clear the uncommitted remote input buffer.
        discarded: (duration, frame_count) of a segment dropped as noise.
    """

    append: List[bytes] = field(default_factory=list)
    commit: Optional[CommitReason] = None
    committed_frames: int = 0
    append_after_commit: List[bytes] = field(default_factory=list)
    clear: bool = False
    discarded: Optional[Tuple[float, int]] = None

    @property
    def is_empty(self) -> bool:
        return not self.append and self.commit is None and not self.append_after_commit and not self.clear


class SubmissionPolicy(ABC):
    """One way of deciding when the accumulated segment becomes a commit.

    Policies mutate the scheduler's segment and voice state and call back into
    ``scheduler.commit`` so the admission guard is enforced in one place.
    """

    name: str = ""

    def __init__(self, scheduler: "SubmissionScheduler") -> None:
        self.scheduler = scheduler

    @abstractmethod
    def on_frame(self, frame: bytes, timestamp: float, voiced: bool, actions: SubmissionActions) -> None:
        ...

    def on_speech_started(self, timestamp: float, actions: SubmissionActions) -> None:
        pass

    def on_speech_ended(self, timestamp: float, actions: SubmissionActions) -> None:
        pass

    def on_tick(self, now: float, actions: SubmissionActions) -> None:
        pass

    @abstractmethod
    def flush(self, now: float, actions: SubmissionActions) -> None:
        ...

    def reset(self) -> None:
        pass


class AmplitudePolicy(SubmissionPolicy):
    """Timer-evaluated heuristic over amplitude-voiced frames.

    Every frame is streamed to the remote buffer; only voiced frames count
    toward the segment and refresh the activity time. Each tick checks, in
    order: a pause after activity, buffer overflow, then the safety-net
    interval since the last activity.
    """

    name = "amplitude"

    def on_frame(self, frame: bytes, timestamp: float, voiced: bool, actions: SubmissionActions) -> None:
        scheduler = self.scheduler
        scheduler.stream(frame, actions)
        if scheduler.segment.accumulation_start_time is None:
            scheduler.segment.accumulation_start_time = timestamp
        if scheduler.segment.last_activity_time is None:
            scheduler.segment.last_activity_time = timestamp
        if voiced:
            scheduler.voice.refresh(timestamp)
            scheduler.segment.last_activity_time = timestamp
            scheduler.segment.frame_count += 1

    def on_tick(self, now: float, actions: SubmissionActions) -> None:
        scheduler = self.scheduler
        segment = scheduler.segment
        if segment.frame_count == 0 or scheduler.pending.awaiting_response:
            return

        since_activity = now - (segment.last_activity_time if segment.last_activity_time is not None else now)
        if scheduler.voice.is_active and since_activity > scheduler.pause_threshold:
            logger.debug(f"Pause of {since_activity:.2f}s detected")
            scheduler.commit(CommitReason.PAUSE, now, actions)
            scheduler.voice.deactivate()
        elif segment.frame_count > scheduler.max_buffer_frames:
            logger.debug(f"Buffer holds {segment.frame_count} frames, forcing commit")
            scheduler.commit(CommitReason.BUFFER_OVERFLOW, now, actions)
        elif since_activity > scheduler.max_submission_interval:
            logger.debug(f"Safety net after {since_activity:.2f}s")
            scheduler.commit(CommitReason.SAFETY_NET, now, actions)

    def flush(self, now: float, actions: SubmissionActions) -> None:
        if self.scheduler.segment.frame_count > 0:
            self.scheduler.commit_or_defer(CommitReason.FINAL_FLUSH, now, actions)
        self.scheduler.voice.deactivate()


class SemanticPolicy(SubmissionPolicy):
    """Speech-edge driven segmentation.

    While idle, frames only fill a short pre-roll ring so the start of a word
    is not lost to recognizer latency. Speech-start sends the pre-roll and
    opens a segment; every later frame is sent and counted. Speech-end commits
    the segment if it is long enough in both duration and frames, otherwise
    the uncommitted remote buffer is cleared. A segment that outgrows the
    buffer cap is committed early and keeps accumulating.

    While an earlier segment waits as a deferred commit, the remote buffer
    holds that segment's audio, so a new segment is held locally instead: a
    discarded one is simply forgotten and a kept one joins the deferred commit.
    """

    name = "semantic"

    def __init__(self, scheduler: "SubmissionScheduler") -> None:
        super().__init__(scheduler)
        self._pre_roll: Deque[bytes] = deque(maxlen=scheduler.pre_roll_frames)

    def on_frame(self, frame: bytes, timestamp: float, voiced: bool, actions: SubmissionActions) -> None:
        scheduler = self.scheduler
        if not scheduler.voice.is_active:
            self._pre_roll.append(frame)
            return

        scheduler.stream(frame, actions)
        scheduler.segment.frame_count += 1
        scheduler.segment.last_activity_time = timestamp
        if scheduler.segment.frame_count > scheduler.max_buffer_frames and not scheduler.pending.awaiting_response:
            logger.debug(f"Segment reached {scheduler.segment.frame_count} frames mid-speech, committing early")
            scheduler.commit(CommitReason.BUFFER_OVERFLOW, timestamp, actions)

    def on_speech_started(self, timestamp: float, actions: SubmissionActions) -> None:
        scheduler = self.scheduler
        if scheduler.voice.is_active:
            return
        scheduler.voice.activate(timestamp)
        scheduler.segment.reset(timestamp)
        for frame in self._pre_roll:
            scheduler.stream(frame, actions)
        self._pre_roll.clear()

    def on_speech_ended(self, timestamp: float, actions: SubmissionActions) -> None:
        scheduler = self.scheduler
        if not scheduler.voice.is_active:
            return

        duration = scheduler.voice.active_duration(timestamp)
        frames = scheduler.segment.frame_count
        scheduler.voice.deactivate()

        if duration < scheduler.minimum_speech_duration or frames < scheduler.minimum_commit_frames:
            logger.info(f"Discarding {duration * 1000:.0f}ms segment with {frames} frames")
            actions.discarded = (duration, frames)
            if scheduler.has_deferred_commit:
                scheduler.drop_held()
            else:
                actions.clear = True
            scheduler.segment.reset(timestamp)
            return

        scheduler.commit_or_defer(CommitReason.SPEECH_END, timestamp, actions)

    def flush(self, now: float, actions: SubmissionActions) -> None:
        if self.scheduler.voice.is_active:
            self.on_speech_ended(now, actions)
        self._pre_roll.clear()

    def reset(self) -> None:
        self._pre_roll.clear()


class ManualPolicy(SubmissionPolicy):
    """Single-utterance recording: every frame is sent, one commit on stop."""

    name = "manual"

    def on_frame(self, frame: bytes, timestamp: float, voiced: bool, actions: SubmissionActions) -> None:
        segment = self.scheduler.segment
        self.scheduler.stream(frame, actions)
        if segment.accumulation_start_time is None:
            segment.accumulation_start_time = timestamp
        segment.last_activity_time = timestamp
        segment.frame_count += 1

    def flush(self, now: float, actions: SubmissionActions) -> None:
        scheduler = self.scheduler
        segment = scheduler.segment
        start = segment.accumulation_start_time if segment.accumulation_start_time is not None else now
        duration = max(0.0, now - start)

        if segment.frame_count < scheduler.minimum_commit_frames or duration < scheduler.minimum_speech_duration:
            if segment.frame_count > 0:
                logger.info(f"Discarding {duration * 1000:.0f}ms recording with {segment.frame_count} frames")
                actions.clear = True
                actions.discarded = (duration, segment.frame_count)
            segment.reset(None)
            return

        scheduler.commit_or_defer(CommitReason.FINAL_FLUSH, now, actions)


POLICIES = {policy.name: policy for policy in (AmplitudePolicy, SemanticPolicy, ManualPolicy)}


class SubmissionScheduler:
    """Owns the in-flight segment and decides when it becomes a commit.

    All entry points take explicit timestamps and return the actions to send;
    the scheduler itself never touches the network, which keeps every trigger
    deterministic under test. At most one commit may await a response: every
    trigger is suppressed while ``pending.awaiting_response`` is set, and a
    final flush that arrives during that window is deferred until the
    response completes.

    Attributes:
        segment: Frames accumulated since the last commit.
        voice: Voice activity as seen by the active policy.
        pending: The outstanding commit round-trip, if any.
        commit_count: Commits issued since creation.
    """

    def __init__(self, config: SubmissionConfig, policy: str = "amplitude") -> None:
        self.pause_threshold = config.pause_threshold_seconds
        self.max_buffer_frames = config.max_buffer_frames
        self.max_submission_interval = config.max_submission_interval_seconds
        self.minimum_speech_duration = config.minimum_speech_duration_seconds
        self.minimum_commit_frames = config.minimum_commit_frames
        self.pre_roll_frames = config.pre_roll_frames

        self.segment = AudioSegment()
        self.voice = VoiceActivityState()
        self.pending = PendingResponse()
        self.commit_count = 0
        self._deferred_commit: Optional[CommitReason] = None
        self._deferred_frames = 0
        self._held: List[bytes] = []
        self._policy: SubmissionPolicy = self._build_policy(policy)

    def _build_policy(self, name: str) -> SubmissionPolicy:
        try:
            return POLICIES[name](self)
        except KeyError:
            raise ValueError(f"Unknown submission policy: {name}") from None

    @property
    def policy_name(self) -> str:
        return self._policy.name

    @property
    def is_voice_active(self) -> bool:
        return self.voice.is_active

    @property
    def has_deferred_commit(self) -> bool:
        return self._deferred_commit is not None

    @property
    def has_outstanding_work(self) -> bool:
        return self.pending.awaiting_response or self._deferred_commit is not None

    def set_policy(self, name: str, now: Optional[float] = None) -> None:
        """Switch policy and start a fresh segment. The pending round-trip is kept."""
        self._policy.reset()
        self._policy = self._build_policy(name)
        self.segment.reset(now)
        self.voice.deactivate()
        self._clear_deferred()
        logger.info(f"Submission policy set to '{name}'")

    def stream(self, frame: bytes, actions: SubmissionActions) -> None:
        """Send a frame to the remote buffer, or hold it while a deferred commit owns that buffer."""
        if self._deferred_commit is not None:
            self._held.append(frame)
        else:
            actions.append.append(frame)

    def drop_held(self) -> None:
        if self._held:
            logger.debug(f"Dropping {len(self._held)} held frames")
        self._held.clear()

    def commit(
        self, reason: CommitReason, now: float, actions: SubmissionActions, frame_count: Optional[int] = None
    ) -> bool:
        """Record a commit in ``actions`` unless one is already awaiting a response.

        Without ``frame_count`` the current segment is committed and reset;
        with it, a deferred segment is committed and the current one is left alone.
        """
        if self.pending.awaiting_response:
            logger.debug(f"Commit ({reason.value}) suppressed: response pending")
            return False
        actions.commit = reason
        if frame_count is None:
            actions.committed_frames = self.segment.frame_count
            self.segment.reset(now)
        else:
            actions.committed_frames = frame_count
        self.pending.mark_sent(now, reason)
        self.commit_count += 1
        logger.info(f"Committing segment ({reason.value}, {actions.committed_frames} frames)")
        return True

    def commit_or_defer(self, reason: CommitReason, now: float, actions: SubmissionActions) -> None:
        if self.commit(reason, now, actions):
            return
        if self._deferred_commit is None:
            self._deferred_commit = reason
            logger.info(f"Commit ({reason.value}) deferred until the pending response completes")
        else:
            # The remote buffer still holds the deferred audio, so this segment joins that commit
            actions.append.extend(self._held)
            self._held.clear()
            logger.info(f"Segment ({reason.value}) merged into the deferred commit")
        self._deferred_frames += self.segment.frame_count
        self.segment.reset(now)

    def on_frame(self, frame: bytes, timestamp: float, voiced: bool = False) -> SubmissionActions:
        actions = SubmissionActions()
        self._policy.on_frame(frame, timestamp, voiced, actions)
        return actions

    def on_speech_started(self, timestamp: float) -> SubmissionActions:
        actions = SubmissionActions()
        self._policy.on_speech_started(timestamp, actions)
        return actions

    def on_speech_ended(self, timestamp: float) -> SubmissionActions:
        actions = SubmissionActions()
        self._policy.on_speech_ended(timestamp, actions)
        return actions

    def on_tick(self, now: float) -> SubmissionActions:
        actions = SubmissionActions()
        self._policy.on_tick(now, actions)
        return actions

    def flush(self, now: float) -> SubmissionActions:
        """Close the current segment at stop: commit it, drop it, or defer it behind the pending response."""
        actions = SubmissionActions()
        self._policy.flush(now, actions)
        return actions

    def on_response_complete(self, now: float) -> SubmissionActions:
        """Release the admission guard and issue a deferred commit, if one is waiting."""
        self.pending.clear()
        actions = SubmissionActions()
        if self._deferred_commit is not None:
            reason, frames = self._deferred_commit, self._deferred_frames
            self._deferred_commit, self._deferred_frames = None, 0
            self.commit(reason, now, actions, frame_count=frames)
            actions.append_after_commit.extend(self._held)
            self._held.clear()
        return actions

    def reset_pending(self) -> None:
        """Forget the outstanding round-trip, e.g. after the connection was re-established."""
        if self.has_outstanding_work:
            logger.info("Dropping pending response state")
        self.pending.clear()
        self._clear_deferred()

    def _clear_deferred(self) -> None:
        self._deferred_commit = None
        self._deferred_frames = 0
        self.drop_held()

    def update_settings(
        self,
        pause_threshold: Optional[float] = None,
        max_buffer_frames: Optional[int] = None,
        max_submission_interval: Optional[float] = None,
    ) -> Tuple[float, int, float]:
        if pause_threshold is not None:
            self.pause_threshold = clamp(pause_threshold, 0.5, 3.0)
        if max_buffer_frames is not None:
            self.max_buffer_frames = int(clamp(max_buffer_frames, 50, 300))
        if max_submission_interval is not None:
            self.max_submission_interval = clamp(max_submission_interval, 2.0, 10.0)
        logger.info(
            f"Submission settings: pause={self.pause_threshold}s, buffer={self.max_buffer_frames} frames, "
            f"interval={self.max_submission_interval}s"
        )
        return self.get_settings()

    def get_settings(self) -> Tuple[float, int, float]:
        return self.pause_threshold, self.max_buffer_frames, self.max_submission_interval
