"""
Linear State Model - per-video state tracking for the ingestion pipeline.

The pipeline is linear, with an in-flight state between every pair of
resting states:

    discovered → audio_downloading → audio_downloaded → uploading → uploaded
        → transcribing → transcribed → extracting_prosody
        → segmented_and_scored → indexing → indexed

    any non-terminal state ──→ failed     (terminal until reset_failed)
    in-flight state ─────────→ retrying   (returns to resume_state once eligible)
    resting state ───────────→ retired    (removed upstream, artifacts kept)

This is tracked with a SINGLE column, `videos.processing_state`, which is also
the only point of mutual exclusion between workers. Every stage is a pair of
compare-and-swap updates:

    claim:   precondition → in-flight   (rowcount 0 = someone else won, no-op)
    commit:  in-flight → result         (same transaction as the stage's rows)

Stage table:

    stage       precondition           in-flight            result
    download    discovered             audio_downloading    audio_downloaded
    upload      audio_downloaded       uploading            uploaded
    transcribe  uploaded               transcribing         transcribed
    score       transcribed            extracting_prosody   segmented_and_scored
    index       segmented_and_scored   indexing             indexed
"""

from enum import Enum
from typing import Optional, Dict, List, Tuple
from dataclasses import dataclass


class VideoState(str, Enum):
    """Processing states for a video. Values are what the database stores."""
    DISCOVERED = "discovered"
    AUDIO_DOWNLOADING = "audio_downloading"
    AUDIO_DOWNLOADED = "audio_downloaded"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    TRANSCRIBING = "transcribing"
    TRANSCRIBED = "transcribed"
    EXTRACTING_PROSODY = "extracting_prosody"
    SEGMENTED_AND_SCORED = "segmented_and_scored"
    INDEXING = "indexing"
    INDEXED = "indexed"
    RETRYING = "retrying"
    FAILED = "failed"
    RETIRED = "retired"

    @property
    def is_terminal(self) -> bool:
        """No automatic work happens from a terminal state."""
        return self in (VideoState.INDEXED, VideoState.FAILED, VideoState.RETIRED)

    @property
    def is_in_flight(self) -> bool:
        """A worker holds the video while it sits in this state."""
        return self in IN_FLIGHT_STATES

    @property
    def required_stage(self) -> Optional[str]:
        """The stage that advances a video resting in this state."""
        stage = STAGE_BY_PRECONDITION.get(self)
        return stage.name if stage else None

    @property
    def pipeline_position(self) -> int:
        """Index along the linear pipeline, -1 for off-pipeline states."""
        try:
            return PIPELINE_ORDER.index(self)
        except ValueError:
            return -1


@dataclass(frozen=True)
class Stage:
    """One pipeline stage and the states it moves a video through."""
    name: str
    precondition: VideoState
    in_flight: VideoState
    result: VideoState


STAGES: Tuple[Stage, ...] = (
    Stage('download', VideoState.DISCOVERED, VideoState.AUDIO_DOWNLOADING, VideoState.AUDIO_DOWNLOADED),
    Stage('upload', VideoState.AUDIO_DOWNLOADED, VideoState.UPLOADING, VideoState.UPLOADED),
    Stage('transcribe', VideoState.UPLOADED, VideoState.TRANSCRIBING, VideoState.TRANSCRIBED),
    Stage('score', VideoState.TRANSCRIBED, VideoState.EXTRACTING_PROSODY, VideoState.SEGMENTED_AND_SCORED),
    Stage('index', VideoState.SEGMENTED_AND_SCORED, VideoState.INDEXING, VideoState.INDEXED),
)

STAGES_BY_NAME: Dict[str, Stage] = {stage.name: stage for stage in STAGES}
STAGE_BY_PRECONDITION: Dict[VideoState, Stage] = {stage.precondition: stage for stage in STAGES}
STAGE_BY_IN_FLIGHT: Dict[VideoState, Stage] = {stage.in_flight: stage for stage in STAGES}
IN_FLIGHT_STATES = frozenset(STAGE_BY_IN_FLIGHT)
RUNNABLE_STATES = frozenset(STAGE_BY_PRECONDITION)

PIPELINE_ORDER: List[VideoState] = [
    VideoState.DISCOVERED,
    VideoState.AUDIO_DOWNLOADING,
    VideoState.AUDIO_DOWNLOADED,
    VideoState.UPLOADING,
    VideoState.UPLOADED,
    VideoState.TRANSCRIBING,
    VideoState.TRANSCRIBED,
    VideoState.EXTRACTING_PROSODY,
    VideoState.SEGMENTED_AND_SCORED,
    VideoState.INDEXING,
    VideoState.INDEXED,
]


def get_stage(name: str) -> Stage:
    """Look up a stage by name, raising KeyError for unknown stages."""
    try:
        return STAGES_BY_NAME[name]
    except KeyError:
        raise KeyError(f"Unknown stage: {name}")


@dataclass
class StateTransitionResult:
    """Result of a state transition attempt."""
    success: bool
    previous_state: Optional[VideoState]
    new_state: Optional[VideoState]
    stage: Optional[str] = None
    error: Optional[str] = None


class LinearStateMachine:
    """
    Pure transition rules for the video pipeline.

    The orchestrator turns these rules into conditional UPDATEs; nothing here
    touches the database.
    """

    def can_run_stage(self, current_state: VideoState, stage_name: str) -> Tuple[bool, str]:
        """
        Check if a stage can run given the current state.

        Returns (can_run, reason).
        """
        stage = STAGES_BY_NAME.get(stage_name)
        if not stage:
            return False, f"Unknown stage: {stage_name}"

        if current_state in (VideoState.FAILED, VideoState.RETIRED):
            return False, f"Video is {current_state.value}"

        if current_state == VideoState.RETRYING:
            return False, "Video is waiting out its backoff"

        if current_state.is_in_flight:
            return False, f"Another worker holds the video ({current_state.value})"

        if current_state != stage.precondition:
            return False, f"Requires state {stage.precondition.value}, currently at {current_state.value}"

        return True, "OK"

    def apply_stage_completion(self, current_state: VideoState, stage_name: str) -> StateTransitionResult:
        """Resulting state when a stage commits from its in-flight state."""
        stage = STAGES_BY_NAME.get(stage_name)
        if not stage:
            return StateTransitionResult(False, current_state, current_state,
                                         error=f"Unknown stage: {stage_name}")
        if current_state != stage.in_flight:
            return StateTransitionResult(False, current_state, current_state, stage=stage_name,
                                         error=f"Expected {stage.in_flight.value}, found {current_state.value}")
        return StateTransitionResult(True, current_state, stage.result, stage=stage_name)

    def get_next_stage(self, current_state: VideoState) -> Optional[str]:
        """Get the next stage to run for a video resting in this state."""
        return current_state.required_stage

    def remaining_stages(self, current_state: VideoState) -> List[str]:
        """Stages still to run, in order, from a resting state."""
        stage = STAGE_BY_PRECONDITION.get(current_state)
        if stage is None:
            return []
        start = STAGES.index(stage)
        return [s.name for s in STAGES[start:]]

    def get_progress_percentage(self, state: VideoState) -> int:
        """Get processing progress as a percentage."""
        position = state.pipeline_position
        if position < 0:
            return 0
        return int((position / (len(PIPELINE_ORDER) - 1)) * 100)
