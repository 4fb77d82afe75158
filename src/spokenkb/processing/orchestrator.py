"""
Pipeline Orchestrator
=====================

Drives each video through download → upload → transcribe → score → index.

Guarantees:
- At most one in-flight worker per video. A stage starts with a conditional
  UPDATE from its precondition state to its in-flight state; a worker whose
  UPDATE matches no row lost the race and does nothing.
- Atomic stages. The step's rows and the advance to the result state are
  written in one transaction, guarded by the same in-flight + claimed_by
  condition. If anything fails, nothing of the stage is visible.
- Bounded retries. Failures increment attempt_count, store last_error and
  park the video in `retrying` until next_eligible_at (exponential backoff).
  Unsupported input, or an exhausted budget, moves it to `failed` and alerts
  the monitor. Stage errors never escape run_stage.
- Idempotent re-runs. An `indexed` video is left alone unless forced, and
  steps reuse verified artifacts instead of fetching or storing them again.
"""

import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from spokenkb.database.models import (
    Artifact, ArtifactKind, Embedding, ProsodyFeatures, Segment, Video
)
from spokenkb.interfaces import ArtifactStore, AudioSource, Embedder, Monitor, Transcriber, VideoInfo
from spokenkb.processing_steps import STEP_RUNNERS, StageContext, StageOutput
from spokenkb.prosody.emphasis import EmphasisWeights
from spokenkb.prosody.extractor import ProsodyConfig, ProsodyFeatureExtractor
from spokenkb.segmentation.segmenter import SegmenterConfig, TranscriptSegmenter
from spokenkb.storage.artifact_keys import ArtifactKeyBuilder
from spokenkb.utils.backoff import ExponentialBackoff, as_utc, utcnow
from spokenkb.utils.config import (
    get_emphasis_config, get_pipeline_config, get_prosody_config,
    get_segmentation_config, load_config,
)
from spokenkb.utils.error_codes import (
    AttemptBudgetExceeded, ErrorCode, TransientIO,
    create_error_result, create_skipped_result,
)
from spokenkb.utils.logger import get_worker_name, setup_worker_logger
from .error_handler import ErrorHandler
from .monitoring import LoggingMonitor
from .state.linear_state_model import (
    IN_FLIGHT_STATES, RUNNABLE_STATES, STAGE_BY_IN_FLIGHT, LinearStateMachine,
    Stage, VideoState, get_stage,
)

logger = setup_worker_logger('orchestrator')


class ClaimLost(Exception):
    """The video left our in-flight state before the stage could commit."""


@dataclass(frozen=True)
class WorkItem:
    """A (video, stage) pair ready to run."""
    video_id: str
    stage: str


def default_worker_id() -> str:
    return f"{get_worker_name()}:{os.getpid()}:{threading.get_ident()}"


class PipelineOrchestrator:
    """
    Per-video state machine over the videos table.

    Usage:
        orchestrator = PipelineOrchestrator(session_factory, store,
                                            audio_source=source,
                                            transcriber=whisper,
                                            embedder=embedder)
        orchestrator.discover_video(VideoInfo(video_id='abc123', ...))
        orchestrator.process_video('abc123')
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        store: ArtifactStore,
        audio_source: Optional[AudioSource] = None,
        transcriber: Optional[Transcriber] = None,
        embedder: Optional[Embedder] = None,
        monitor: Optional[Monitor] = None,
        config: Optional[Dict[str, Any]] = None,
        keys: Optional[ArtifactKeyBuilder] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.session_factory = session_factory
        self.store = store
        self.audio_source = audio_source
        self.transcriber = transcriber
        self.embedder = embedder
        self.monitor = monitor or LoggingMonitor()
        self.config = config if config is not None else load_config()
        self.keys = keys or ArtifactKeyBuilder()
        self.clock = clock or utcnow

        self.pipeline_config = get_pipeline_config(self.config)
        self.backoff = ExponentialBackoff.from_config(self.pipeline_config)
        self.error_handler = ErrorHandler(self.config)
        self.state_machine = LinearStateMachine()
        self.segmenter = TranscriptSegmenter(SegmenterConfig.from_dict(get_segmentation_config(self.config)))
        self.extractor = ProsodyFeatureExtractor(
            ProsodyConfig.from_dict(get_prosody_config(self.config)),
            EmphasisWeights.from_config(get_emphasis_config(self.config)),
        )
        self.staging_dir = Path(self.pipeline_config['staging_dir'])
        self.call_timeout = self.pipeline_config.get('call_timeout_seconds')
        self.claim_timeout = float(self.pipeline_config.get('claim_timeout_seconds', 3600))

        logger.info(
            f"Orchestrator ready: max_attempts={self.backoff.max_attempts}, "
            f"backoff={self.backoff.base}s..{self.backoff.max_delay}s, "
            f"call_timeout={self.call_timeout}s, claim_timeout={self.claim_timeout}s"
        )

    # ------------------------------------------------------------------
    # Video lifecycle
    # ------------------------------------------------------------------

    def discover_video(self, info: VideoInfo) -> Video:
        """Register a video in `discovered`. Re-discovery returns the existing row."""
        existing = self.get_video(info.video_id)
        if existing is not None:
            return existing

        video = Video(
            video_id=info.video_id,
            title=info.title,
            description=info.description,
            publish_date=info.publish_date,
            duration=info.duration,
            source_url=info.source_url,
            playlist_id=info.playlist_id,
            channel_id=info.channel_id,
            processing_state=VideoState.DISCOVERED.value,
            attempt_count=0,
            segment_count=0,
        )
        try:
            with self.session_factory.begin() as session:
                session.add(video)
        except IntegrityError:
            # Discovered concurrently by another worker
            return self.get_video(info.video_id)
        logger.info(f"Discovered video {info.video_id}")
        return video

    def get_video(self, video_id: str) -> Optional[Video]:
        with self.session_factory() as session:
            return session.execute(select(Video).where(Video.video_id == video_id)).scalar_one_or_none()

    def get_state(self, video_id: str) -> Optional[VideoState]:
        video = self.get_video(video_id)
        return VideoState(video.processing_state) if video else None

    def get_state_counts(self) -> Dict[str, int]:
        """Number of videos per processing state."""
        with self.session_factory() as session:
            rows = session.execute(
                select(Video.processing_state, func.count(Video.id)).group_by(Video.processing_state)
            ).all()
        return {state: count for state, count in rows}

    def retire_video(self, video_id: str, reason: str = 'removed upstream',
                     now: Optional[datetime] = None) -> bool:
        """Exclude a video from all future work. Its artifacts are kept.

        Retiring an in-flight video makes the running stage's commit miss, so
        the stage writes nothing.
        """
        now = now or self.clock()
        with self.session_factory.begin() as session:
            result = session.execute(
                update(Video)
                .where(Video.video_id == video_id,
                       Video.processing_state != VideoState.RETIRED.value)
                .values(processing_state=VideoState.RETIRED.value, retired_at=now,
                        last_error=f"retired: {reason}", claimed_by=None, claimed_at=None,
                        next_eligible_at=None, last_updated=now)
                .execution_options(synchronize_session=False)
            )
        retired = result.rowcount == 1
        if retired:
            logger.info(f"Retired video {video_id}: {reason}")
        return retired

    def reset_failed(self, video_id: str, now: Optional[datetime] = None) -> bool:
        """Operator reset of a failed video back to the stage that failed."""
        now = now or self.clock()
        with self.session_factory.begin() as session:
            result = session.execute(
                update(Video)
                .where(Video.video_id == video_id, Video.processing_state == VideoState.FAILED.value)
                .values(
                    processing_state=func.coalesce(Video.failed_at_state, VideoState.DISCOVERED.value),
                    failed_at_state=None,
                    attempt_count=0,
                    resume_state=None,
                    next_eligible_at=None,
                    last_updated=now,
                )
                .execution_options(synchronize_session=False)
            )
        reset = result.rowcount == 1
        if reset:
            logger.info(f"Reset failed video {video_id} to {self.get_state(video_id).value}")
        else:
            logger.warning(f"Reset of {video_id} ignored: video is not failed")
        return reset

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    def claim(self, video_id: str, stage_name: str, worker_id: str,
              now: Optional[datetime] = None) -> bool:
        """Move precondition → in-flight. False means another worker got there first."""
        stage = get_stage(stage_name)
        now = now or self.clock()
        with self.session_factory.begin() as session:
            result = session.execute(
                update(Video)
                .where(Video.video_id == video_id,
                       Video.processing_state == stage.precondition.value)
                .values(processing_state=stage.in_flight.value, claimed_by=worker_id,
                        claimed_at=now, last_updated=now)
                .execution_options(synchronize_session=False)
            )
        claimed = result.rowcount == 1
        if claimed:
            logger.debug(f"{worker_id} claimed {stage.name} for {video_id}")
        return claimed

    def run_stage(self, video_id: str, stage_name: str, worker_id: Optional[str] = None,
                  now: Optional[datetime] = None) -> Dict[str, Any]:
        """Claim, run and commit one stage for one video.

        Returns a result dict with status 'completed', 'skipped' (reused
        existing artifacts), 'noop' (not claimable) or 'failed' (recorded on
        the video; see 'state' for retrying vs failed).
        """
        stage = get_stage(stage_name)
        worker_id = worker_id or default_worker_id()
        now = now or self.clock()

        if not self.claim(video_id, stage.name, worker_id, now):
            state = self.get_state(video_id)
            return {'status': 'noop', 'stage': stage.name,
                    'state': state.value if state else None,
                    'reason': f"video not in {stage.precondition.value}"}

        video = self.get_video(video_id)
        ctx = self._build_context(video, worker_id, now)

        try:
            output = STEP_RUNNERS[stage.name](ctx)
            self._commit_stage(video, stage, worker_id, output, now)
        except ClaimLost as e:
            logger.warning(f"{stage.name} for {video_id} discarded: {e}")
            return {'status': 'noop', 'stage': stage.name, 'reason': str(e)}
        except Exception as error:
            return self._record_failure(video, stage, worker_id, error, now)

        self._cleanup(output)
        logger.info(f"{stage.name} {output.result['status']} for {video_id}: "
                    f"{stage.in_flight.value} → {stage.result.value}")
        result = dict(output.result)
        result.update({'stage': stage.name, 'state': stage.result.value})
        return result

    def process_video(self, video_id: str, force: bool = False, worker_id: Optional[str] = None,
                      now: Optional[datetime] = None) -> Dict[str, Any]:
        """Run every remaining stage of a video in order.

        An already indexed video is a no-op unless force is set, in which case
        derived data is rebuilt from the verified audio and transcript.
        """
        video = self.get_video(video_id)
        if video is None:
            raise KeyError(f"Unknown video: {video_id}")

        if video.processing_state == VideoState.INDEXED.value:
            if not force:
                logger.info(f"{video_id} already indexed, nothing to do")
                return create_skipped_result('already indexed', data={'state': VideoState.INDEXED.value})
            self._force_reset(video, now or self.clock())

        stages: List[Dict[str, Any]] = []
        while True:
            state = self.get_state(video_id)
            stage_name = self.state_machine.get_next_stage(state)
            if stage_name is None:
                break
            outcome = self.run_stage(video_id, stage_name, worker_id, now)
            stages.append({'stage': stage_name, 'status': outcome['status']})
            if outcome['status'] not in ('completed', 'skipped'):
                break

        final = self.get_state(video_id)
        if final == VideoState.INDEXED:
            status = 'completed'
        elif final in (VideoState.FAILED, VideoState.RETRYING):
            status = 'failed'
        else:
            status = 'incomplete'
        return {'status': status, 'state': final.value, 'stages': stages}

    def _build_context(self, video: Video, worker_id: str, now: datetime) -> StageContext:
        return StageContext(
            video=video,
            session_factory=self.session_factory,
            store=self.store,
            keys=self.keys,
            audio_source=self.audio_source,
            transcriber=self.transcriber,
            embedder=self.embedder,
            segmenter=self.segmenter,
            extractor=self.extractor,
            staging_dir=self.staging_dir,
            call_timeout=self.call_timeout,
            worker_id=worker_id,
            now=now,
            logger=logger,
        )

    def _commit_stage(self, video: Video, stage: Stage, worker_id: str,
                      output: StageOutput, now: datetime) -> None:
        """Advance the state and persist the step's rows in one transaction.

        The guarded UPDATE goes first so the transaction takes the write lock
        before it reads anything; a failing precommit_check rolls it back.
        """
        with self.session_factory.begin() as session:
            values = {
                'processing_state': stage.result.value,
                'claimed_by': None,
                'claimed_at': None,
                'attempt_count': 0,
                'resume_state': None,
                'next_eligible_at': None,
                'last_updated': now,
            }
            values.update(output.video_updates)
            result = session.execute(
                update(Video)
                .where(Video.id == video.id,
                       Video.processing_state == stage.in_flight.value,
                       Video.claimed_by == worker_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ClaimLost(f"{video.video_id} is no longer {stage.in_flight.value} for {worker_id}")

            if output.replace_derived:
                self._delete_derived(session, video.id)
            if output.stale_artifact_ids:
                session.execute(
                    delete(Artifact).where(Artifact.id.in_(output.stale_artifact_ids))
                    .execution_options(synchronize_session=False)
                )
            session.add_all(output.rows)
            session.flush()
            if output.precommit_check is not None:
                output.precommit_check(session)

    def _cleanup(self, output: StageOutput) -> None:
        for path in output.cleanup_paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove {path}: {e}")

    @staticmethod
    def _delete_derived(session, video_pk: int) -> None:
        """Drop segments, features, embeddings and the prosody artifact of a video."""
        segment_ids = select(Segment.id).where(Segment.video_id == video_pk)
        for statement in (
            delete(Embedding).where(Embedding.segment_id.in_(segment_ids)),
            delete(ProsodyFeatures).where(ProsodyFeatures.segment_id.in_(segment_ids)),
            delete(Segment).where(Segment.video_id == video_pk),
            delete(Artifact).where(Artifact.video_id == video_pk,
                                   Artifact.kind == ArtifactKind.PROSODY.value),
        ):
            session.execute(statement.execution_options(synchronize_session=False))

    def _force_reset(self, video: Video, now: datetime) -> None:
        with self.session_factory.begin() as session:
            result = session.execute(
                update(Video)
                .where(Video.id == video.id, Video.processing_state == VideoState.INDEXED.value)
                .values(processing_state=VideoState.DISCOVERED.value, segment_count=0,
                        scored_at=None, indexed_at=None, attempt_count=0, last_updated=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                self._delete_derived(session, video.id)
        if result.rowcount == 1:
            logger.info(f"Forced reprocess of {video.video_id}: derived data dropped")

    # ------------------------------------------------------------------
    # Failure bookkeeping
    # ------------------------------------------------------------------

    def _record_failure(self, video: Video, stage: Stage, worker_id: str,
                        error: BaseException, now: datetime) -> Dict[str, Any]:
        """Record a failed attempt; never raises for stage errors."""
        decision = self.error_handler.decide(error)
        alert = None
        lost = {'status': 'noop', 'stage': stage.name, 'reason': 'claim lost'}

        with self.session_factory() as session:
            current = session.get(Video, video.id)
        if current.processing_state != stage.in_flight.value or current.claimed_by != worker_id:
            logger.warning(f"Failure of {stage.name} for {video.video_id} not recorded: "
                           f"claim no longer held ({current.processing_state})")
            return lost

        previous_attempts = current.attempt_count or 0
        attempts = previous_attempts + 1
        resume_state = decision.rewind_to or stage.precondition.value
        values = {
            'attempt_count': attempts,
            'last_error': decision.message[:4000],
            'last_error_code': decision.error_code.value,
            'claimed_by': None,
            'claimed_at': None,
            'last_updated': now,
        }

        if not decision.retryable:
            new_state = VideoState.FAILED
            if decision.alert:
                alert = (decision.error_code.value, decision.message)
        elif self.backoff.is_exhausted(attempts):
            new_state = VideoState.FAILED
            exhausted = AttemptBudgetExceeded(
                f"{stage.name} failed {attempts} times; last error: {decision.message}")
            alert = (exhausted.error_code.value, exhausted.message)
        else:
            new_state = VideoState.RETRYING

        if new_state == VideoState.FAILED:
            values.update(processing_state=new_state.value, failed_at_state=resume_state,
                          resume_state=None, next_eligible_at=None)
        else:
            values.update(processing_state=new_state.value, resume_state=resume_state,
                          next_eligible_at=self.backoff.next_eligible_at(attempts, now))

        # attempt_count in the guard makes the read above part of the compare-and-swap
        with self.session_factory.begin() as session:
            result = session.execute(
                update(Video)
                .where(Video.id == video.id,
                       Video.processing_state == stage.in_flight.value,
                       Video.claimed_by == worker_id,
                       Video.attempt_count == previous_attempts)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            return lost

        if new_state == VideoState.FAILED:
            logger.error(f"{stage.name} failed permanently for {video.video_id} "
                         f"after {attempts} attempt(s): {decision.message}")
        else:
            logger.warning(f"{stage.name} failed for {video.video_id} "
                           f"(attempt {attempts}/{self.backoff.max_attempts}), retry from "
                           f"{resume_state} after {values['next_eligible_at']}: {decision.message}")

        if alert is not None:
            self._alert(video.video_id, *alert)

        result = create_error_result(
            decision.error_code,
            decision.message,
            error_details={
                'attempt_count': attempts,
                'resume_state': resume_state,
                'next_eligible_at': values.get('next_eligible_at'),
            },
            permanent=new_state == VideoState.FAILED,
        )
        result.update({'stage': stage.name, 'state': new_state.value})
        return result

    def _alert(self, video_id: str, error_code: str, message: str) -> None:
        try:
            self.monitor.alert(video_id, error_code, message)
        except Exception as e:
            logger.error(f"Monitor alert for {video_id} failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def release_eligible_retries(self, now: Optional[datetime] = None) -> int:
        """Move retrying videos whose backoff has elapsed back to their resume state."""
        now = now or self.clock()
        with self.session_factory.begin() as session:
            result = session.execute(
                update(Video)
                .where(Video.processing_state == VideoState.RETRYING.value,
                       Video.resume_state.isnot(None),
                       or_(Video.next_eligible_at.is_(None), Video.next_eligible_at <= now))
                .values(processing_state=Video.resume_state, resume_state=None,
                        next_eligible_at=None, last_updated=now)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            logger.info(f"Released {result.rowcount} video(s) from backoff")
        return result.rowcount

    def recover_stale_claims(self, now: Optional[datetime] = None) -> int:
        """Treat in-flight claims older than the claim timeout as timed-out attempts."""
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.claim_timeout)
        with self.session_factory() as session:
            stale = session.execute(
                select(Video)
                .where(Video.processing_state.in_([s.value for s in IN_FLIGHT_STATES]),
                       Video.claimed_at < cutoff)
            ).scalars().all()

        recovered = 0
        for video in stale:
            stage = STAGE_BY_IN_FLIGHT[VideoState(video.processing_state)]
            claimed_at = as_utc(video.claimed_at)
            error = TransientIO(
                f"claim by {video.claimed_by} on {stage.name} expired (taken {claimed_at.isoformat()})",
                error_code=ErrorCode.STALE_CLAIM,
            )
            outcome = self._record_failure(video, stage, video.claimed_by, error, now)
            if outcome['status'] != 'noop':
                recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} stale claim(s)")
        return recovered

    def schedule_pass(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[WorkItem]:
        """Release backoffs, recover stale claims and list runnable work.

        Failed and retired videos are never returned.
        """
        now = now or self.clock()
        self.release_eligible_retries(now)
        self.recover_stale_claims(now)

        query = (
            select(Video.video_id, Video.processing_state)
            .where(Video.processing_state.in_([s.value for s in RUNNABLE_STATES]))
            .order_by(Video.id)
        )
        if limit:
            query = query.limit(limit)
        with self.session_factory() as session:
            rows = session.execute(query).all()

        items = [WorkItem(video_id, VideoState(state).required_stage) for video_id, state in rows]
        logger.debug(f"Schedule pass: {len(items)} runnable item(s)")
        return items

    def invalidate_embeddings(self, model_version: str, now: Optional[datetime] = None) -> int:
        """Send indexed videos lacking `model_version` embeddings back to the index stage.

        Embeddings of other versions are dropped in the same transaction.
        """
        now = now or self.clock()
        current = select(Embedding.segment_id).where(Embedding.model_version == model_version)
        with self.session_factory() as session:
            video_pks = session.execute(
                select(Segment.video_id).distinct()
                .join(Video, Video.id == Segment.video_id)
                .where(Video.processing_state == VideoState.INDEXED.value,
                       Segment.id.not_in(current))
            ).scalars().all()

        invalidated = 0
        for pk in video_pks:
            with self.session_factory.begin() as session:
                result = session.execute(
                    update(Video)
                    .where(Video.id == pk, Video.processing_state == VideoState.INDEXED.value)
                    .values(processing_state=VideoState.SEGMENTED_AND_SCORED.value,
                            indexed_at=None, last_updated=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                segment_ids = select(Segment.id).where(Segment.video_id == pk)
                session.execute(
                    delete(Embedding)
                    .where(Embedding.segment_id.in_(segment_ids),
                           Embedding.model_version != model_version)
                    .execution_options(synchronize_session=False)
                )
                invalidated += 1
        if invalidated:
            logger.info(f"Invalidated embeddings of {invalidated} video(s) for {model_version}")
        return invalidated
