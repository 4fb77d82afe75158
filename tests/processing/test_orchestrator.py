"""
Tests for PipelineOrchestrator.
"""

import threading
from datetime import timedelta

from sqlalchemy import func, select

from conftest import (
    T0, CorruptingStore, FakeAudioSource, FakeEmbedder, FakeTranscriber, SAMPLE_WORDS,
)
from spokenkb.database.models import Artifact, ArtifactKind, Embedding, ProsodyFeatures, Segment, Video
from spokenkb.interfaces import VideoInfo
from spokenkb.processing.orchestrator import PipelineOrchestrator, WorkItem
from spokenkb.utils.backoff import as_utc
from spokenkb.utils.error_codes import TransientIO, UnsupportedInput


def count_rows(session_factory, model, **filters):
    with session_factory() as session:
        query = select(func.count()).select_from(model)
        for name, value in filters.items():
            query = query.where(getattr(model, name) == value)
        return session.scalar(query)


def artifact_kinds(session_factory):
    with session_factory() as session:
        return sorted(session.execute(select(Artifact.kind)).scalars())


def advance_to(orchestrator, video_id, stop_before):
    """Run stages in order until the named stage is next."""
    for stage in ('download', 'upload', 'transcribe', 'score', 'index'):
        if stage == stop_before:
            return
        result = orchestrator.run_stage(video_id, stage, now=T0)
        assert result['status'] in ('completed', 'skipped'), result


class TestDiscovery:
    """Tests for discover_video."""

    def test_new_video_starts_discovered(self, orchestrator, video_info):
        """A discovered video starts with a clean retry record."""
        video = orchestrator.discover_video(video_info)
        assert video.processing_state == 'discovered'
        assert video.attempt_count == 0
        assert video.segment_count == 0

    def test_rediscovery_is_idempotent(self, orchestrator, video_info):
        """Discovering the same video twice keeps one row."""
        first = orchestrator.discover_video(video_info)
        second = orchestrator.discover_video(video_info)
        assert first.id == second.id
        assert count_rows(orchestrator.session_factory, Video) == 1


class TestHappyPath:
    """Tests for a full, successful pipeline run."""

    def test_process_video_reaches_indexed(self, orchestrator, video_info):
        """All five stages run and the derived rows are written."""
        orchestrator.discover_video(video_info)
        result = orchestrator.process_video('vid-001')

        assert result['status'] == 'completed'
        assert result['state'] == 'indexed'
        assert [s['stage'] for s in result['stages']] == ['download', 'upload', 'transcribe', 'score', 'index']

        sf = orchestrator.session_factory
        assert artifact_kinds(sf) == ['audio', 'prosody', 'transcript']
        assert count_rows(sf, Artifact, verified=False) == 0
        assert count_rows(sf, Segment) == 2
        assert count_rows(sf, ProsodyFeatures) == 2
        assert count_rows(sf, Embedding, model_version='hash-bow-v1') == 2

        video = orchestrator.get_video('vid-001')
        assert video.segment_count == 2
        assert video.attempt_count == 0
        assert video.claimed_by is None
        assert video.staged_audio_checksum is None
        assert as_utc(video.indexed_at) == T0

    def test_staged_audio_removed_after_upload(self, orchestrator, video_info):
        """The staging file is deleted once the stored copy is verified."""
        orchestrator.discover_video(video_info)
        orchestrator.run_stage('vid-001', 'download', now=T0)
        staged = orchestrator.staging_dir / 'vid-001' / 'audio.bin'
        assert staged.is_file()

        orchestrator.run_stage('vid-001', 'upload', now=T0)
        assert not staged.exists()

    def test_segment_text_is_verbatim(self, orchestrator, video_info):
        """Stored segment text keeps case and punctuation."""
        orchestrator.discover_video(video_info)
        orchestrator.process_video('vid-001')
        with orchestrator.session_factory() as session:
            texts = session.execute(select(Segment.text).order_by(Segment.segment_index)).scalars().all()
        assert texts == ['Rates rose.', 'Markets fell!']

    def test_rerun_on_indexed_video_is_noop(self, orchestrator, video_info):
        """A second run creates no rows and fetches nothing."""
        orchestrator.discover_video(video_info)
        orchestrator.process_video('vid-001')
        sf = orchestrator.session_factory
        before = {model: count_rows(sf, model) for model in (Artifact, Segment, ProsodyFeatures, Embedding)}
        puts = orchestrator.store.put_count

        result = orchestrator.process_video('vid-001')

        assert result['status'] == 'skipped'
        assert orchestrator.get_state('vid-001').value == 'indexed'
        assert {model: count_rows(sf, model) for model in before} == before
        assert orchestrator.store.put_count == puts
        assert orchestrator.audio_source.calls == 1
        assert orchestrator.transcriber.calls == 1

    def test_stage_out_of_order_is_noop(self, orchestrator, video_info):
        """A stage whose precondition does not hold does nothing."""
        orchestrator.discover_video(video_info)
        result = orchestrator.run_stage('vid-001', 'transcribe', now=T0)
        assert result['status'] == 'noop'
        assert orchestrator.get_state('vid-001').value == 'discovered'
        assert orchestrator.transcriber.calls == 0


class TestClaims:
    """Tests for at-most-one-in-flight."""

    def test_second_claim_loses(self, orchestrator, video_info):
        """Only the first claim of a stage succeeds."""
        orchestrator.discover_video(video_info)
        assert orchestrator.claim('vid-001', 'download', 'worker-a', T0) is True
        assert orchestrator.claim('vid-001', 'download', 'worker-b', T0) is False

        video = orchestrator.get_video('vid-001')
        assert video.processing_state == 'audio_downloading'
        assert video.claimed_by == 'worker-a'

    def test_loser_does_not_run_the_stage(self, orchestrator, video_info):
        """A worker that cannot claim never calls the collaborator."""
        orchestrator.discover_video(video_info)
        orchestrator.claim('vid-001', 'download', 'worker-a', T0)

        result = orchestrator.run_stage('vid-001', 'download', worker_id='worker-b', now=T0)

        assert result['status'] == 'noop'
        assert orchestrator.audio_source.calls == 0
        assert orchestrator.get_video('vid-001').claimed_by == 'worker-a'

    def test_concurrent_workers_commit_once(self, orchestrator, video_info):
        """Threads racing on one stage produce exactly one commit."""
        orchestrator.discover_video(video_info)
        advance_to(orchestrator, 'vid-001', 'upload')

        workers = 6
        barrier = threading.Barrier(workers)
        results = []
        lock = threading.Lock()

        def race(i):
            barrier.wait()
            outcome = orchestrator.run_stage('vid-001', 'upload', worker_id=f'racer-{i}', now=T0)
            with lock:
                results.append(outcome['status'])

        threads = [threading.Thread(target=race, args=(i,)) for i in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(results) == ['completed'] + ['noop'] * (workers - 1)
        assert count_rows(orchestrator.session_factory, Artifact, kind='audio') == 1
        assert orchestrator.store.put_count == 1
        assert orchestrator.get_state('vid-001').value == 'uploaded'


class TestRetries:
    """Tests for failure recording and backoff."""

    def test_transient_failure_schedules_retry(self, orchestrator, video_info):
        """A TransientIO parks the video in retrying with backoff."""
        orchestrator.discover_video(video_info)
        orchestrator.audio_source.error = TransientIO("connection reset")

        result = orchestrator.run_stage('vid-001', 'download', now=T0)

        assert result['status'] == 'failed'
        assert result['state'] == 'retrying'
        video = orchestrator.get_video('vid-001')
        assert video.processing_state == 'retrying'
        assert video.resume_state == 'discovered'
        assert video.attempt_count == 1
        assert video.last_error_code == 'temporary_failure'
        assert 'connection reset' in video.last_error
        assert as_utc(video.next_eligible_at) == T0 + timedelta(seconds=60)
        assert orchestrator.monitor.alerts == []

    def test_retry_released_only_after_backoff(self, orchestrator, video_info):
        """The scheduler ignores the video until next_eligible_at."""
        orchestrator.discover_video(video_info)
        orchestrator.audio_source.error = TransientIO("timeout")
        orchestrator.run_stage('vid-001', 'download', now=T0)

        assert orchestrator.schedule_pass(T0 + timedelta(seconds=30)) == []
        assert orchestrator.get_state('vid-001').value == 'retrying'

        items = orchestrator.schedule_pass(T0 + timedelta(seconds=60))
        assert items == [WorkItem('vid-001', 'download')]
        assert orchestrator.get_state('vid-001').value == 'discovered'

    def test_backoff_grows_per_attempt(self, orchestrator, video_info):
        """The second failure waits twice as long as the first."""
        orchestrator.discover_video(video_info)
        orchestrator.audio_source.error = TransientIO("timeout")
        orchestrator.run_stage('vid-001', 'download', now=T0)
        t1 = T0 + timedelta(seconds=60)
        orchestrator.schedule_pass(t1)
        orchestrator.run_stage('vid-001', 'download', now=t1)

        video = orchestrator.get_video('vid-001')
        assert video.attempt_count == 2
        assert as_utc(video.next_eligible_at) == t1 + timedelta(seconds=120)

    def test_success_resets_attempt_count(self, orchestrator, video_info):
        """A stage that succeeds after a retry clears the counter but keeps last_error."""
        orchestrator.discover_video(video_info)
        orchestrator.audio_source.error = TransientIO("timeout")
        orchestrator.run_stage('vid-001', 'download', now=T0)
        orchestrator.audio_source.error = None
        later = T0 + timedelta(minutes=5)
        orchestrator.schedule_pass(later)

        result = orchestrator.run_stage('vid-001', 'download', now=later)

        assert result['status'] == 'completed'
        video = orchestrator.get_video('vid-001')
        assert video.attempt_count == 0
        assert video.processing_state == 'audio_downloaded'
        assert 'timeout' in video.last_error

    def test_unknown_exception_is_retried(self, orchestrator, video_info):
        """Unclassified errors are treated as transient."""
        orchestrator.discover_video(video_info)
        orchestrator.audio_source.error = ValueError("unexpected payload")
        result = orchestrator.run_stage('vid-001', 'download', now=T0)
        assert result['state'] == 'retrying'
        assert result['error_code'] == 'unknown_error'

    def test_unsupported_input_fails_and_alerts(self, orchestrator, video_info):
        """UnsupportedInput is terminal and reaches the monitor."""
        orchestrator.discover_video(video_info)
        orchestrator.audio_source.error = UnsupportedInput("members-only video")

        result = orchestrator.run_stage('vid-001', 'download', now=T0)

        assert result['state'] == 'failed'
        assert result['permanent'] is True
        video = orchestrator.get_video('vid-001')
        assert video.processing_state == 'failed'
        assert video.failed_at_state == 'discovered'
        assert orchestrator.monitor.alerts[0][:2] == ('vid-001', 'unsupported_media')
        assert orchestrator.schedule_pass(T0 + timedelta(days=1)) == []

    def test_empty_transcript_is_unsupported(self, orchestrator, video_info):
        """No transcribed words means unsupported input."""
        orchestrator.discover_video(video_info)
        advance_to(orchestrator, 'vid-001', 'transcribe')
        orchestrator.transcriber.words = []

        result = orchestrator.run_stage('vid-001', 'transcribe', now=T0)

        assert result['state'] == 'failed'
        assert result['error_code'] == 'empty_transcript'

    def test_monitor_failure_does_not_escape(self, orchestrator, video_info):
        """A broken monitor is logged, not raised."""
        class BrokenMonitor:
            def alert(self, video_id, error_code, message):
                raise RuntimeError("pager down")

        orchestrator.monitor = BrokenMonitor()
        orchestrator.discover_video(video_info)
        orchestrator.audio_source.error = UnsupportedInput("not audio")

        result = orchestrator.run_stage('vid-001', 'download', now=T0)
        assert result['state'] == 'failed'


class TestAttemptBudget:
    """Tests for budget exhaustion and manual reset."""

    def exhaust_transcription(self, orchestrator):
        now = T0
        results = []
        for _ in range(orchestrator.backoff.max_attempts):
            orchestrator.schedule_pass(now)
            results.append(orchestrator.run_stage('vid-001', 'transcribe', now=now))
            now += timedelta(hours=2)
        return results, now

    def test_exhausted_budget_fails_and_alerts(self, orchestrator, video_info):
        """Repeated TransientIO ends in failed with an AttemptBudgetExceeded alert."""
        orchestrator.discover_video(video_info)
        advance_to(orchestrator, 'vid-001', 'transcribe')
        orchestrator.transcriber.error = TransientIO("whisper service unavailable")

        results, later = self.exhaust_transcription(orchestrator)

        assert [r['state'] for r in results] == ['retrying', 'retrying', 'failed']
        video = orchestrator.get_video('vid-001')
        assert video.processing_state == 'failed'
        assert video.attempt_count == orchestrator.backoff.max_attempts
        assert video.failed_at_state == 'uploaded'
        assert [a[1] for a in orchestrator.monitor.alerts] == ['attempts_exhausted']
        assert orchestrator.schedule_pass(later) == []

    def test_audio_kept_and_not_refetched_after_reset(self, orchestrator, video_info):
        """Manual reset resumes at the failed stage using the verified audio."""
        orchestrator.discover_video(video_info)
        advance_to(orchestrator, 'vid-001', 'transcribe')
        orchestrator.transcriber.error = TransientIO("whisper service unavailable")
        _, later = self.exhaust_transcription(orchestrator)

        with orchestrator.session_factory() as session:
            audio = session.execute(select(Artifact).where(Artifact.kind == 'audio')).scalar_one()
        assert audio.verified is True
        assert orchestrator.store.exists(audio.storage_key)

        orchestrator.transcriber.error = None
        assert orchestrator.reset_failed('vid-001', now=later) is True
        video = orchestrator.get_video('vid-001')
        assert video.processing_state == 'uploaded'
        assert video.attempt_count == 0

        result = orchestrator.process_video('vid-001', now=later)

        assert result['state'] == 'indexed'
        assert orchestrator.audio_source.calls == 1
        with orchestrator.session_factory() as session:
            audio_after = session.execute(select(Artifact).where(Artifact.kind == 'audio')).scalar_one()
        assert audio_after.id == audio.id

    def test_reset_ignores_videos_that_are_not_failed(self, orchestrator, video_info):
        """reset_failed only acts on failed videos."""
        orchestrator.discover_video(video_info)
        assert orchestrator.reset_failed('vid-001') is False
        assert orchestrator.get_state('vid-001').value == 'discovered'


class TestChecksumGate:
    """Tests for artifact verification."""

    def test_corrupted_audio_blocks_transcription(self, orchestrator, video_info):
        """Audio that no longer matches its checksum never reaches transcribed."""
        orchestrator.discover_video(video_info)
        advance_to(orchestrator, 'vid-001', 'transcribe')
        key = orchestrator.keys.key_for(orchestrator.get_video('vid-001'), ArtifactKind.AUDIO)
        orchestrator.store.blobs[key] = b'not the audio we stored'

        result = orchestrator.run_stage('vid-001', 'transcribe', now=T0)

        assert result['error_code'] == 'checksum_mismatch'
        video = orchestrator.get_video('vid-001')
        assert video.processing_state == 'retrying'
        assert video.resume_state == 'discovered'
        assert orchestrator.transcriber.calls == 0
        assert count_rows(orchestrator.session_factory, Artifact, kind='transcript') == 0

    def test_corrupted_audio_is_refetched_on_retry(self, orchestrator, video_info):
        """After a checksum failure the audio is downloaded and stored again."""
        orchestrator.discover_video(video_info)
        advance_to(orchestrator, 'vid-001', 'transcribe')
        key = orchestrator.keys.key_for(orchestrator.get_video('vid-001'), ArtifactKind.AUDIO)
        orchestrator.store.blobs[key] = b'garbage'
        orchestrator.run_stage('vid-001', 'transcribe', now=T0)

        later = T0 + timedelta(hours=1)
        orchestrator.schedule_pass(later)
        result = orchestrator.process_video('vid-001', now=later)

        assert result['state'] == 'indexed'
        assert orchestrator.audio_source.calls == 2
        assert count_rows(orchestrator.session_factory, Artifact, kind='audio') == 1

    def test_store_that_alters_bytes_fails_upload(self, session_factory, test_config, sample_audio, video_info):
        """A read-back mismatch leaves no audio artifact row."""
        orchestrator = PipelineOrchestrator(
            session_factory, CorruptingStore(),
            audio_source=FakeAudioSource(sample_audio),
            transcriber=FakeTranscriber(SAMPLE_WORDS),
            embedder=FakeEmbedder(),
            config=test_config,
        )
        orchestrator.discover_video(video_info)
        orchestrator.run_stage('vid-001', 'download', now=T0)

        result = orchestrator.run_stage('vid-001', 'upload', now=T0)

        assert result['error_code'] == 'checksum_mismatch'
        assert orchestrator.get_video('vid-001').resume_state == 'audio_downloaded'
        assert count_rows(session_factory, Artifact) == 0

    def test_tampered_staging_file_rewinds_to_download(self, orchestrator, video_info):
        """A staged file that changed since download sends the video back to discovered."""
        orchestrator.discover_video(video_info)
        orchestrator.run_stage('vid-001', 'download', now=T0)
        (orchestrator.staging_dir / 'vid-001' / 'audio.bin').write_bytes(b'tampered')

        orchestrator.run_stage('vid-001', 'upload', now=T0)

        video = orchestrator.get_video('vid-001')
        assert video.resume_state == 'discovered'
        assert video.last_error_code == 'checksum_mismatch'


class TestForceReprocess:
    """Tests for process_video(force=True)."""

    def test_force_rebuilds_derived_rows_from_stored_artifacts(self, orchestrator, video_info):
        """Forced reprocessing re-scores and re-indexes without fetching or transcribing."""
        orchestrator.discover_video(video_info)
        orchestrator.process_video('vid-001')
        embed_calls = orchestrator.embedder.calls

        result = orchestrator.process_video('vid-001', force=True)

        assert result['state'] == 'indexed'
        statuses = {s['stage']: s['status'] for s in result['stages']}
        assert statuses['download'] == 'skipped'
        assert statuses['upload'] == 'skipped'
        assert statuses['transcribe'] == 'skipped'
        assert statuses['score'] == 'completed'
        assert orchestrator.audio_source.calls == 1
        assert orchestrator.transcriber.calls == 1

        sf = orchestrator.session_factory
        assert count_rows(sf, Segment) == 2
        assert count_rows(sf, ProsodyFeatures) == 2
        assert count_rows(sf, Embedding) == 2
        assert count_rows(sf, Artifact) == 3
        assert orchestrator.embedder.calls == embed_calls * 2


class TestStaleClaims:
    """Tests for recovery of abandoned in-flight claims."""

    def test_expired_claim_becomes_retry(self, orchestrator, video_info):
        """A claim older than the timeout is recorded as a transient failure."""
        orchestrator.discover_video(video_info)
        orchestrator.claim('vid-001', 'download', 'crashed-worker', T0)

        assert orchestrator.schedule_pass(T0 + timedelta(seconds=300)) == []
        assert orchestrator.get_state('vid-001').value == 'audio_downloading'

        orchestrator.schedule_pass(T0 + timedelta(seconds=601))

        video = orchestrator.get_video('vid-001')
        assert video.processing_state == 'retrying'
        assert video.last_error_code == 'stale_claim'
        assert video.attempt_count == 1
        assert video.claimed_by is None


class TestRetire:
    """Tests for retire_video."""

    def test_retired_video_is_never_scheduled(self, orchestrator, video_info):
        """Retired videos drop out of scheduling and stage runs."""
        orchestrator.discover_video(video_info)
        assert orchestrator.retire_video('vid-001', 'deleted upstream', now=T0) is True

        assert orchestrator.schedule_pass(T0) == []
        assert orchestrator.run_stage('vid-001', 'download', now=T0)['status'] == 'noop'
        assert orchestrator.get_video('vid-001').retired_at is not None

    def test_retiring_in_flight_video_discards_stage(self, orchestrator, video_info):
        """A stage whose video was retired mid-flight commits nothing."""
        def retire_during_fetch(video):
            orchestrator.retire_video(video.video_id, 'takedown', now=T0)

        orchestrator.discover_video(video_info)
        orchestrator.audio_source.on_fetch = retire_during_fetch

        result = orchestrator.run_stage('vid-001', 'download', now=T0)

        assert result['status'] == 'noop'
        video = orchestrator.get_video('vid-001')
        assert video.processing_state == 'retired'
        assert video.staged_audio_checksum is None


class TestInvalidateEmbeddings:
    """Tests for embedder version changes."""

    def test_new_model_version_reindexes(self, orchestrator, video_info):
        """Videos lacking the new version go back to the index stage."""
        orchestrator.discover_video(video_info)
        orchestrator.process_video('vid-001')

        orchestrator.embedder = FakeEmbedder(model_version='hash-bow-v2')
        assert orchestrator.invalidate_embeddings('hash-bow-v2', now=T0) == 1
        assert orchestrator.get_state('vid-001').value == 'segmented_and_scored'
        assert count_rows(orchestrator.session_factory, Embedding) == 0

        result = orchestrator.run_stage('vid-001', 'index', now=T0)

        assert result['status'] == 'completed'
        assert count_rows(orchestrator.session_factory, Embedding, model_version='hash-bow-v2') == 2

    def test_current_version_is_left_alone(self, orchestrator, video_info):
        """Nothing is invalidated when every segment has the version."""
        orchestrator.discover_video(video_info)
        orchestrator.process_video('vid-001')
        assert orchestrator.invalidate_embeddings('hash-bow-v1', now=T0) == 0
        assert orchestrator.get_state('vid-001').value == 'indexed'


class TestSchedulePass:
    """Tests for schedule_pass."""

    def test_lists_one_item_per_runnable_video(self, orchestrator):
        """Each resting video yields its next stage."""
        for i in range(3):
            orchestrator.discover_video(VideoInfo(video_id=f'vid-{i}'))
        orchestrator.run_stage('vid-1', 'download', now=T0)
        orchestrator.retire_video('vid-2', 'gone', now=T0)

        items = orchestrator.schedule_pass(T0)

        assert items == [WorkItem('vid-0', 'download'), WorkItem('vid-1', 'upload')]

    def test_state_counts(self, orchestrator):
        """get_state_counts groups videos by state."""
        for i in range(2):
            orchestrator.discover_video(VideoInfo(video_id=f'vid-{i}'))
        orchestrator.retire_video('vid-1', 'gone', now=T0)
        assert orchestrator.get_state_counts() == {'discovered': 1, 'retired': 1}
