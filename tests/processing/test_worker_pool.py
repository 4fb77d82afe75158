"""
Tests for WorkerPool.
"""

import threading

from conftest import T0
from spokenkb.interfaces import VideoInfo
from spokenkb.processing.worker_pool import WorkerPool


class TestWorkerPool:
    """Tests for WorkerPool."""

    def test_passes_drive_videos_to_indexed(self, orchestrator):
        """Repeated passes run one stage per video until all are indexed."""
        for i in range(3):
            orchestrator.discover_video(VideoInfo(video_id=f'vid-{i}', publish_date=T0))
        pool = WorkerPool(orchestrator)

        for _ in range(5):
            results = pool.run_once(now=T0)
            assert {r['status'] for r in results} <= {'completed', 'skipped'}

        assert orchestrator.get_state_counts() == {'indexed': 3}
        assert pool.run_once(now=T0) == []
        assert pool.stats['completed'] == 15

    def test_results_name_their_video(self, orchestrator):
        """Each result carries the video it belongs to."""
        orchestrator.discover_video(VideoInfo(video_id='vid-a'))
        results = WorkerPool(orchestrator, workers=1).run_once(now=T0)
        assert results[0]['video_id'] == 'vid-a'
        assert results[0]['stage'] == 'download'

    def test_settings_from_config(self, orchestrator):
        """Worker count and poll interval come from the pipeline section."""
        pool = WorkerPool(orchestrator)
        assert pool.workers == 2
        assert pool.poll_interval == 0.01

    def test_run_forever_stops_on_event(self, orchestrator):
        """run_forever exits once the stop event is set."""
        pool = WorkerPool(orchestrator, poll_interval=0.01)
        stop = threading.Event()
        thread = threading.Thread(target=pool.run_forever, args=(stop,))
        thread.start()
        stop.set()
        thread.join(timeout=5)
        assert not thread.is_alive()
