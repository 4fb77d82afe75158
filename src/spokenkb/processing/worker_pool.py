"""
Worker Pool - runs schedulable stages concurrently.

Each pass asks the orchestrator for runnable (video, stage) pairs and hands
them to a thread pool. Workers are interchangeable: exclusivity per video is
enforced by the orchestrator's claim, so two workers handed the same video
simply result in one completed stage and one no-op.
"""
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Any, Dict, List, Optional

from spokenkb.utils.config import get_pipeline_config
from spokenkb.utils.logger import get_worker_name, setup_worker_logger
from .orchestrator import PipelineOrchestrator, WorkItem

logger = setup_worker_logger('worker_pool')


class WorkerPool:
    """Thread pool draining the orchestrator's schedule."""

    def __init__(self, orchestrator: PipelineOrchestrator, workers: Optional[int] = None,
                 poll_interval: Optional[float] = None):
        pipeline_config = get_pipeline_config(orchestrator.config)
        self.orchestrator = orchestrator
        self.workers = int(workers or pipeline_config.get('workers', 4))
        self.poll_interval = float(poll_interval if poll_interval is not None
                                   else pipeline_config.get('poll_interval_seconds', 30))
        self.worker_name = get_worker_name()
        self.stats = {'completed': 0, 'skipped': 0, 'noop': 0, 'failed': 0, 'errors': 0}
        self._stats_lock = threading.Lock()

    def _worker_id(self) -> str:
        return f"{self.worker_name}:{threading.current_thread().name}"

    def _run_item(self, item: WorkItem, now: Optional[datetime]) -> Dict[str, Any]:
        return self.orchestrator.run_stage(item.video_id, item.stage, self._worker_id(), now)

    def run_once(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """One schedule pass; returns the per-item results once all have finished."""
        items = self.orchestrator.schedule_pass(now, limit=limit)
        if not items:
            return []

        logger.info(f"Dispatching {len(items)} item(s) to {self.workers} worker(s)")
        results = []
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix='stage') as executor:
            futures = {executor.submit(self._run_item, item, now): item for item in items}
            for future in as_completed(futures):
                item = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    # run_stage records stage errors itself; this is a database outage or a bug
                    logger.error(f"{item.stage} for {item.video_id} raised: {e}", exc_info=True)
                    result = {'status': 'error', 'stage': item.stage, 'error_message': str(e)}
                result['video_id'] = item.video_id
                results.append(result)
                self._count(result['status'])
        return results

    def _count(self, status: str) -> None:
        key = status if status in self.stats else 'errors'
        with self._stats_lock:
            self.stats[key] += 1

    def run_forever(self, stop_event: threading.Event) -> None:
        """Poll until stop_event is set. Sleeps only when a pass found no work."""
        logger.info(f"Worker pool started: {self.workers} worker(s), poll every {self.poll_interval}s")
        while not stop_event.is_set():
            try:
                results = self.run_once()
            except Exception as e:
                logger.error(f"Schedule pass failed: {e}", exc_info=True)
                results = []
            if not results:
                stop_event.wait(self.poll_interval)
        logger.info(f"Worker pool stopped: {self.stats}")
