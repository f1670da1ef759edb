"""Scheduled polling sweeps and housekeeping."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from taxii_pipeline.errors import PipelineError
from taxii_pipeline.models import PollResult, SweepSummary
from taxii_pipeline.utils import utcnow

logger = logging.getLogger(__name__)


class PollingScheduler:
    """Polls every due collection once per sweep, a few at a time."""

    def __init__(self, db, poller,
                 batch_size: int = 10,
                 max_concurrency: int = 4,
                 sweep_timeout_seconds: float = 300,
                 keep_sync_jobs: int = 100,
                 stats_window_days: int = 30,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.poller = poller
        self.batch_size = batch_size
        self.max_concurrency = max(1, max_concurrency)
        self.sweep_timeout_seconds = sweep_timeout_seconds
        self.keep_sync_jobs = keep_sync_jobs
        self.stats_window_days = stats_window_days
        self.clock = clock
        self._stop_event = threading.Event()

    @classmethod
    def from_config(cls, config, db, poller) -> 'PollingScheduler':
        return cls(
            db, poller,
            batch_size=config.get('polling.batch_size', 10),
            max_concurrency=config.get('polling.max_concurrency', 4),
            sweep_timeout_seconds=config.get('polling.sweep_timeout_seconds', 300),
            keep_sync_jobs=config.get('housekeeping.keep_sync_jobs', 100),
            stats_window_days=config.get('housekeeping.stats_window_days', 30),
        )

    def stop(self):
        """Skip polls that have not started yet; running polls finish."""
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def poll_due_collections(self) -> SweepSummary:
        """
        Poll the collections that are due, oldest next_poll_at first.

        A failing collection never fails the sweep; its error is reported
        as "Collection <id>: <message>".
        """
        summary = SweepSummary()

        try:
            due = self.db.get_due_collections(self.clock(), limit=self.batch_size)
        except PipelineError as e:
            logger.error(f"Could not select due collections: {e}")
            summary.errors.append(f"Selection failed: {e}")
            return summary

        if not due:
            logger.info("No collections due for polling")
            return summary

        logger.info(f"Polling {len(due)} due collections (concurrency {self.max_concurrency})")

        executor = ThreadPoolExecutor(max_workers=self.max_concurrency)
        futures = {executor.submit(self._poll_one, state.id): state for state in due}
        try:
            for future in as_completed(futures, timeout=self.sweep_timeout_seconds):
                state = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    summary.errors.append(f"Collection {state.id}: {e}")
                    continue

                if result is None:
                    continue
                summary.collections_polled += 1
                summary.total_objects_fetched += result.objects_fetched
                summary.total_iocs_extracted += result.iocs_extracted
        except FuturesTimeoutError:
            for future, state in futures.items():
                if future.done():
                    continue
                if future.cancel():
                    summary.errors.append(f"Collection {state.id}: not started before sweep timeout")
                else:
                    summary.errors.append(
                        f"Collection {state.id}: timed out after {self.sweep_timeout_seconds}s")
            logger.warning(f"Sweep timed out after {self.sweep_timeout_seconds}s")
        finally:
            executor.shutdown(wait=False)

        logger.info(
            f"Sweep complete: {summary.collections_polled} polled, "
            f"{summary.total_objects_fetched} objects, {summary.total_iocs_extracted} IOCs, "
            f"{len(summary.errors)} errors"
        )
        return summary

    def _poll_one(self, collection_state_id: int) -> Optional[PollResult]:
        if self._stop_event.is_set():
            logger.info(f"Scheduler stopped, skipping collection {collection_state_id}")
            return None
        return self.poller.poll_collection(collection_state_id)

    def run_housekeeping(self) -> Dict[str, Any]:
        """Trim sync job history and refresh statistics; never raises."""
        results = {}

        try:
            deleted = self.db.cleanup_old_sync_jobs(keep=self.keep_sync_jobs)
            results['cleanup_old_sync_jobs'] = {'success': True, 'deleted': deleted}
            logger.info(f"Deleted {deleted} old sync jobs")
        except Exception as e:
            logger.error(f"Sync job cleanup failed: {e}")
            results['cleanup_old_sync_jobs'] = {'success': False, 'error': str(e)}

        try:
            stats = self.db.update_sync_statistics(window_days=self.stats_window_days,
                                                   now=self.clock())
            results['update_sync_statistics'] = {'success': True, 'collections': len(stats)}
        except Exception as e:
            logger.error(f"Sync statistics update failed: {e}")
            results['update_sync_statistics'] = {'success': False, 'error': str(e)}

        return results

    def run(self) -> Dict[str, Any]:
        """One scheduled tick: poll due collections, then housekeeping."""
        summary = self.poll_due_collections()
        housekeeping = self.run_housekeeping()
        return {
            'polling': summary.to_dict(),
            'housekeeping': housekeeping,
        }
