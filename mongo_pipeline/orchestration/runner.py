"""
Cooperative run loops for extractor and merger tasks.
"""
import signal
import threading
from typing import Iterable, List, Optional

from mongo_pipeline.interfaces.base import PutResult, SinkRecord
from mongo_pipeline.orchestration.tasks import ExtractorTask, MergerTask, RecordPublisher
from mongo_pipeline.utils.logging import get_logger


logger = get_logger(__name__)


def install_signal_handlers(stop_event: threading.Event) -> None:
    """Set ``stop_event`` on SIGINT/SIGTERM. Must be called from the main thread."""
    def _handle(signum, frame):
        logger.info("Shutdown signal received", signal_number=signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


class TaskRunner:
    """Drives a task until the shutdown event is set."""

    def __init__(self, stop_event: Optional[threading.Event] = None):
        self.stop_event = stop_event or threading.Event()

    def run_extractor(self, task: ExtractorTask, publish: RecordPublisher,
                      max_polls: Optional[int] = None) -> int:
        """
        Poll until shutdown (or ``max_polls``), returning the number of
        records published. The task's own self-pacing sleep is interrupted
        by the same event.
        """
        task.stop_event = self.stop_event
        published = 0
        polls = 0

        with task:
            while not self.stop_event.is_set():
                if max_polls is not None and polls >= max_polls:
                    break
                published += task.run_once(publish)
                polls += 1

        logger.info("Extractor loop finished", polls=polls, published=published)
        return published

    def run_merger(self, task: MergerTask, batches: Iterable[List[SinkRecord]]) -> PutResult:
        """Apply batches until the source is exhausted or shutdown is requested."""
        total = PutResult()

        with task:
            for batch in batches:
                if self.stop_event.is_set():
                    break
                result = task.put(batch)
                total.applied += result.applied
                total.deleted += result.deleted
                total.skipped += result.skipped
                total.stale += result.stale
                total.execution_time += result.execution_time
                total.errors.extend(result.errors)

        logger.info("Merger loop finished", applied=total.applied, deleted=total.deleted,
                    skipped=total.skipped, stale=total.stale)
        return total

    def stop(self) -> None:
        self.stop_event.set()
