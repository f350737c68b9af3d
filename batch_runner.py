import concurrent.futures
import logging
import time
from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class BatchOutcome(Generic[T, R]):
    """Result of one work item: either a result or the exception it raised."""
    index: int
    item: T
    result: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ConcurrentBatchRunner:
    """Runs work items in sliding windows of at most `max_workers` concurrent operations.

    Items [0, W) are dispatched together and awaited together, then [W, 2W), and so on.
    A failing item never cancels its siblings; failures are returned to the caller as
    outcomes so each call site can decide whether to abort or keep partial results.
    """

    def __init__(self, max_workers: int, name: str = "batch"):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = max_workers
        self.name = name
        self.executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=f"{name}-runner"
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()

    def shutdown(self):
        self.executor.shutdown(wait=True)

    def run(self,
            items: Sequence[T],
            operation: Callable[[T], R],
            on_window_complete: Optional[Callable[[List[BatchOutcome[T, R]]], None]] = None
            ) -> List[BatchOutcome[T, R]]:
        """Execute `operation` over `items`; outcomes come back in input order."""
        outcomes: List[BatchOutcome[T, R]] = []
        total_windows = (len(items) + self.max_workers - 1) // self.max_workers

        for window_start in range(0, len(items), self.max_workers):
            window = items[window_start:window_start + self.max_workers]
            window_num = window_start // self.max_workers + 1
            started = time.time()

            futures = [self.executor.submit(operation, item) for item in window]
            concurrent.futures.wait(futures)

            window_outcomes = []
            for offset, (item, future) in enumerate(zip(window, futures)):
                outcome = BatchOutcome(index=window_start + offset, item=item)
                error = future.exception()
                if error is not None:
                    outcome.error = error
                else:
                    outcome.result = future.result()
                window_outcomes.append(outcome)

            failed = sum(1 for o in window_outcomes if not o.ok)
            logger.info(f"[{self.name}] Window {window_num}/{total_windows}: "
                        f"{len(window)} items in {(time.time() - started) * 1000:.0f}ms"
                        + (f", {failed} failed" if failed else ""))

            outcomes.extend(window_outcomes)
            if on_window_complete:
                on_window_complete(window_outcomes)

        return outcomes
