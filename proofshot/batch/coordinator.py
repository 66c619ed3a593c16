"""Batched capture execution with staggered starts and per-item retries.

BatchCoordinator splits the work into windows of ``batch_size`` items. Items
in a window start ``intra_batch_stagger_ms`` apart and run concurrently;
windows are separated by ``inter_batch_delay_ms``. Each item is retried
independently with exponential backoff. The output list is always the same
length and order as the input, and a failing item never stops the batch.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

from ..models.capture import CaptureRequest, CaptureResult, FailureKind, RetryPolicy

logger = logging.getLogger(__name__)


T = TypeVar('T')
R = TypeVar('R')

Processor = Callable[[T], Awaitable[R]]
RetryPredicate = Callable[[Optional[R]], bool]
ProgressCallback = Callable[[int, int, T], Any]
FailureFactory = Callable[[T, BaseException], R]


def default_should_retry(result: Any) -> bool:
    """Retry when a result exists and reports failure."""
    if result is None:
        return False
    success = getattr(result, 'success', None)
    if success is None and isinstance(result, dict):
        success = result.get('success')
    return success is False


def default_failure_factory(item: Any, exc: BaseException) -> Any:
    """Convert a processor exception into a failed CaptureResult."""
    if isinstance(item, CaptureRequest):
        return CaptureResult.failed(
            item,
            FailureKind.UNEXPECTED,
            f"{type(exc).__name__}: {exc}",
        )
    return None


class BatchCoordinator(Generic[T, R]):
    """Runs a processor over many items with bounded concurrency and retries."""

    def __init__(
        self,
        processor: Processor,
        policy: Optional[RetryPolicy] = None,
        should_retry: Optional[RetryPredicate] = None,
        on_progress: Optional[ProgressCallback] = None,
        failure_factory: Optional[FailureFactory] = None,
    ):
        """Initialize batch coordinator.

        Args:
            processor: Async callable producing one result per item
            policy: Batching and retry settings (defaults if None)
            should_retry: Decides whether a returned result warrants a retry
            on_progress: Called as (current, total, item) when an item finishes
            failure_factory: Builds the result for an item whose processor
                raised on its final attempt
        """
        self.processor = processor
        self.policy = policy or RetryPolicy()
        self.should_retry = should_retry or default_should_retry
        self.on_progress = on_progress
        self.failure_factory = failure_factory or default_failure_factory

        self._completed = 0
        self._total = 0

    async def run(self, items: Sequence[T]) -> List[Optional[R]]:
        """Process every item.

        Returns:
            Results aligned with ``items`` by index
        """
        items = list(items)
        self._total = len(items)
        self._completed = 0
        results: List[Optional[R]] = [None] * len(items)

        if not items:
            return results

        size = self.policy.batch_size
        windows = [range(start, min(start + size, len(items))) for start in range(0, len(items), size)]
        logger.info(f"Processing {len(items)} item(s) in {len(windows)} batch(es) of up to {size}")

        for window_number, window in enumerate(windows):
            if window_number > 0 and self.policy.inter_batch_delay_ms > 0:
                await self._sleep(self.policy.inter_batch_delay_ms)

            tasks = [
                self._run_staggered(items[index], offset)
                for offset, index in enumerate(window)
            ]
            window_results = await asyncio.gather(*tasks)

            for index, result in zip(window, window_results):
                results[index] = result

        successful = sum(1 for r in results if default_should_retry(r) is False and r is not None)
        logger.info(f"Batch finished: {successful}/{len(items)} successful")
        return results

    async def _run_staggered(self, item: T, offset: int) -> Optional[R]:
        if offset > 0 and self.policy.intra_batch_stagger_ms > 0:
            await self._sleep(offset * self.policy.intra_batch_stagger_ms)

        result = await self.process_with_retry(item)
        self._report_progress(item)
        return result

    async def process_with_retry(self, item: T) -> Optional[R]:
        """Process one item, retrying with exponential backoff.

        Returns:
            The first result not needing a retry, the last result once
            retries are exhausted, or the failure factory's result when the
            final attempt raised
        """
        max_retries = self.policy.max_retries

        for attempt in range(max_retries + 1):
            try:
                result = await self.processor(item)
            except Exception as e:
                logger.warning(f"Attempt {attempt + 1}/{max_retries + 1} raised for {_describe(item)}: {e}")
                if attempt >= max_retries:
                    logger.error(f"All attempts failed for {_describe(item)}: {e}")
                    return self.failure_factory(item, e)
            else:
                if attempt >= max_retries or not self.should_retry(result):
                    return result
                logger.warning(f"Attempt {attempt + 1}/{max_retries + 1} unsuccessful for {_describe(item)}")

            await self._sleep(self.policy.backoff_delay_ms(attempt))

        return None

    def _report_progress(self, item: T) -> None:
        self._completed += 1
        if self.on_progress is None:
            return
        try:
            self.on_progress(self._completed, self._total, item)
        except Exception as e:
            logger.error(f"Error in batch progress callback: {e}")

    async def _sleep(self, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000.0)


def _describe(item: Any) -> str:
    if isinstance(item, CaptureRequest):
        return f"{item.request_id} ({item.url})"
    return repr(item)
