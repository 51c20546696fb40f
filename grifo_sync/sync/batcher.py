"""Upload batcher - sequential batches, concurrent items within a batch."""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterator, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ItemResult(Generic[T]):
    """Outcome of processing one item."""

    item: T
    success: bool
    value: Any = None
    error: Optional[str] = None
    exception: Optional[BaseException] = None


@dataclass
class BatchSummary:
    """Totals for a whole ``run_batches`` call."""

    batches: int = 0
    succeeded: int = 0
    failed: int = 0
    results: list[ItemResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    @property
    def errors(self) -> list[str]:
        return [r.error for r in self.results if not r.success and r.error]


def chunk(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Split ``items`` into consecutive lists of at most ``size`` elements."""
    if size < 1:
        raise ValueError(f"batch size must be >= 1, got {size}")
    for i in range(0, len(items), size):
        yield list(items[i : i + size])


def _run_item(per_item: Callable[[T], ItemResult], item: T) -> ItemResult:
    """Call ``per_item``, turning an escaped exception into a failed result."""
    try:
        return per_item(item)
    except Exception as e:
        logger.exception(f"Unhandled error while processing {item!r}")
        return ItemResult(item=item, success=False, error=str(e) or type(e).__name__, exception=e)


def run_batches(
    items: Sequence[T],
    batch_size: int,
    per_item: Callable[[T], ItemResult],
    on_batch_start: Optional[Callable[[int, int, list[T]], None]] = None,
    on_result: Optional[Callable[[ItemResult], None]] = None,
    max_workers: Optional[int] = None,
) -> BatchSummary:
    """Process ``items`` in batches of ``batch_size``.

    Batch N+1 starts only after every item of batch N has settled. Items of
    one batch run concurrently and a failing item never cancels its
    siblings.

    Args:
        items: Items to process, in order
        batch_size: Maximum items per batch
        per_item: Work for one item, returning an ItemResult
        on_batch_start: Called as (batch_index, batch_count, batch) before a batch
        on_result: Called in the caller's thread as each item settles
        max_workers: Thread cap per batch (defaults to the batch size)

    Returns:
        BatchSummary with every item's result
    """
    batches = list(chunk(items, batch_size))
    summary = BatchSummary()
    if not batches:
        return summary

    workers = max_workers or batch_size
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="grifo-sync") as executor:
        for index, batch in enumerate(batches):
            if on_batch_start:
                on_batch_start(index, len(batches), batch)

            futures = [executor.submit(_run_item, per_item, item) for item in batch]
            for future in as_completed(futures):
                result = future.result()
                summary.results.append(result)
                if result.success:
                    summary.succeeded += 1
                else:
                    summary.failed += 1
                if on_result:
                    on_result(result)

            summary.batches += 1
            logger.debug(
                f"Batch {index + 1}/{len(batches)} done "
                f"({summary.succeeded} ok, {summary.failed} failed so far)"
            )

    return summary
