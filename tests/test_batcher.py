"""Tests for the upload batcher."""

import threading
import time

import pytest

from grifo_sync.sync.batcher import ItemResult, chunk, run_batches


def succeed(item):
    return ItemResult(item=item, success=True, value=item * 10)


class TestChunk:
    """Tests for chunk()."""

    def test_splits_in_order(self):
        assert list(chunk([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]

    def test_empty(self):
        assert list(chunk([], 3)) == []

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            list(chunk([1], 0))


class TestRunBatches:
    """Tests for run_batches()."""

    def test_empty_input(self):
        """Test that no items means no batches and no callbacks."""
        starts = []

        summary = run_batches([], 3, succeed, on_batch_start=lambda *a: starts.append(a))

        assert summary.total == 0
        assert summary.batches == 0
        assert starts == []

    def test_all_items_processed(self):
        """Test that every item gets exactly one result."""
        summary = run_batches(list(range(7)), 3, succeed)

        assert summary.batches == 3
        assert summary.succeeded == 7
        assert sorted(r.value for r in summary.results) == [i * 10 for i in range(7)]

    def test_failure_does_not_cancel_siblings(self):
        """Test partial failure isolation inside a batch."""

        def per_item(item):
            if item == 3:
                raise RuntimeError("item 3 exploded")
            return succeed(item)

        summary = run_batches([1, 2, 3, 4, 5], 5, per_item)

        assert summary.succeeded == 4
        assert summary.failed == 1
        assert summary.errors == ["item 3 exploded"]

    def test_batches_run_sequentially(self):
        """Test that batch N+1 starts only after batch N settled."""
        events = []
        lock = threading.Lock()

        def per_item(item):
            with lock:
                events.append(("start", item))
            time.sleep(0.01)
            with lock:
                events.append(("end", item))
            return succeed(item)

        run_batches([1, 2, 3, 4], 2, per_item)

        last_end_first_batch = max(
            i for i, e in enumerate(events) if e[0] == "end" and e[1] in (1, 2)
        )
        first_start_second_batch = min(
            i for i, e in enumerate(events) if e[0] == "start" and e[1] in (3, 4)
        )
        assert last_end_first_batch < first_start_second_batch

    def test_items_within_batch_run_concurrently(self):
        """Test that items of one batch overlap in time."""
        barrier = threading.Barrier(3, timeout=5)

        def per_item(item):
            barrier.wait()
            return succeed(item)

        summary = run_batches([1, 2, 3], 3, per_item)

        assert summary.succeeded == 3

    def test_on_result_called_in_caller_thread(self):
        """Test that results are delivered to the calling thread."""
        caller = threading.current_thread()
        seen = []

        run_batches(
            [1, 2, 3],
            2,
            succeed,
            on_result=lambda r: seen.append(threading.current_thread()),
        )

        assert seen == [caller, caller, caller]

    def test_on_batch_start(self):
        """Test batch start notifications."""
        starts = []

        run_batches(
            [1, 2, 3],
            2,
            succeed,
            on_batch_start=lambda index, count, batch: starts.append((index, count, batch)),
        )

        assert starts == [(0, 2, [1, 2]), (1, 2, [3])]
