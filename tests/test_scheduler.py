"""Tests for src.utils.scheduler -- batching, pacing and failure capture."""

import threading
from unittest.mock import MagicMock

import pytest

from src.utils.scheduler import BatchScheduler, Settled


class TestBatching:

    def test_batches_fixed_size(self):
        sched = BatchScheduler(batch_size=3, sleep=MagicMock())
        assert sched.batches(list(range(7))) == [[0, 1, 2], [3, 4, 5], [6]]

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            BatchScheduler(batch_size=0)

    def test_map_preserves_order(self):
        sched = BatchScheduler(batch_size=2, sleep=MagicMock())
        assert sched.map(lambda x: x * 10, [3, 1, 2]) == [30, 10, 20]


class TestPacing:

    def test_sleeps_between_batches_only(self):
        sleep = MagicMock()
        sched = BatchScheduler(batch_size=2, delay_seconds=0.5, sleep=sleep)
        sched.map(lambda x: x, range(5))
        assert sleep.call_count == 2
        sleep.assert_called_with(0.5)

    def test_single_batch_no_sleep(self):
        sleep = MagicMock()
        BatchScheduler(batch_size=5, delay_seconds=1.0, sleep=sleep).map(lambda x: x, [1, 2])
        sleep.assert_not_called()

    def test_zero_delay_no_sleep(self):
        sleep = MagicMock()
        BatchScheduler(batch_size=1, delay_seconds=0.0, sleep=sleep).map(lambda x: x, [1, 2, 3])
        sleep.assert_not_called()

    def test_at_most_batch_size_in_flight(self):
        lock = threading.Lock()
        state = {"active": 0, "peak": 0}

        def work(x):
            with lock:
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
            with lock:
                state["active"] -= 1
            return x

        BatchScheduler(batch_size=3, sleep=MagicMock()).map(work, range(10))
        assert state["peak"] <= 3

    def test_from_settings(self):
        sched = BatchScheduler.from_settings("factor", sleep=MagicMock())
        assert sched.batch_size == 4
        assert sched.delay_seconds == pytest.approx(0.3)

    def test_from_settings_unknown_uses_default(self):
        sched = BatchScheduler.from_settings("nope", sleep=MagicMock())
        assert sched.batch_size == 5


class TestFailures:

    def _flaky(self, x):
        if x == 2:
            raise ConnectionError("boom")
        return x

    def test_map_propagates(self):
        with pytest.raises(ConnectionError):
            BatchScheduler(batch_size=2, sleep=MagicMock()).map(self._flaky, [1, 2, 3])

    def test_map_settled_captures(self):
        out = BatchScheduler(batch_size=2, sleep=MagicMock()).map_settled(self._flaky, [1, 2, 3])
        assert [s.ok for s in out] == [True, False, True]
        assert out[0] == Settled(1, 1, None)
        assert isinstance(out[1].error, ConnectionError)
        assert out[1].result is None
