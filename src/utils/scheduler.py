"""Bounded-concurrency batch scheduler for provider requests."""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, NamedTuple, Sequence, TypeVar

from src.config import SETTINGS
from src.utils.logger import setup_logger

logger = setup_logger("scheduler")

T = TypeVar("T")
R = TypeVar("R")


class Settled(NamedTuple):
    """Outcome of one item: exactly one of ``result`` / ``error`` is meaningful."""

    item: Any
    result: Any
    error: BaseException | None

    @property
    def ok(self) -> bool:
        return self.error is None


class BatchScheduler:
    """Run a callable over items in fixed-size batches.

    Items inside a batch run concurrently on a thread pool (I/O overlap);
    batches run one after another with ``delay_seconds`` between them and no
    pause after the last batch.  *sleep* is injectable so tests can record
    pauses without waiting.
    """

    def __init__(
        self,
        batch_size: int = 5,
        delay_seconds: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int | None = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.batch_size = batch_size
        self.delay_seconds = max(0.0, float(delay_seconds))
        self.max_workers = max_workers or batch_size
        self._sleep = sleep

    @classmethod
    def from_settings(cls, name: str, sleep: Callable[[float], None] = time.sleep) -> BatchScheduler:
        conf = SETTINGS.get("scheduler", {})
        entry = conf.get(name) or conf.get("default") or {}
        return cls(
            batch_size=int(entry.get("batch_size", 5)),
            delay_seconds=float(entry.get("delay_seconds", 0.2)),
            sleep=sleep,
        )

    def batches(self, items: Sequence[T]) -> list[list[T]]:
        return [list(items[i:i + self.batch_size]) for i in range(0, len(items), self.batch_size)]

    def _run(self, fn: Callable[[T], R], items: Sequence[T], capture: bool) -> list:
        batches = self.batches(items)
        out: list = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            for n, batch in enumerate(batches):
                futures = [pool.submit(fn, item) for item in batch]
                for item, fut in zip(batch, futures):
                    if not capture:
                        out.append(fut.result())
                        continue
                    try:
                        out.append(Settled(item, fut.result(), None))
                    except Exception as exc:
                        logger.warning("Request failed for %s: %s", item, exc)
                        out.append(Settled(item, None, exc))
                if n < len(batches) - 1 and self.delay_seconds > 0:
                    self._sleep(self.delay_seconds)
        return out

    def map(self, fn: Callable[[T], R], items: Iterable[T]) -> list[R]:
        """Results in input order; the first exception propagates."""
        return self._run(fn, list(items), capture=False)

    def map_settled(self, fn: Callable[[T], R], items: Iterable[T]) -> list[Settled]:
        """Like :meth:`map` but failures are captured per item."""
        return self._run(fn, list(items), capture=True)
