"""
Adaptive batching for retrieval and generation calls.

A feedback loop sizes batches so that each batch takes about
`target_latency_ms`:
- mean of recent latencies > 110% of target: shrink by 20%
- mean < 90% of target: grow by 20%
- inside the dead band: keep the current size
- processor error: halve immediately and re-raise

Slices of one `process_batch` call run strictly in order, so results keep
input order and each latency sample measures exactly one batch.

Concurrency:
- `current_batch_size` and the latency window are instance state. Two
  concurrent `process_batch` calls on the same instance interleave at their
  awaits and race on that state. Use one batcher per logical stream
  (the runtime gives retrieval and generation their own) or serialize calls.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

BatchProcessor = Callable[[list[T]], Awaitable[Sequence[R]]]


class AdaptiveBatcher:
    """Batch items with a size that tracks a target per-batch latency."""

    def __init__(
        self,
        min_batch_size: int = 1,
        max_batch_size: int = 10,
        target_latency_ms: float = 500.0,
        max_latencies: int = 50,
        name: str = "batcher",
    ):
        if min_batch_size < 1 or max_batch_size < min_batch_size:
            raise ValueError(
                f"Invalid batch bounds: min={min_batch_size}, max={max_batch_size}"
            )
        self.min_batch_size = min_batch_size
        self.max_batch_size = max_batch_size
        self.target_latency_ms = target_latency_ms
        self.name = name
        self._current_batch_size = min_batch_size
        self._latencies: deque[float] = deque(maxlen=max_latencies)

    @property
    def current_batch_size(self) -> int:
        return self._current_batch_size

    @property
    def recent_latencies(self) -> tuple[float, ...]:
        return tuple(self._latencies)

    def average_latency(self) -> float:
        """Mean of the recent latency window in ms (0 when empty)."""
        if not self._latencies:
            return 0.0
        return sum(self._latencies) / len(self._latencies)

    async def process_batch(
        self,
        items: Sequence[T],
        processor: BatchProcessor,
    ) -> list[Any]:
        """
        Run `processor` over consecutive slices of `items`.

        Args:
            items: Work items, processed in order
            processor: Async function taking a slice and returning one result
                list per slice (results are concatenated in order)

        Returns:
            All results in input order

        Raises:
            Whatever `processor` raises; the batch size is halved first and
            no partial results are returned.
        """
        results: list[Any] = []
        i = 0
        while i < len(items):
            size = self._current_batch_size
            batch = list(items[i : i + size])
            started = time.perf_counter()

            try:
                batch_results = await processor(batch)
            except Exception:
                self._current_batch_size = max(
                    self.min_batch_size, math.floor(self._current_batch_size * 0.5)
                )
                logger.exception(
                    "Batch processing failed",
                    extra={
                        "batcher": self.name,
                        "batch_len": len(batch),
                        "new_batch_size": self._current_batch_size,
                        "error_code": "BATCH_ERROR",
                    },
                )
                raise

            results.extend(batch_results)
            self._update_batch_size((time.perf_counter() - started) * 1000)
            i += len(batch)

        return results

    def _update_batch_size(self, latency_ms: float) -> None:
        self._latencies.append(latency_ms)
        avg = self.average_latency()
        previous = self._current_batch_size

        if avg > self.target_latency_ms * 1.1:
            self._current_batch_size = max(
                self.min_batch_size, math.floor(self._current_batch_size * 0.8)
            )
        elif avg < self.target_latency_ms * 0.9:
            self._current_batch_size = min(
                self.max_batch_size, math.floor(self._current_batch_size * 1.2)
            )

        if self._current_batch_size != previous:
            logger.debug(
                "Batch size adjusted",
                extra={
                    "batcher": self.name,
                    "avg_latency_ms": round(avg, 1),
                    "from": previous,
                    "to": self._current_batch_size,
                },
            )
