"""Bounded-concurrency batch execution with per-item error capture.

Items are split into chunks of ``chunk_size``.  Chunks run one after
another; within a chunk at most ``max_workers`` threads call the worker.
That bounds the number of open file handles and database connections no
matter how large the batch is.

A failing item never aborts the batch: its slot in ``results`` receives
``fallback(item)`` and the ``(item, exception)`` pair is recorded in
``errors``.  ``results`` is always index-aligned with the input.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_CHUNK_SIZE = 20
DEFAULT_MAX_WORKERS = 4


@dataclass
class ChunkOutcome(Generic[T, R]):
    """Batch result: one entry per input in ``results``, failures in ``errors``."""

    results: list[R] = field(default_factory=list)
    errors: list[tuple[T, BaseException]] = field(default_factory=list)


def chunk_run(
    items: Sequence[T],
    worker: Callable[[T], R],
    fallback: Callable[[T], R],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> ChunkOutcome[T, R]:
    """Run *worker* over *items* with bounded concurrency.

    Args:
        items: Inputs; order is preserved in the outcome's ``results``.
        worker: Called once per item, possibly on a worker thread.
        fallback: Produces the substitute result for a failed item.
            If the fallback itself raises, the original item is used.
        chunk_size: Items per chunk (>= 1).
        max_workers: Concurrent workers inside a chunk (>= 1).

    Returns:
        :class:`ChunkOutcome` with ``len(results) == len(items)``.
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
    if max_workers < 1:
        raise ValueError(f"max_workers must be >= 1, got {max_workers}")

    outcome: ChunkOutcome[T, R] = ChunkOutcome()
    if not items:
        return outcome

    results: list[R | None] = [None] * len(items)

    with ThreadPoolExecutor(max_workers=min(max_workers, chunk_size)) as executor:
        for start in range(0, len(items), chunk_size):
            chunk = items[start : start + chunk_size]
            futures = [executor.submit(worker, item) for item in chunk]
            for offset, future in enumerate(futures):
                item = chunk[offset]
                try:
                    results[start + offset] = future.result()
                except Exception as exc:
                    outcome.errors.append((item, exc))
                    results[start + offset] = _safe_fallback(fallback, item)

    outcome.results = results  # type: ignore[assignment]
    return outcome


def _safe_fallback(fallback: Callable[[T], R], item: T) -> R:
    try:
        return fallback(item)
    except Exception:
        logger.exception("Fallback failed; keeping the original item")
        return item  # type: ignore[return-value]
