"""
Chunked data-parallel execution over genes (or cell ranges).

Each task reads shared read-only inputs and returns its own output; results
are reassembled in chunk order so the outcome never depends on scheduling.
"""

from __future__ import annotations

import concurrent.futures
import math
from typing import Any, Callable, TypeVar

T = TypeVar("T")


def chunk_ranges(n_items: int, chunk_size: int) -> list[tuple[int, int]]:
    """Split ``range(n_items)`` into contiguous ``(start, stop)`` chunks."""
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
    n_chunks = max(1, math.ceil(n_items / chunk_size))
    return [
        (i * chunk_size, min((i + 1) * chunk_size, n_items))
        for i in range(n_chunks)
        if i * chunk_size < n_items or (i == 0 and n_items == 0)
    ]


def run_chunked(
    func: Callable[[int, int], T],
    n_items: int,
    chunk_size: int,
    n_workers: int = 1,
) -> list[T]:
    """
    Apply ``func(start, stop)`` to every chunk, optionally on a thread pool.

    Args:
        func: Work function for one chunk.
        n_items: Total number of items.
        chunk_size: Items per chunk.
        n_workers: Worker threads (1 = run inline).

    Returns:
        Chunk results in chunk order.
    """
    ranges = chunk_ranges(n_items, chunk_size)

    if n_workers <= 1 or len(ranges) == 1:
        return [func(start, stop) for start, stop in ranges]

    results: dict[int, Any] = {}
    with concurrent.futures.ThreadPoolExecutor(max_workers=min(n_workers, len(ranges))) as executor:
        futures = {
            executor.submit(func, start, stop): i
            for i, (start, stop) in enumerate(ranges)
        }
        for future in concurrent.futures.as_completed(futures):
            results[futures[future]] = future.result()

    return [results[i] for i in range(len(ranges))]
