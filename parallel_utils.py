"""Partitioned thread-pool mapping for embarrassingly parallel per-gene / per-set work."""

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Tuple, TypeVar
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")


def partition(n_items: int, chunk_size: int) -> List[Tuple[int, int]]:
    """Split ``range(n_items)`` into contiguous (start, stop) chunks."""
    chunk_size = max(1, int(chunk_size))
    return [(start, min(start + chunk_size, n_items)) for start in range(0, n_items, chunk_size)]


def map_partitions(
    func: Callable[[int, int], T],
    n_items: int,
    n_workers: int = 1,
    chunk_size: int = 1000,
) -> List[T]:
    """
    Apply ``func(start, stop)`` to each chunk and return results in chunk order.

    With one worker the chunks run inline. Otherwise they are submitted to a
    ThreadPoolExecutor; each chunk only reads shared inputs, so results are
    simply collected and reordered. The first failing chunk's exception is
    re-raised.
    """
    chunks = partition(n_items, chunk_size)
    if n_workers <= 1 or len(chunks) <= 1:
        return [func(start, stop) for start, stop in chunks]

    results: List = [None] * len(chunks)
    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        futures = {
            executor.submit(func, start, stop): i for i, (start, stop) in enumerate(chunks)
        }
        for future in as_completed(futures):
            results[futures[future]] = future.result()
    logger.debug(f"Processed {n_items} items in {len(chunks)} chunks on {n_workers} workers")
    return results
