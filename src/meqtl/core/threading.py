"""BLAS thread management for the block matrix products.

The engine has two levels of parallelism: chunk-pair evaluations on a
worker thread pool, and the BLAS library used by each numpy matmul. Both
draw from the same cores, so the BLAS pool is shrunk as workers are added.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import contextmanager

import psutil
from loguru import logger
from threadpoolctl import threadpool_limits


def get_blas_thread_count() -> int:
    """Determine the number of BLAS threads to use for numpy operations.

    Priority:
    1. MEQTL_BLAS_THREADS env var (explicit override for benchmarking)
    2. Physical core count via psutil (avoids hyperthreading oversubscription)

    Returns:
        Positive integer thread count, capped at os.cpu_count().
    """
    max_threads = os.cpu_count() or 64

    env_override = os.environ.get("MEQTL_BLAS_THREADS")
    if env_override is not None:
        try:
            n = int(env_override)
        except ValueError:
            logger.warning(
                f"MEQTL_BLAS_THREADS={env_override!r} is not a valid integer, "
                "falling back to physical core count"
            )
        else:
            n = max(1, min(n, max_threads))
            logger.debug(f"BLAS threads from MEQTL_BLAS_THREADS: {n}")
            return n

    n = psutil.cpu_count(logical=False) or max_threads
    n = max(1, min(n, max_threads))
    logger.debug(f"BLAS threads from physical core count: {n}")
    return n


def blas_threads_per_worker(workers: int) -> int:
    """Share the BLAS thread budget between chunk-pair workers.

    Args:
        workers: Number of worker threads evaluating chunk pairs concurrently.

    Returns:
        BLAS threads each worker may use (at least 1).
    """
    return max(1, get_blas_thread_count() // max(1, workers))


@contextmanager
def blas_threads(n_threads: int | None = None) -> Generator[None, None, None]:
    """Context manager for scoped BLAS thread control.

    Args:
        n_threads: Number of BLAS threads. None uses get_blas_thread_count().

    Example:
        >>> with blas_threads(8):
        ...     r = variants @ traits.T
    """
    if n_threads is None:
        n_threads = get_blas_thread_count()

    with threadpool_limits(limits=n_threads, user_api="blas"):
        yield
