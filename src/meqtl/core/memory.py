"""Memory estimation and checking for large pairwise scans.

Provides pre-flight memory checks so a scan fails before allocating rather
than being killed by the OOM killer half-way through its output.
"""

from typing import NamedTuple

import psutil
from loguru import logger


class ScanMemoryBreakdown(NamedTuple):
    """Detailed memory breakdown for a streaming scan.

    All values in GB. The prepared trait matrix stays resident for the whole
    scan; variant chunks are loaded one at a time; every worker holds the
    result blocks of one chunk pair.
    """

    traits_gb: float  # n_traits * n_samples * 8 bytes (residualized, normalized)
    variant_chunk_gb: float  # raw + prepared chunk (x slots for categorical)
    block_gb: float  # workers * chunk^2 * 8 bytes * 4 (r, stat, p, effect)
    fdr_retention_gb: float  # expected accepted p-values kept for exact FDR
    total_peak_gb: float
    available_gb: float  # Current available system memory
    sufficient: bool  # Whether available >= total * 1.1


def estimate_scan_memory(
    n_samples: int,
    n_variants: int,
    n_traits: int,
    chunk_size: int = 2_000,
    workers: int = 1,
    slots: int = 1,
    exact_fdr: bool = True,
    pvalue_threshold: float = 1e-5,
    stream_traits: bool = False,
) -> ScanMemoryBreakdown:
    """Estimate memory requirements for a scan.

    The exact-FDR retention term assumes p-values are uniform under the null,
    so the expected number of accepted pairs is n_variants * n_traits *
    pvalue_threshold. Real signal adds to this; the 10% margin is meant for
    sparse signal only.

    Args:
        n_samples: Number of samples.
        n_variants: Number of variant rows.
        n_traits: Number of trait rows.
        chunk_size: Rows per chunk.
        workers: Concurrent chunk-pair evaluations.
        slots: Prepared rows per variant (1 for linear models, number of
            group indicators for the categorical model).
        exact_fdr: Whether accepted p-values are retained.
        pvalue_threshold: Largest output threshold in use.
        stream_traits: Trait chunks are re-read per variant chunk, so only
            the chunks waiting on the workers are resident.

    Returns:
        ScanMemoryBreakdown with component estimates.

    Example:
        >>> est = estimate_scan_memory(500, 1_000_000, 20_000)
        >>> print(f"Peak: {est.total_peak_gb:.1f}GB")
    """
    trait_rows = min(chunk_size, max(n_traits, 1))
    resident_traits = n_traits
    if stream_traits:
        resident_traits = min(n_traits, 2 * workers * trait_rows)
    traits_gb = resident_traits * n_samples * 8 / 1e9
    chunk_rows = min(chunk_size, max(n_variants, 1))
    variant_chunk_gb = chunk_rows * n_samples * 8 * (1 + slots) / 1e9
    block_gb = workers * chunk_rows * trait_rows * 8 * 4 / 1e9

    fdr_retention_gb = 0.0
    if exact_fdr:
        fdr_retention_gb = n_variants * n_traits * pvalue_threshold * 8 / 1e9

    total_peak_gb = traits_gb + variant_chunk_gb + block_gb + fdr_retention_gb

    available_gb = psutil.virtual_memory().available / 1e9
    sufficient = total_peak_gb * 1.1 < available_gb  # 10% safety margin

    return ScanMemoryBreakdown(
        traits_gb=traits_gb,
        variant_chunk_gb=variant_chunk_gb,
        block_gb=block_gb,
        fdr_retention_gb=fdr_retention_gb,
        total_peak_gb=total_peak_gb,
        available_gb=available_gb,
        sufficient=sufficient,
    )


def check_memory_available(
    required_gb: float,
    safety_margin: float = 0.1,
    operation: str = "operation",
) -> bool:
    """Check if sufficient memory is available, raise if not.

    Args:
        required_gb: Memory required in GB.
        safety_margin: Additional margin (0.1 = 10%).
        operation: Description for error message.

    Returns:
        True if sufficient memory available.

    Raises:
        MemoryError: If insufficient memory with detailed message.
    """
    available_gb = psutil.virtual_memory().available / 1e9
    required_with_margin = required_gb * (1 + safety_margin)

    if required_with_margin > available_gb:
        raise MemoryError(
            f"Insufficient memory for {operation}. "
            f"Need {required_gb:.1f}GB (+{safety_margin*100:.0f}% margin = "
            f"{required_with_margin:.1f}GB), but only {available_gb:.1f}GB available. "
            f"Consider a smaller chunk size or fewer workers."
        )

    return True


class MemorySnapshot(NamedTuple):
    """Snapshot of current memory state for debugging. All values in GB."""

    rss_gb: float
    available_gb: float
    total_gb: float
    percent_used: float


def get_memory_snapshot() -> MemorySnapshot:
    """Get current memory usage snapshot."""
    process = psutil.Process()
    vm = psutil.virtual_memory()

    return MemorySnapshot(
        rss_gb=process.memory_info().rss / 1e9,
        available_gb=vm.available / 1e9,
        total_gb=vm.total / 1e9,
        percent_used=((vm.total - vm.available) / vm.total) * 100,
    )


def log_memory_snapshot(label: str = "", level: str = "INFO") -> MemorySnapshot:
    """Log current memory state with optional label.

    Args:
        label: Optional label for this snapshot (e.g., "after_preprocess").
        level: Log level ("DEBUG", "INFO", "WARNING").

    Returns:
        MemorySnapshot for chaining/assertions.
    """
    snap = get_memory_snapshot()
    label_str = f" [{label}]" if label else ""
    logger.log(
        level,
        f"Memory{label_str}: RSS={snap.rss_gb:.1f}GB, "
        f"Available={snap.available_gb:.1f}GB/{snap.total_gb:.1f}GB "
        f"({snap.percent_used:.1f}% used)",
    )
    return snap
