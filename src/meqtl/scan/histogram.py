"""P-value histograms.

Every tested pair of a category lands in one of a fixed number of
equal-width bins over [0, 1], whether or not it passes the output
threshold. The counts feed the histogram-based FDR estimate and can be
written out for QQ/histogram plots.
"""

from __future__ import annotations

import threading
from pathlib import Path

import numpy as np


class PvalueHistogram:
    """Thread-safe counts of p-values in equal-width bins over [0, 1].

    Args:
        n_bins: Number of bins (positive).

    Example:
        >>> hist = PvalueHistogram(10)
        >>> hist.add(np.array([0.01, 0.5, 0.99]))
        >>> hist.total
        3
    """

    def __init__(self, n_bins: int = 100):
        if n_bins <= 0:
            raise ValueError(f"n_bins must be positive, got {n_bins}")
        self.n_bins = n_bins
        self.counts = np.zeros(n_bins, dtype=np.int64)
        self._lock = threading.Lock()

    @property
    def edges(self) -> np.ndarray:
        """Bin edges, length n_bins + 1."""
        return np.linspace(0.0, 1.0, self.n_bins + 1)

    @property
    def total(self) -> int:
        """Number of p-values counted."""
        return int(self.counts.sum())

    def bin_index(self, pvalues: np.ndarray) -> np.ndarray:
        """Bin of each p-value; p == 1 falls in the last bin."""
        idx = np.floor(np.asarray(pvalues, dtype=np.float64) * self.n_bins)
        return np.clip(idx, 0, self.n_bins - 1).astype(np.int64)

    def add(self, pvalues: np.ndarray) -> None:
        """Count p-values. NaN entries (untestable pairs) are ignored."""
        pvalues = np.asarray(pvalues, dtype=np.float64).reshape(-1)
        pvalues = pvalues[~np.isnan(pvalues)]
        if pvalues.size == 0:
            return
        binned = np.bincount(self.bin_index(pvalues), minlength=self.n_bins)
        with self._lock:
            self.counts += binned

    def merge(self, other: PvalueHistogram) -> None:
        """Add another histogram's counts (e.g. a worker shard) to this one."""
        if other.n_bins != self.n_bins:
            raise ValueError(
                f"Cannot merge histograms with {other.n_bins} and {self.n_bins} bins"
            )
        with self._lock:
            self.counts += other.counts

    def estimated_rank(self, pvalues: np.ndarray) -> np.ndarray:
        """Estimate each p-value's rank among all counted p-values.

        The rank is the count of all earlier bins plus the bin's own count
        scaled by the position of p inside the bin, and never less than 1.
        """
        pvalues = np.asarray(pvalues, dtype=np.float64)
        idx = self.bin_index(pvalues)
        before = np.concatenate([[0], np.cumsum(self.counts)[:-1]])
        width = 1.0 / self.n_bins
        fraction = np.clip((pvalues - idx * width) / width, 0.0, 1.0)
        rank = before[idx] + self.counts[idx] * fraction
        return np.maximum(rank, 1.0)

    def write(self, path: Path) -> Path:
        """Write ``bin_start  bin_end  count`` rows as tab-separated text."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        edges = self.edges
        with open(path, "w") as f:
            f.write("bin_start\tbin_end\tcount\n")
            for i in range(self.n_bins):
                f.write(f"{edges[i]:.6g}\t{edges[i + 1]:.6g}\t{self.counts[i]}\n")
        return path
