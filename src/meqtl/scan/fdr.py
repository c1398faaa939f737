"""Benjamini-Hochberg q-values for thresholded scans.

Only pairs passing the output threshold are kept, but the correction
must account for every tested pair. Two correctors are available:

- ExactFdr keeps the accepted p-values and ranks them exactly. Accepted
  pairs are the smallest p-values of the category, so their ranks among
  accepted pairs are their ranks among all tested pairs.
- HistogramFdr keeps nothing beyond the category histogram and estimates
  ranks from the cumulative bin counts, interpolating within a bin.

Both give q = min(1, p * n_tested / rank) with q >= p.
"""

from __future__ import annotations

import threading

import numpy as np

from meqtl.scan.histogram import PvalueHistogram


class FdrCorrector:
    """Interface: observe accepted p-values, finalize, then look up q-values."""

    name = "base"

    def __init__(self):
        self.n_tested = 0
        self._finalized = False

    def observe(self, pvalues: np.ndarray) -> None:
        """Record p-values of pairs that passed the threshold."""

    def finalize(self, n_tested: int, histogram: PvalueHistogram) -> None:
        self.n_tested = n_tested
        self._finalized = True

    def qvalues(self, pvalues: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def _check_finalized(self) -> None:
        if not self._finalized:
            raise RuntimeError(f"{self.name} FDR corrector used before finalize()")


class ExactFdr(FdrCorrector):
    """Step-up BH from exact ranks of the retained accepted p-values."""

    name = "exact"

    def __init__(self):
        super().__init__()
        self._chunks: list[np.ndarray] = []
        self._lock = threading.Lock()
        self._sorted = np.empty(0)
        self._q = np.empty(0)

    def observe(self, pvalues: np.ndarray) -> None:
        pvalues = np.asarray(pvalues, dtype=np.float64).reshape(-1)
        if pvalues.size:
            with self._lock:
                self._chunks.append(pvalues.copy())

    def finalize(self, n_tested: int, histogram: PvalueHistogram) -> None:
        super().finalize(n_tested, histogram)
        with self._lock:
            accepted = np.concatenate(self._chunks) if self._chunks else np.empty(0)
            self._chunks = []
        self._sorted = np.sort(accepted)
        if self._sorted.size == 0:
            self._q = np.empty(0)
            return
        n = max(n_tested, self._sorted.size)
        ranks = np.arange(1, self._sorted.size + 1, dtype=np.float64)
        q = self._sorted * n / ranks
        # Step-up: q_i = min over j >= i
        q = np.minimum.accumulate(q[::-1])[::-1]
        self._q = np.clip(q, self._sorted, 1.0)

    def qvalues(self, pvalues: np.ndarray) -> np.ndarray:
        self._check_finalized()
        pvalues = np.asarray(pvalues, dtype=np.float64)
        if self._sorted.size == 0:
            return np.full(pvalues.shape, np.nan)
        # Tied p-values share the q-value of the last tie
        idx = np.searchsorted(self._sorted, pvalues, side="right") - 1
        idx = np.clip(idx, 0, self._sorted.size - 1)
        return np.maximum(self._q[idx], pvalues)


class HistogramFdr(FdrCorrector):
    """BH with ranks estimated from the category's p-value histogram."""

    name = "histogram"

    def __init__(self):
        super().__init__()
        self._histogram: PvalueHistogram | None = None

    def finalize(self, n_tested: int, histogram: PvalueHistogram) -> None:
        super().finalize(n_tested, histogram)
        self._histogram = histogram

    def qvalues(self, pvalues: np.ndarray) -> np.ndarray:
        self._check_finalized()
        pvalues = np.asarray(pvalues, dtype=np.float64)
        rank = self._histogram.estimated_rank(pvalues)
        n = max(self.n_tested, 1)
        q = pvalues * n / rank
        return np.clip(q, pvalues, 1.0)


def make_fdr_corrector(exact: bool) -> FdrCorrector:
    """ExactFdr when exact is set, HistogramFdr otherwise."""
    return ExactFdr() if exact else HistogramFdr()
