"""Thresholded association output.

Records passing a category threshold are appended to that category's sink
as soon as their chunk pair is evaluated. q-values need the total number
of tested pairs, so file sinks first spool records at full precision to
``<path>.partial`` and rewrite the final tab-separated file once the FDR
corrector is finalized:

    variant  trait  statistic  pvalue  qvalue  effect_size

Floats in the final file use .6e scientific notation.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from itertools import islice
from pathlib import Path

import numpy as np
from loguru import logger

from meqtl.errors import SinkIOError
from meqtl.scan.fdr import FdrCorrector
from meqtl.scan.histogram import PvalueHistogram
from meqtl.scan.statistics import BlockStatistics

OUTPUT_HEADER = "variant\ttrait\tstatistic\tpvalue\tqvalue\teffect_size"


@dataclass(frozen=True)
class AssociationRecord:
    """One variant-trait pair that passed its category threshold."""

    variant: str
    trait: str
    statistic: float
    pvalue: float
    effect_size: float
    qvalue: float = float("nan")
    category: str = "all"


def format_record_line(record: AssociationRecord) -> str:
    """Format a record as a tab-separated output line (no newline).

    Args:
        record: AssociationRecord instance

    Returns:
        ``variant trait statistic pvalue qvalue effect_size`` with floats
        in .6e notation.
    """
    return _format_line(
        record.variant,
        record.trait,
        record.statistic,
        record.pvalue,
        record.qvalue,
        record.effect_size,
    )


def _format_line(variant, trait, statistic, pvalue, qvalue, effect) -> str:
    return (
        f"{variant}\t{trait}\t{statistic:.6e}\t"
        f"{pvalue:.6e}\t{qvalue:.6e}\t{effect:.6e}"
    )


def parse_record_line(line: str, category: str = "all") -> AssociationRecord:
    """Inverse of format_record_line."""
    variant, trait, stat, p, q, effect = line.rstrip("\r\n").split("\t")
    return AssociationRecord(
        variant=variant,
        trait=trait,
        statistic=float(stat),
        pvalue=float(p),
        effect_size=float(effect),
        qvalue=float(q),
        category=category,
    )


class MemorySink:
    """Collects records in memory; used by the Python API without an outdir."""

    def __init__(self, category: str = "all"):
        self.category = category
        self.path = None
        self.partial_path = None
        self._variants: list[str] = []
        self._traits: list[str] = []
        self._values: list[np.ndarray] = []
        self._lock = threading.Lock()
        self.records: list[AssociationRecord] = []

    def __enter__(self) -> MemorySink:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def count(self) -> int:
        return len(self._variants)

    def write_block(
        self,
        variants: list[str],
        traits: list[str],
        statistic: np.ndarray,
        pvalue: np.ndarray,
        effect: np.ndarray,
    ) -> None:
        """Append aligned 1-D columns of passing pairs."""
        with self._lock:
            self._variants.extend(variants)
            self._traits.extend(traits)
            self._values.append(np.column_stack([statistic, pvalue, effect]))

    def finalize(self, corrector: FdrCorrector) -> list[AssociationRecord]:
        values = np.vstack(self._values) if self._values else np.empty((0, 3))
        qvalues = corrector.qvalues(values[:, 1])
        self.records = [
            AssociationRecord(
                variant=v,
                trait=t,
                statistic=float(row[0]),
                pvalue=float(row[1]),
                effect_size=float(row[2]),
                qvalue=float(q),
                category=self.category,
            )
            for v, t, row, q in zip(
                self._variants, self._traits, values, qvalues, strict=True
            )
        ]
        return self.records

    def close(self) -> None:
        pass


class FileSink:
    """Streams passing records to a spool file, rewritten with q-values.

    Context manager. Writes from several threads are serialized with a lock
    so records never interleave. If the scan fails before finalize(), the
    spool file is left on disk and reported as partial output.

    Example:
        with FileSink(Path("out/result.local.txt"), "local") as sink:
            sink.write_block(variants, traits, stat, p, effect)
            sink.finalize(corrector)
    """

    batch_rows = 100_000

    def __init__(self, path: Path, category: str = "all"):
        self.path = Path(path)
        self.category = category
        self.partial_path = self.path.with_name(self.path.name + ".partial")
        self._file = None
        self._count = 0
        self._lock = threading.Lock()

    def __enter__(self) -> FileSink:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.partial_path, "w")
        except OSError as e:
            raise SinkIOError(
                f"Cannot open output {self.partial_path}: {e}"
            ) from e
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def count(self) -> int:
        """Number of records written."""
        return self._count

    def write_block(
        self,
        variants: list[str],
        traits: list[str],
        statistic: np.ndarray,
        pvalue: np.ndarray,
        effect: np.ndarray,
    ) -> None:
        """Append aligned 1-D columns of passing pairs to the spool.

        Raises:
            RuntimeError: If the sink is not open.
            SinkIOError: If the write fails.
        """
        if self._file is None:
            raise RuntimeError("Sink not opened. Use as context manager.")
        lines = "".join(
            f"{v}\t{t}\t{s!r}\t{p!r}\t{e!r}\n"
            for v, t, s, p, e in zip(
                variants,
                traits,
                statistic.tolist(),
                pvalue.tolist(),
                effect.tolist(),
                strict=True,
            )
        )
        with self._lock:
            try:
                self._file.write(lines)
            except OSError as e:
                raise SinkIOError(
                    f"Write to {self.partial_path} failed: {e}",
                    partial_outputs=[self.partial_path],
                ) from e
            self._count += len(variants)

    def finalize(self, corrector: FdrCorrector) -> int:
        """Rewrite the spool as the final result file with q-values.

        The spool is streamed in batches of ``batch_rows`` lines, so memory
        stays bounded however many records were accepted. The final file is
        written to a temporary name and moved into place, then the spool is
        removed. Read the records back with read_results().

        Returns:
            Number of records written.
        """
        self.close()
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        written = 0
        try:
            with open(self.partial_path) as spool, open(tmp_path, "w") as f:
                f.write(OUTPUT_HEADER + "\n")
                for variants, traits, values in _iter_spool(spool, self.batch_rows):
                    qvalues = corrector.qvalues(values[:, 1])
                    f.writelines(
                        _format_line(v, t, row[0], row[1], q, row[2]) + "\n"
                        for v, t, row, q in zip(
                            variants,
                            traits,
                            values.tolist(),
                            qvalues.tolist(),
                            strict=True,
                        )
                    )
                    written += len(variants)
            os.replace(tmp_path, self.path)
            self.partial_path.unlink()
        except OSError as e:
            raise SinkIOError(
                f"Cannot finalize {self.path}: {e}",
                partial_outputs=[self.partial_path],
            ) from e
        logger.debug(f"Wrote {written:,} {self.category} records to {self.path}")
        return written

    def close(self) -> None:
        """Close the spool file; safe to call more than once."""
        if self._file is not None:
            with self._lock:
                self._file.close()
                self._file = None


def _iter_spool(spool, batch_rows: int):
    """Yield (variants, traits, values) batches of at most batch_rows lines."""
    while True:
        lines = list(islice(spool, batch_rows))
        if not lines:
            return
        variants: list[str] = []
        traits: list[str] = []
        rows: list[tuple[float, float, float]] = []
        for line in lines:
            v, t, s, p, e = line.rstrip("\n").split("\t")
            variants.append(v)
            traits.append(t)
            rows.append((float(s), float(p), float(e)))
        yield variants, traits, np.array(rows, dtype=np.float64).reshape(-1, 3)


def read_results(path: Path, category: str = "all") -> list[AssociationRecord]:
    """Read a finalized result file back into records."""
    path = Path(path)
    with open(path) as f:
        header = f.readline().rstrip("\r\n")
        if header != OUTPUT_HEADER:
            raise ValueError(f"{path}: unexpected header {header!r}")
        return [parse_record_line(line, category) for line in f if line.strip()]


class CategoryOutput:
    """Threshold gate, histogram, FDR corrector and sink of one category.

    Args:
        category: "all", "local" or "distant".
        threshold: Raw p-value threshold; pairs with p <= threshold are kept.
        sink: FileSink or MemorySink receiving passing records.
        histogram: Histogram of every tested pair's p-value.
        corrector: FDR corrector fed with accepted p-values.
    """

    def __init__(
        self,
        category: str,
        threshold: float,
        sink: FileSink | MemorySink,
        histogram: PvalueHistogram,
        corrector: FdrCorrector,
    ):
        self.category = category
        self.threshold = threshold
        self.sink = sink
        self.histogram = histogram
        self.corrector = corrector
        self.n_tested = 0
        self.n_accepted = 0
        self._lock = threading.Lock()

    def route(
        self,
        variant_ids: tuple[str, ...],
        trait_ids: tuple[str, ...],
        stats: BlockStatistics,
        mask: np.ndarray,
    ) -> int:
        """Count, histogram and emit the pairs of a block selected by mask.

        Args:
            variant_ids: Ids of the block's variant rows.
            trait_ids: Ids of the block's trait rows.
            stats: Statistics of the block.
            mask: Boolean (n_variants, n_traits) of testable pairs in this
                category.

        Returns:
            Number of records emitted.
        """
        tested = stats.pvalue[mask]
        self.histogram.add(tested)

        passing = mask & (stats.pvalue <= self.threshold)
        rows, cols = np.nonzero(passing)
        pvalue = stats.pvalue[rows, cols]
        with self._lock:
            self.n_tested += int(tested.size)
            self.n_accepted += int(rows.size)
        if rows.size == 0:
            return 0

        self.corrector.observe(pvalue)
        self.sink.write_block(
            [variant_ids[i] for i in rows],
            [trait_ids[j] for j in cols],
            stats.statistic[rows, cols],
            pvalue,
            stats.effect[rows, cols],
        )
        return int(rows.size)

    def finalize(self) -> None:
        """Apply the FDR correction and finalize the sink.

        A MemorySink keeps its records in ``sink.records``; a FileSink
        leaves them only in its result file.
        """
        self.corrector.finalize(self.n_tested, self.histogram)
        self.sink.finalize(self.corrector)
