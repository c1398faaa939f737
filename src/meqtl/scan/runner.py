"""Scan orchestration.

ScanRunner drives one scan through a fixed sequence of states:

    INIT -> LOADING -> PREPROCESS -> SCANNING -> FINALIZE -> DONE

Any error moves the run to FAILED. Configuration, input format and sample
alignment problems are all raised before SCANNING starts, so no output is
written for them. Errors during SCANNING (a failing sink, or abort()) leave
the spool files in place and list them on the raised exception.

Example:
    >>> runner = ScanRunner(ScanConfig(pvalue_threshold=1e-4), variants, traits)
    >>> summary = runner.run()
    >>> print(summary.accepted["all"], "pairs pass p <= 1e-4")
"""

from __future__ import annotations

import threading
import time
from contextlib import ExitStack, closing
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import numpy as np
from loguru import logger

from meqtl.core.config import OutputConfig, ScanConfig
from meqtl.core.progress import progress_iterator
from meqtl.core.threading import blas_threads, blas_threads_per_worker
from meqtl.errors import AlignmentError, MeqtlError, ScanAborted, SinkIOError
from meqtl.io.matrix import ChunkedMatrix, check_sample_alignment
from meqtl.io.positions import PositionIndex
from meqtl.scan.engine import AssociationEngine, PairResult
from meqtl.scan.fdr import make_fdr_corrector
from meqtl.scan.histogram import PvalueHistogram
from meqtl.scan.output import (
    AssociationRecord,
    CategoryOutput,
    FileSink,
    MemorySink,
)
from meqtl.scan.proximity import (
    CATEGORY_ALL,
    CATEGORY_DISTANT,
    CATEGORY_LOCAL,
    DISTANT,
    EXCLUDED,
    LOCAL,
    ProximityClassifier,
)
from meqtl.scan.statistics import make_statistic
from meqtl.utils.logging import log_rss_memory


class ScanState(Enum):
    """Lifecycle states of a ScanRunner."""

    INIT = "init"
    LOADING = "loading"
    PREPROCESS = "preprocess"
    SCANNING = "scanning"
    FINALIZE = "finalize"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ScanSummary:
    """Outcome of a completed scan.

    Attributes:
        tested: Number of tested pairs per category.
        accepted: Number of pairs passing the category threshold.
        skipped_pairs: Pairs with a degenerate variant or trait row.
        excluded_pairs: Pairs with an unknown position (proximity mode).
        output_paths: Result file per category (empty without an outdir).
        histograms: P-value histogram per category (empty when disabled).
        n_samples: Number of samples.
        n_variants: Number of variant rows.
        n_traits: Number of trait rows.
        n_covariates: Number of covariate rows.
        timing: Seconds spent per phase plus 'total'.
        records: Finalized records per category, in emission order, when
            results are kept in memory. Empty when results go to files;
            read those back with read_results().
    """

    tested: dict[str, int]
    accepted: dict[str, int]
    skipped_pairs: int
    excluded_pairs: int
    output_paths: dict[str, Path] = field(default_factory=dict)
    histograms: dict[str, PvalueHistogram] = field(default_factory=dict)
    n_samples: int = 0
    n_variants: int = 0
    n_traits: int = 0
    n_covariates: int = 0
    timing: dict[str, float] = field(default_factory=dict)
    records: dict[str, list[AssociationRecord]] = field(default_factory=dict)

    @property
    def categories(self) -> list[str]:
        return list(self.tested)

    @property
    def n_tested(self) -> int:
        return sum(self.tested.values())

    def all_records(self) -> list[AssociationRecord]:
        """Records of every category, concatenated in category order."""
        return [r for records in self.records.values() for r in records]


class ScanRunner:
    """Runs one variant x trait scan with a fixed configuration.

    A runner is single-use: run() may be called once. Inputs are never
    modified, so several runners may share the same matrices.

    Prepared trait chunks are held in memory for the whole scan unless
    config.stream_traits is set, in which case they are re-read from the
    trait matrix and prepared again for every variant chunk.

    Args:
        config: Engine options.
        variants: Variant matrix (features x samples).
        traits: Trait matrix; sample ids must equal the variants' in order.
        covariates: Covariate matrix, or None for intercept only.
        variant_positions: Variant positions. Proximity mode is on when both
            position indexes are given.
        trait_positions: Trait intervals.
        error_covariance: Sample error covariance for the
            "linear-error-covariance" model.
        output: Where to write result files; None keeps results in memory.
        show_progress: Show progress bars and ## log lines.
    """

    def __init__(
        self,
        config: ScanConfig,
        variants: ChunkedMatrix,
        traits: ChunkedMatrix,
        covariates: ChunkedMatrix | None = None,
        variant_positions: PositionIndex | None = None,
        trait_positions: PositionIndex | None = None,
        error_covariance: np.ndarray | None = None,
        output: OutputConfig | None = None,
        show_progress: bool = True,
    ):
        self.config = config
        self.variants = variants
        self.traits = traits
        self.covariates = covariates
        self.variant_positions = variant_positions
        self.trait_positions = trait_positions
        self.error_covariance = error_covariance
        self.output = output
        self.show_progress = show_progress
        self._state = ScanState.INIT
        self._abort = threading.Event()
        self._outputs: dict[str, CategoryOutput] = {}

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def proximity_mode(self) -> bool:
        return self.variant_positions is not None and self.trait_positions is not None

    def abort(self) -> None:
        """Request cancellation; honoured between chunk-pair evaluations."""
        self._abort.set()

    def _enter(self, state: ScanState) -> None:
        logger.debug(f"Scan state {self._state.value} -> {state.value}")
        self._state = state

    def run(self) -> ScanSummary:
        """Run the scan to completion.

        Returns:
            ScanSummary with counts, histograms, timing and, for in-memory
            runs, the records.

        Raises:
            ConfigError: Invalid configuration (INIT).
            AlignmentError: Sample ids differ across matrices (LOADING).
            NumericError: Rank-deficient covariates or a non-positive-definite
                error covariance (PREPROCESS).
            SinkIOError: An output could not be written (SCANNING, FINALIZE).
            ScanAborted: abort() was called during SCANNING.
        """
        if self._state is not ScanState.INIT:
            raise RuntimeError(f"ScanRunner already used (state {self._state.value})")

        start_time = time.perf_counter()
        timing: dict[str, float] = {}
        with ExitStack() as stack:
            try:
                self.config.validate()

                self._enter(ScanState.LOADING)
                covariates = self._check_inputs()

                self._enter(ScanState.PREPROCESS)
                t0 = time.perf_counter()
                engine, trait_chunks = self._preprocess(covariates)
                timing["preprocess"] = time.perf_counter() - t0

                self._enter(ScanState.SCANNING)
                t0 = time.perf_counter()
                self._outputs = self._open_outputs(stack)
                counts = self._scan(engine, trait_chunks)
                timing["scan"] = time.perf_counter() - t0

                self._enter(ScanState.FINALIZE)
                t0 = time.perf_counter()
                summary = self._finalize(counts, covariates.n_features)
                timing["finalize"] = time.perf_counter() - t0
            except BaseException as e:
                self._fail(e)
                raise

        timing["total"] = time.perf_counter() - start_time
        summary.timing = timing
        self._enter(ScanState.DONE)

        if self.show_progress:
            logger.info("## Scan completed")
            logger.info(f"time elapsed = {timing['total']:.2f} seconds")
        return summary

    def _fail(self, error: BaseException) -> None:
        partial = [
            out.sink.partial_path
            for out in self._outputs.values()
            if out.sink.partial_path is not None and out.sink.partial_path.exists()
        ]
        for out in self._outputs.values():
            out.sink.close()
        if isinstance(error, (SinkIOError, ScanAborted)):
            for path in partial:
                if path not in error.partial_outputs:
                    error.partial_outputs.append(path)
        stage = self._state.value
        self._enter(ScanState.FAILED)
        if isinstance(error, (MeqtlError, OSError)):
            logger.error(f"Scan failed during {stage}: {error}")
        if partial:
            logger.warning(
                "Partial outputs left on disk: " + ", ".join(str(p) for p in partial)
            )

    def _check_inputs(self) -> ChunkedMatrix:
        """LOADING: sample alignment and shapes. Returns the covariate matrix."""
        covariates = self.covariates
        if covariates is None:
            covariates = ChunkedMatrix.empty(self.variants.sample_ids)

        check_sample_alignment(self.variants, self.traits, covariates)

        if self.error_covariance is not None:
            n = self.variants.n_samples
            if self.error_covariance.shape != (n, n):
                raise AlignmentError(
                    f"Error covariance has shape {self.error_covariance.shape}, "
                    f"expected ({n}, {n})"
                )

        if self.show_progress:
            logger.info("## Performing variant x trait association scan")
            logger.info(f"number of samples = {self.variants.n_samples}")
            logger.info(f"number of variants = {self.variants.n_features}")
            logger.info(f"number of traits = {self.traits.n_features}")
            logger.info(f"number of covariates = {covariates.n_features}")
            logger.info(f"model = {self.config.model}")
            if self.proximity_mode:
                logger.info(f"distance radius = {self.config.distance_radius}")
        return covariates

    def _preprocess(self, covariates: ChunkedMatrix):
        """PREPROCESS: statistic strategy, classifier and prepared traits."""
        statistic = make_statistic(
            self.config, covariates.to_array(), self.error_covariance
        )
        classifier = None
        if self.proximity_mode:
            classifier = ProximityClassifier(
                self.variant_positions,
                self.trait_positions,
                self.config.distance_radius,
            )
        engine = AssociationEngine(statistic, classifier, workers=self.config.workers)
        trait_chunks = engine.prepare_traits(
            self.traits, self.config.chunk_size, stream=self.config.stream_traits
        )
        if self.show_progress:
            log_rss_memory("scan", "after_preprocess")
        return engine, trait_chunks

    def _categories(self) -> dict[str, float]:
        if self.proximity_mode:
            return {
                CATEGORY_LOCAL: self.config.pvalue_threshold_local,
                CATEGORY_DISTANT: self.config.pvalue_threshold_distant,
            }
        return {CATEGORY_ALL: self.config.pvalue_threshold}

    def _open_outputs(self, stack: ExitStack) -> dict[str, CategoryOutput]:
        outputs = self._outputs
        if self.output is not None:
            self.output.ensure_outdir()
        for category, threshold in self._categories().items():
            if self.output is None:
                sink = MemorySink(category)
            else:
                sink = FileSink(self.output.result_path(category), category)
            outputs[category] = CategoryOutput(
                category,
                threshold,
                stack.enter_context(sink),
                PvalueHistogram(self.config.histogram_bins),
                make_fdr_corrector(self.config.exact_fdr),
            )
        return outputs

    def _scan(self, engine: AssociationEngine, trait_chunks) -> dict[str, int]:
        """SCANNING: evaluate all chunk pairs and route them to the outputs."""
        counts = {"skipped": 0, "excluded": 0}
        chunk_size = self.config.chunk_size
        total = self.variants.n_chunks(chunk_size) * len(trait_chunks)

        with ExitStack() as stack:
            results = stack.enter_context(
                closing(
                    engine.scan(
                        self.variants.iter_chunks(chunk_size),
                        trait_chunks,
                        should_stop=self._abort.is_set,
                    )
                )
            )
            if self.show_progress and total > 0:
                results = stack.enter_context(
                    closing(progress_iterator(results, total=total, desc="Scanning"))
                )
            n_blas = blas_threads_per_worker(self.config.workers)
            stack.enter_context(blas_threads(n_blas))
            for result in results:
                self._route(result, counts)

        if self._abort.is_set():
            raise ScanAborted("Scan aborted before all chunk pairs were evaluated")
        if counts["skipped"]:
            logger.warning(
                f"{counts['skipped']:,} pairs skipped (zero variance after covariate "
                f"adjustment or too few observed values)"
            )
        if counts["excluded"]:
            logger.info(
                f"{counts['excluded']:,} pairs excluded (variant or trait "
                f"without a known position)"
            )
        if self.show_progress:
            log_rss_memory("scan", "after_scanning")
        return counts

    def _route(self, result: PairResult, counts: dict[str, int]) -> None:
        stats = result.stats
        variant_ids = result.variants.feature_ids
        trait_ids = result.traits.feature_ids
        testable = stats.testable

        if result.categories is None:
            counts["skipped"] += int((~testable).sum())
            self._outputs[CATEGORY_ALL].route(variant_ids, trait_ids, stats, testable)
            return

        codes = result.categories
        excluded = codes == EXCLUDED
        counts["excluded"] += int(excluded.sum())
        counts["skipped"] += int((~testable & ~excluded).sum())
        for category, code in ((CATEGORY_LOCAL, LOCAL), (CATEGORY_DISTANT, DISTANT)):
            self._outputs[category].route(
                variant_ids, trait_ids, stats, testable & (codes == code)
            )

    def _finalize(self, counts: dict[str, int], n_covariates: int) -> ScanSummary:
        """FINALIZE: FDR correction, final result files, histograms."""
        records = {}
        output_paths = {}
        histograms = {}
        for category, out in self._outputs.items():
            out.finalize()
            if isinstance(out.sink, MemorySink):
                records[category] = out.sink.records
            if out.sink.path is not None:
                output_paths[category] = out.sink.path
            if self.config.histogram_enabled:
                histograms[category] = out.histogram
                if self.output is not None:
                    out.histogram.write(self.output.histogram_path(category))
            if self.show_progress:
                logger.info(
                    f"{category}: {out.n_tested:,} pairs tested, "
                    f"{out.n_accepted:,} with p <= {out.threshold:g}"
                )

        return ScanSummary(
            records=records,
            tested={c: out.n_tested for c, out in self._outputs.items()},
            accepted={c: out.n_accepted for c, out in self._outputs.items()},
            skipped_pairs=counts["skipped"],
            excluded_pairs=counts["excluded"],
            output_paths=output_paths,
            histograms=histograms,
            n_samples=self.variants.n_samples,
            n_variants=self.variants.n_features,
            n_traits=self.traits.n_features,
            n_covariates=n_covariates,
        )
