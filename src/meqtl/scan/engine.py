"""Pairwise association engine.

Trait chunks are prepared once (imputed, residualized, unit-normalized)
and kept for the whole scan, or, for trait sets too large to hold, re-read
and prepared again for every variant chunk. Variant chunks are read and
prepared one at a time; each is evaluated against every trait chunk, so
every pair is tested exactly once in (variant chunk, trait chunk) order.

With more than one worker, the trait-chunk evaluations of a variant chunk
run on a thread pool with a bounded number of pending evaluations. numpy
releases the GIL inside the matrix products, so threads scale without
copying the prepared traits. Results are yielded back in submission order,
which keeps output order identical across runs and worker counts.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable, Iterator, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np
from loguru import logger

from meqtl.io.matrix import ChunkedMatrix, MatrixChunk
from meqtl.io.positions import FeaturePositions
from meqtl.scan.proximity import ProximityClassifier
from meqtl.scan.residualize import PreparedBlock
from meqtl.scan.statistics import AssociationStatistic, BlockStatistics


@dataclass(frozen=True)
class PreparedChunk:
    """A chunk of rows after preparation by the statistic strategy."""

    feature_ids: tuple[str, ...]
    start: int
    end: int
    block: PreparedBlock
    positions: FeaturePositions | None = None


@dataclass(frozen=True)
class PairResult:
    """Statistics for one (variant chunk, trait chunk) pair.

    Attributes:
        variants: Prepared variant chunk.
        traits: Prepared trait chunk.
        stats: Per-pair statistics.
        categories: Proximity codes per pair, or None in exhaustive mode.
    """

    variants: PreparedChunk
    traits: PreparedChunk
    stats: BlockStatistics
    categories: np.ndarray | None = None


class StreamedTraits:
    """Trait chunks re-read and prepared on every iteration.

    Stands in for the list of resident prepared chunks: iterating yields the
    same prepared chunks in the same order, holding one at a time.
    """

    def __init__(
        self, engine: AssociationEngine, traits: ChunkedMatrix, chunk_size: int
    ):
        self._engine = engine
        self._traits = traits
        self._chunk_size = chunk_size

    def __len__(self) -> int:
        return self._traits.n_chunks(self._chunk_size)

    def __iter__(self) -> Iterator[PreparedChunk]:
        for chunk in self._traits.iter_chunks(self._chunk_size):
            yield self._engine.prepare_trait_chunk(chunk)


class AssociationEngine:
    """Evaluates every variant against every trait by block products.

    Args:
        statistic: Statistic strategy chosen for the run.
        classifier: Proximity classifier, or None for an exhaustive scan.
        workers: Threads evaluating chunk pairs concurrently.
    """

    def __init__(
        self,
        statistic: AssociationStatistic,
        classifier: ProximityClassifier | None = None,
        workers: int = 1,
    ):
        if workers <= 0:
            raise ValueError(f"workers must be positive, got {workers}")
        self.statistic = statistic
        self.classifier = classifier
        self.workers = workers

    def prepare_variant_chunk(self, chunk: MatrixChunk) -> PreparedChunk:
        positions = None
        if self.classifier is not None:
            positions = self.classifier.lookup_variants(chunk.feature_ids)
        return PreparedChunk(
            feature_ids=chunk.feature_ids,
            start=chunk.start,
            end=chunk.end,
            block=self.statistic.prepare_variants(chunk.data),
            positions=positions,
        )

    def prepare_trait_chunk(self, chunk: MatrixChunk) -> PreparedChunk:
        positions = None
        if self.classifier is not None:
            positions = self.classifier.lookup_traits(chunk.feature_ids)
        return PreparedChunk(
            feature_ids=chunk.feature_ids,
            start=chunk.start,
            end=chunk.end,
            block=self.statistic.prepare_traits(chunk.data),
            positions=positions,
        )

    def prepare_traits(
        self, traits: ChunkedMatrix, chunk_size: int, stream: bool = False
    ) -> list[PreparedChunk] | StreamedTraits:
        """Prepare every trait chunk.

        By default the prepared chunks stay resident for the scan. With
        stream=True only a StreamedTraits view is returned, and each chunk
        is prepared again whenever a variant chunk is evaluated.
        """
        if stream:
            prepared = StreamedTraits(self, traits, chunk_size)
        else:
            prepared = [
                self.prepare_trait_chunk(c) for c in traits.iter_chunks(chunk_size)
            ]
        n_degenerate = sum(c.block.n_degenerate for c in prepared)
        if n_degenerate:
            logger.warning(
                f"{n_degenerate} of {traits.n_features} traits have zero variance "
                f"after covariate adjustment or too few observed values; "
                f"their pairs are skipped"
            )
        return prepared

    def evaluate(self, variants: PreparedChunk, traits: PreparedChunk) -> PairResult:
        """Compute statistics (and proximity codes) for one chunk pair."""
        stats = self.statistic.compute(variants.block, traits.block)
        categories = None
        if self.classifier is not None:
            categories = self.classifier.classify_block(
                variants.positions, traits.positions
            )
        return PairResult(variants, traits, stats, categories)

    def scan(
        self,
        variant_chunks: Iterable[MatrixChunk],
        trait_chunks: Sequence[PreparedChunk] | StreamedTraits,
        should_stop: Callable[[], bool] | None = None,
    ) -> Iterator[PairResult]:
        """Yield results for all chunk pairs, variant chunk by variant chunk.

        Args:
            variant_chunks: Raw variant chunks, consumed lazily.
            trait_chunks: Prepared trait chunks, iterated once per variant
                chunk.
            should_stop: Polled before every chunk-pair evaluation; when it
                returns True, pending evaluations are cancelled and the
                iteration ends early.

        Yields:
            PairResult for each (variant chunk, trait chunk) in order.
        """
        should_stop = should_stop or (lambda: False)
        if self.workers == 1:
            yield from self._scan_serial(variant_chunks, trait_chunks, should_stop)
            return

        executor = ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="meqtl-scan"
        )
        # Bounded so at most a few prepared chunks wait on the pool at a time
        max_pending = 2 * self.workers
        pending: deque[Future] = deque()
        try:
            for chunk in variant_chunks:
                if should_stop():
                    return
                prepared = self.prepare_variant_chunk(chunk)
                for traits in trait_chunks:
                    if should_stop():
                        return
                    pending.append(executor.submit(self.evaluate, prepared, traits))
                    if len(pending) >= max_pending:
                        yield pending.popleft().result()
            while pending:
                if should_stop():
                    return
                yield pending.popleft().result()
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def _scan_serial(self, variant_chunks, trait_chunks, should_stop):
        for chunk in variant_chunks:
            if should_stop():
                return
            prepared = self.prepare_variant_chunk(chunk)
            for traits in trait_chunks:
                if should_stop():
                    return
                yield self.evaluate(prepared, traits)
