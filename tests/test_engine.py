"""Tests for the chunked association engine."""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import numpy as np
import pytest

from meqtl.io.matrix import ChunkedMatrix
from meqtl.io.positions import PositionIndex
from meqtl.scan.engine import AssociationEngine, StreamedTraits
from meqtl.scan.proximity import DISTANT, EXCLUDED, LOCAL, ProximityClassifier
from meqtl.scan.statistics import LinearStatistic

from conftest import make_scan_arrays

pytestmark = pytest.mark.tier0


@pytest.fixture
def matrices():
    variants, traits, covariates = make_scan_arrays(n_variants=7)
    return (
        ChunkedMatrix.from_array(variants, name="snp"),
        ChunkedMatrix.from_array(traits, name="gene"),
        covariates,
    )


def run_engine(engine, variants, traits, chunk_size, should_stop=None, stream=False):
    trait_chunks = engine.prepare_traits(traits, chunk_size, stream=stream)
    return list(
        engine.scan(variants.iter_chunks(chunk_size), trait_chunks, should_stop)
    )


def assemble(results, n_variants, n_traits):
    pvalue = np.full((n_variants, n_traits), np.nan)
    for r in results:
        pvalue[r.variants.start : r.variants.end, r.traits.start : r.traits.end] = (
            r.stats.pvalue
        )
    return pvalue


class TestScan:
    def test_every_chunk_pair_in_order(self, matrices):
        variants, traits, covariates = matrices
        engine = AssociationEngine(LinearStatistic(covariates))

        results = run_engine(engine, variants, traits, chunk_size=3)

        order = [(r.variants.start, r.traits.start) for r in results]
        assert order == [(0, 0), (0, 3), (3, 0), (3, 3), (6, 0), (6, 3)]
        assert all(r.categories is None for r in results)

    def test_chunking_does_not_change_results(self, matrices):
        variants, traits, covariates = matrices
        engine = AssociationEngine(LinearStatistic(covariates))

        whole = assemble(run_engine(engine, variants, traits, 100), 7, 4)
        chunked = assemble(run_engine(engine, variants, traits, 2), 7, 4)

        np.testing.assert_allclose(chunked, whole, rtol=1e-12)
        assert not np.isnan(whole).any()

    def test_workers_match_serial(self, matrices):
        variants, traits, covariates = matrices
        serial = AssociationEngine(LinearStatistic(covariates), workers=1)
        threaded = AssociationEngine(LinearStatistic(covariates), workers=3)

        a = run_engine(serial, variants, traits, 2)
        b = run_engine(threaded, variants, traits, 2)

        assert [(r.variants.start, r.traits.start) for r in a] == [
            (r.variants.start, r.traits.start) for r in b
        ]
        for ra, rb in zip(a, b, strict=True):
            np.testing.assert_array_equal(ra.stats.pvalue, rb.stats.pvalue)

    @pytest.mark.parametrize("workers", [1, 2])
    def test_should_stop_ends_iteration(self, matrices, workers):
        variants, traits, covariates = matrices
        engine = AssociationEngine(LinearStatistic(covariates), workers=workers)
        polls = []

        def should_stop():
            polls.append(1)
            return len(polls) > 3

        results = run_engine(engine, variants, traits, 2, should_stop=should_stop)

        assert len(results) < 4 * 2
        assert len(polls) > 3

    def test_pending_evaluations_bounded(self, matrices):
        variants, traits, covariates = matrices
        engine = AssociationEngine(LinearStatistic(covariates), workers=2)
        trait_chunks = engine.prepare_traits(traits, 1)
        submitted = []

        class CountingExecutor(ThreadPoolExecutor):
            def submit(self, fn, /, *args, **kwargs):
                submitted.append(fn)
                return super().submit(fn, *args, **kwargs)

        outstanding = []
        with patch("meqtl.scan.engine.ThreadPoolExecutor", CountingExecutor):
            results = engine.scan(variants.iter_chunks(1), trait_chunks)
            for n_yielded, _ in enumerate(results, start=1):
                outstanding.append(len(submitted) - n_yielded)

        assert len(submitted) == 7 * 4
        assert max(outstanding) < 2 * engine.workers

    def test_invalid_workers(self, matrices):
        with pytest.raises(ValueError, match="workers"):
            AssociationEngine(LinearStatistic(matrices[2]), workers=0)


def test_degenerate_traits_warn(log_messages):
    traits = ChunkedMatrix.from_array(
        np.array([[1.0, 2.0, 3.0, 5.0], [2.0, 2.0, 2.0, 2.0]]), name="gene"
    )
    engine = AssociationEngine(LinearStatistic(np.empty((0, 4))))

    prepared = engine.prepare_traits(traits, 10)

    assert prepared[0].block.valid.tolist() == [True, False]
    assert any("1 of 2 traits" in m for m in log_messages)


class TestStreamedTraits:
    @pytest.mark.parametrize("workers", [1, 3])
    def test_match_resident_traits(self, matrices, workers):
        variants, traits, covariates = matrices
        engine = AssociationEngine(LinearStatistic(covariates), workers=workers)

        resident = run_engine(engine, variants, traits, 2)
        streamed = run_engine(engine, variants, traits, 2, stream=True)

        assert [(r.variants.start, r.traits.start) for r in streamed] == [
            (r.variants.start, r.traits.start) for r in resident
        ]
        for ra, rb in zip(resident, streamed, strict=True):
            np.testing.assert_array_equal(ra.stats.pvalue, rb.stats.pvalue)

    def test_traits_prepared_per_variant_chunk(self, matrices):
        variants, traits, covariates = matrices
        engine = AssociationEngine(LinearStatistic(covariates))

        with patch.object(
            engine, "prepare_trait_chunk", wraps=engine.prepare_trait_chunk
        ) as prepare:
            streamed = engine.prepare_traits(traits, 2, stream=True)
            assert isinstance(streamed, StreamedTraits)
            assert len(streamed) == 2
            # one pass to count degenerate traits
            assert prepare.call_count == 2
            results = list(engine.scan(variants.iter_chunks(2), streamed))

        assert len(results) == 4 * 2
        assert prepare.call_count == 2 + 4 * 2

    def test_degenerate_traits_still_warn(self, log_messages):
        traits = ChunkedMatrix.from_array(
            np.array([[1.0, 2.0, 3.0, 5.0], [2.0, 2.0, 2.0, 2.0]]), name="gene"
        )
        engine = AssociationEngine(LinearStatistic(np.empty((0, 4))))

        engine.prepare_traits(traits, 1, stream=True)

        assert any("1 of 2 traits" in m for m in log_messages)


def test_proximity_codes_attached():
    variants = ChunkedMatrix.from_array(
        np.array([[0.0, 1.0, 2.0, 1.0, 0.0], [1.0, 0.0, 2.0, 2.0, 1.0]]),
        feature_ids=["near", "nowhere"],
    )
    traits = ChunkedMatrix.from_array(
        np.array([[0.5, 1.1, 2.3, 0.9, 0.2], [1.0, 0.1, 0.4, 0.3, 0.2]]),
        feature_ids=["g1", "g2"],
    )
    classifier = ProximityClassifier(
        PositionIndex({"near": ("chr1", 150, 150)}),
        PositionIndex({"g1": ("chr1", 100, 200), "g2": ("chr3", 100, 200)}),
        radius=0,
    )
    engine = AssociationEngine(LinearStatistic(np.empty((0, 5))), classifier)

    (result,) = run_engine(engine, variants, traits, 10)

    assert result.categories.tolist() == [[LOCAL, DISTANT], [EXCLUDED, EXCLUDED]]
