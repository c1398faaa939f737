"""Pytest fixtures for the meqtl test suite."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import numpy as np
import progressbar.utils  # noqa: F401  # bind progressbar's stdout capture at session start, not inside a CliRunner
import pytest
from loguru import logger

from meqtl.utils.logging import setup_logging

# =============================================================================
# Test Tier System
# =============================================================================
#
# tier0 - Fast unit tests (<5s each)
#   - Pure computation, tiny in-memory inputs
#   - Run: pytest -m tier0
#
# tier1 - End-to-end tests (<60s each)
#   - Text inputs written to tmp_path, full pipeline / CLI runs
#   - Run: pytest -m tier1
#
# slow - Larger randomized scans and property tests with many examples
#   - Run: pytest -m slow
#
# Quick reference:
#   pytest -m tier0             # Fast tests only
#   pytest -m "not slow"        # Everything except large scans
#   pytest                      # All tests
# =============================================================================


def write_matrix(
    path: Path,
    feature_ids,
    sample_ids,
    data: np.ndarray,
    delimiter: str = "\t",
    corner: str = "id",
    missing: str = "NA",
) -> Path:
    """Write a feature x sample matrix in MatrixEQTL text layout."""
    lines = [delimiter.join([corner, *sample_ids])]
    for fid, row in zip(feature_ids, data, strict=True):
        cells = [missing if np.isnan(v) else repr(float(v)) for v in row]
        lines.append(delimiter.join([fid, *cells]))
    path.write_text("\n".join(lines) + "\n")
    return path


def write_table(path: Path, header: list[str], rows: list[list]) -> Path:
    """Write a tab-separated table with a header row."""
    lines = ["\t".join(header)]
    lines += ["\t".join(str(x) for x in row) for row in rows]
    path.write_text("\n".join(lines) + "\n")
    return path


@dataclass
class ScanInputs:
    """Paths and arrays of a small synthetic scan."""

    variants_file: Path
    traits_file: Path
    covariates_file: Path
    variant_positions_file: Path
    trait_positions_file: Path
    variants: np.ndarray
    traits: np.ndarray
    covariates: np.ndarray
    sample_ids: list[str]
    variant_ids: list[str]
    trait_ids: list[str]


def make_scan_arrays(seed: int = 7, n_samples: int = 40, n_variants: int = 6):
    """Genotypes, traits and one covariate with a planted association.

    trait0 depends strongly on variant0; all other pairs are null.
    """
    rng = np.random.default_rng(seed)
    variants = rng.integers(0, 3, size=(n_variants, n_samples)).astype(np.float64)
    covariates = rng.normal(size=(1, n_samples))
    traits = rng.normal(size=(4, n_samples))
    traits[0] += 3.0 * variants[0] + 0.5 * covariates[0]
    return variants, traits, covariates


@pytest.fixture
def scan_inputs(tmp_path: Path) -> ScanInputs:
    """Small synthetic scan written as text files under tmp_path.

    Variants snp0..snp5 sit on chr1 at 1000, 2000, ... 6000; trait gene0
    spans chr1:1500-1600, gene1 chr1:50000-60000, gene2 chr2:1000-2000 and
    gene3 has no position record.
    """
    variants, traits, covariates = make_scan_arrays()
    n_samples = variants.shape[1]
    sample_ids = [f"S{j}" for j in range(n_samples)]
    variant_ids = [f"snp{i}" for i in range(variants.shape[0])]
    trait_ids = [f"gene{i}" for i in range(traits.shape[0])]

    write_matrix(tmp_path / "snps.txt", variant_ids, sample_ids, variants)
    write_matrix(tmp_path / "expr.txt", trait_ids, sample_ids, traits)
    write_matrix(tmp_path / "cvrt.txt", ["age"], sample_ids, covariates)
    write_table(
        tmp_path / "snpsloc.txt",
        ["snp", "chr", "pos"],
        [[vid, "chr1", 1000 * (i + 1)] for i, vid in enumerate(variant_ids)],
    )
    write_table(
        tmp_path / "geneloc.txt",
        ["gene", "chr", "start", "end"],
        [
            ["gene0", "chr1", 1500, 1600],
            ["gene1", "chr1", 50000, 60000],
            ["gene2", "chr2", 1000, 2000],
        ],
    )
    return ScanInputs(
        variants_file=tmp_path / "snps.txt",
        traits_file=tmp_path / "expr.txt",
        covariates_file=tmp_path / "cvrt.txt",
        variant_positions_file=tmp_path / "snpsloc.txt",
        trait_positions_file=tmp_path / "geneloc.txt",
        variants=variants,
        traits=traits,
        covariates=covariates,
        sample_ids=sample_ids,
        variant_ids=variant_ids,
        trait_ids=trait_ids,
    )


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    """Create temporary output directory for test results."""
    out = tmp_path / "output"
    out.mkdir()
    return out


@pytest.fixture
def restore_logging():
    """Reinstall the default handler once capture streams are gone."""
    yield
    setup_logging()


@pytest.fixture
def log_messages():
    """Collect loguru messages emitted during a test."""
    messages: list[str] = []
    handler_id = logger.add(
        lambda m: messages.append(m.record["message"]), level="DEBUG"
    )
    yield messages
    logger.remove(handler_id)
