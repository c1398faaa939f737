"""Top-level scan API for meqtl.

Provides a single-call entry point for a complete variant x trait scan,
from files on disk or from matrices already in memory.

Example:
    >>> from meqtl.api import scan
    >>> summary = scan("snps.txt", "expression.txt", covariates="covariates.txt")
    >>> print(f"{summary.accepted['all']} pairs in {summary.timing['total']:.1f}s")
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import numpy as np

from meqtl.core.config import MatrixFormat, OutputConfig, ScanConfig
from meqtl.io.covariate import read_covariate_file, read_error_covariance
from meqtl.io.matrix import ChunkedMatrix, load_text_matrix
from meqtl.io.positions import (
    PositionIndex,
    read_trait_positions,
    read_variant_positions,
)
from meqtl.pipeline import PipelineConfig, PipelineRunner
from meqtl.scan.runner import ScanRunner, ScanSummary
from meqtl.utils.logging import setup_logging

MatrixLike = str | Path | ChunkedMatrix | np.ndarray


def _as_path(value) -> Path | None:
    return None if value is None else Path(value)


def _as_matrix(
    value, name: str, fmt: MatrixFormat, sample_ids=None
) -> ChunkedMatrix | None:
    if value is None or isinstance(value, ChunkedMatrix):
        return value
    if isinstance(value, (str, Path)):
        return load_text_matrix(value, fmt, name=name)
    return ChunkedMatrix.from_array(np.asarray(value), sample_ids=sample_ids, name=name)


def scan(
    variants: MatrixLike,
    traits: MatrixLike,
    *,
    covariates: MatrixLike | None = None,
    variant_positions: str | Path | PositionIndex | None = None,
    trait_positions: str | Path | PositionIndex | None = None,
    error_covariance: str | Path | np.ndarray | None = None,
    config: ScanConfig | None = None,
    matrix_format: MatrixFormat | None = None,
    output_dir: str | Path | None = None,
    output_prefix: str = "result",
    check_memory: bool = True,
    show_progress: bool = True,
    **options,
) -> ScanSummary:
    """Test every variant against every trait in a single call.

    Inputs are either all file paths (delimited text, read in chunks from
    disk) or all in-memory matrices (ChunkedMatrix or 2-D arrays with
    features in rows and samples in columns).

    Args:
        variants: Variant matrix or path to it.
        traits: Trait matrix or path to it.
        covariates: Covariate matrix or path, or None for intercept only.
        variant_positions: Variant positions (PositionIndex or path).
        trait_positions: Trait intervals (PositionIndex or path). Proximity
            mode is on when both position arguments are given.
        error_covariance: Sample error covariance (array or path), for
            model="linear-error-covariance".
        config: Engine options. Keyword options (e.g. model="categorical",
            pvalue_threshold=1e-3) override its fields.
        matrix_format: Layout of delimited input files.
        output_dir: Directory for result files; None keeps results in memory.
        output_prefix: Prefix for output filenames.
        check_memory: If True, check available memory before scanning
            (file inputs only).
        show_progress: If True, show progress bars and log messages.
        **options: ScanConfig fields. verbose=True switches console logging
            to DEBUG level.

    Returns:
        ScanSummary with counts, histograms and timing. Records per
        category are included only when output_dir is None; otherwise read
        them back from the result files with read_results().

    Raises:
        ConfigError: On invalid options.
        InputFormatError: On malformed input files.
        AlignmentError: If sample ids differ across inputs.
        NumericError: On rank-deficient covariates.
        MemoryError: If check_memory=True and memory is insufficient.
    """
    config = replace(config or ScanConfig(), **options)
    if config.verbose:
        setup_logging(verbose=True)

    if isinstance(variants, (str, Path)) and isinstance(traits, (str, Path)):
        pipeline_config = PipelineConfig(
            traits_file=Path(traits),
            variants_file=Path(variants),
            covariates_file=_as_path(covariates),
            variant_positions_file=_as_path(variant_positions),
            trait_positions_file=_as_path(trait_positions),
            error_covariance_file=_as_path(error_covariance),
            matrix_format=matrix_format or MatrixFormat(),
            scan=config,
            output_dir=_as_path(output_dir),
            output_prefix=output_prefix,
            check_memory=check_memory,
            show_progress=show_progress,
        )
        return PipelineRunner(pipeline_config).run().summary

    fmt = matrix_format or MatrixFormat()
    variants = _as_matrix(variants, "variants", fmt)
    traits = _as_matrix(traits, "traits", fmt, sample_ids=variants.sample_ids)
    if isinstance(covariates, (str, Path)):
        covariates = read_covariate_file(covariates, fmt)
    covariates = _as_matrix(
        covariates, "covariates", fmt, sample_ids=variants.sample_ids
    )
    if isinstance(variant_positions, (str, Path)):
        variant_positions = read_variant_positions(variant_positions, fmt.delimiter)
    if isinstance(trait_positions, (str, Path)):
        trait_positions = read_trait_positions(trait_positions, fmt.delimiter)
    if isinstance(error_covariance, (str, Path)):
        error_covariance = read_error_covariance(
            error_covariance, variants.sample_ids, fmt
        )

    output = None
    if output_dir is not None:
        output = OutputConfig(outdir=Path(output_dir), prefix=output_prefix)
    runner = ScanRunner(
        config,
        variants,
        traits,
        covariates=covariates,
        variant_positions=variant_positions,
        trait_positions=trait_positions,
        error_covariance=(
            None if error_covariance is None else np.asarray(error_covariance)
        ),
        output=output,
        show_progress=show_progress,
    )
    return runner.run()
