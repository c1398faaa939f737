"""Pipeline orchestration for meqtl file-based scans.

Provides a single PipelineRunner service class that encapsulates the
file-level workflow: validate inputs, index matrices, load positions and
covariates, check memory, run the scan. Both the CLI (cli.py) and the
Python API (api.py) delegate to this runner.

Example:
    >>> from meqtl.pipeline import PipelineConfig, PipelineRunner
    >>> config = PipelineConfig(
    ...     traits_file=Path("expression.txt"), variants_file=Path("snps.txt")
    ... )
    >>> result = PipelineRunner(config).run()
    >>> print(f"Tested {result.summary.n_tested} pairs")
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
from loguru import logger

from meqtl.core.config import (
    MODEL_CATEGORICAL,
    MODEL_LINEAR_ERROR_COVARIANCE,
    MatrixFormat,
    OutputConfig,
    ScanConfig,
)
from meqtl.core.memory import (
    ScanMemoryBreakdown,
    check_memory_available,
    estimate_scan_memory,
    log_memory_snapshot,
)
from meqtl.errors import ConfigError
from meqtl.io.covariate import read_covariate_file, read_error_covariance
from meqtl.io.matrix import ChunkedMatrix, load_text_matrix
from meqtl.io.positions import (
    PositionIndex,
    read_trait_positions,
    read_variant_positions,
)
from meqtl.scan.runner import ScanRunner, ScanSummary


@dataclass
class PipelineConfig:
    """Configuration for a file-based scan.

    Attributes:
        traits_file: Trait (expression) matrix, features x samples.
        variants_file: Variant matrix as delimited text. Exactly one of
            variants_file and bfile must be given.
        bfile: PLINK binary file prefix (without .bed/.bim/.fam).
        covariates_file: Covariate matrix, or None for intercept only.
        variant_positions_file: Variant positions (id, chr, pos). With a
            PLINK source, positions default to the .bim file.
        trait_positions_file: Trait intervals (id, chr, start, end). Giving
            it turns on proximity mode (local / distant outputs).
        error_covariance_file: Sample error covariance matrix, required for
            the "linear-error-covariance" model.
        matrix_format: Layout of all delimited input matrices.
        scan: Engine options.
        output_dir: Directory for output files; None keeps results in memory.
        output_prefix: Prefix for output filenames.
        check_memory: If True, check available memory before scanning.
        show_progress: If True, show progress bars and log messages.
        mem_budget: Hard memory budget in GB, or None for no budget.
        in_memory: Load text matrices into memory instead of re-reading
            chunks from disk.
    """

    traits_file: Path
    variants_file: Path | None = None
    bfile: Path | None = None
    covariates_file: Path | None = None
    variant_positions_file: Path | None = None
    trait_positions_file: Path | None = None
    error_covariance_file: Path | None = None
    matrix_format: MatrixFormat = field(default_factory=MatrixFormat)
    scan: ScanConfig = field(default_factory=ScanConfig)
    output_dir: Path | None = field(default_factory=lambda: Path("output"))
    output_prefix: str = "result"
    check_memory: bool = True
    show_progress: bool = True
    mem_budget: float | None = None
    in_memory: bool = False


@dataclass
class PipelineResult:
    """Result of a pipeline run.

    Attributes:
        summary: Scan summary with counts and histograms; records only when
            results are kept in memory.
        output_config: Where result files were written, or None.
        timing: Timing breakdown by pipeline phase.
    """

    summary: ScanSummary
    output_config: OutputConfig | None
    timing: dict[str, float] = field(default_factory=dict)


class PipelineRunner:
    """Orchestrates a complete file-based scan.

    Raises exceptions (MeqtlError subclasses, FileNotFoundError,
    MemoryError) rather than calling sys.exit or typer.Exit. The CLI
    wrapper catches these and converts them to user-friendly messages.

    Args:
        config: Pipeline configuration.
    """

    def __init__(self, config: PipelineConfig) -> None:
        self.config = config

    @property
    def output_config(self) -> OutputConfig | None:
        if self.config.output_dir is None:
            return None
        return OutputConfig(
            outdir=Path(self.config.output_dir),
            prefix=self.config.output_prefix,
            verbose=self.config.scan.verbose,
        )

    def validate_inputs(self) -> None:
        """Validate that all input files exist and options are consistent.

        Raises:
            ConfigError: On an invalid option or a missing/duplicated variant
                source.
            FileNotFoundError: If a specified input file is missing.
        """
        cfg = self.config
        cfg.scan.validate()
        cfg.matrix_format.validate()

        if (cfg.variants_file is None) == (cfg.bfile is None):
            raise ConfigError("Specify exactly one of variants_file and bfile")

        if cfg.bfile is not None:
            for ext in (".bed", ".bim", ".fam"):
                p = Path(f"{cfg.bfile}{ext}")
                if not p.exists():
                    raise FileNotFoundError(f"PLINK {ext} file not found: {p}")

        if (
            cfg.scan.model == MODEL_LINEAR_ERROR_COVARIANCE
            and cfg.error_covariance_file is None
        ):
            raise ConfigError(
                "model 'linear-error-covariance' requires an error covariance file"
            )
        if cfg.variant_positions_file is not None and cfg.trait_positions_file is None:
            raise ConfigError(
                "variant positions given without trait positions; proximity "
                "mode needs both"
            )
        if (
            cfg.trait_positions_file is not None
            and cfg.variant_positions_file is None
            and cfg.bfile is None
        ):
            raise ConfigError(
                "trait positions given without variant positions; proximity "
                "mode needs both"
            )

        for label, path in (
            ("Trait matrix", cfg.traits_file),
            ("Variant matrix", cfg.variants_file),
            ("Covariate", cfg.covariates_file),
            ("Variant position", cfg.variant_positions_file),
            ("Trait position", cfg.trait_positions_file),
            ("Error covariance", cfg.error_covariance_file),
        ):
            if path is not None and not Path(path).exists():
                raise FileNotFoundError(f"{label} file not found: {path}")

    def load_matrices(self) -> tuple[ChunkedMatrix, ChunkedMatrix]:
        """Index the variant and trait matrices.

        Returns:
            Tuple of (variants, traits).
        """
        cfg = self.config
        if cfg.bfile is not None:
            logger.info(f"Opening PLINK genotypes {cfg.bfile}")
            variants = ChunkedMatrix.from_plink(cfg.bfile)
        else:
            logger.info(f"Indexing variants from {cfg.variants_file}")
            variants = load_text_matrix(
                cfg.variants_file,
                cfg.matrix_format,
                name="variants",
                in_memory=cfg.in_memory,
            )
        logger.info(f"Indexing traits from {cfg.traits_file}")
        traits = load_text_matrix(
            cfg.traits_file, cfg.matrix_format, name="traits", in_memory=cfg.in_memory
        )
        return variants, traits

    def load_covariates(self) -> ChunkedMatrix | None:
        """Load the covariate matrix, or None for intercept only."""
        if self.config.covariates_file is None:
            return None
        logger.info(f"Loading covariates from {self.config.covariates_file}")
        covariates = read_covariate_file(
            self.config.covariates_file, self.config.matrix_format
        )
        logger.info(f"Loaded {covariates.n_features} covariates")
        return covariates

    def load_positions(self) -> tuple[PositionIndex | None, PositionIndex | None]:
        """Load variant and trait positions for proximity mode.

        Returns:
            Tuple of (variant positions, trait positions); both None when
            proximity mode is off.
        """
        cfg = self.config
        if cfg.trait_positions_file is None:
            return None, None
        delimiter = cfg.matrix_format.delimiter
        if cfg.variant_positions_file is not None:
            variant_positions = read_variant_positions(
                cfg.variant_positions_file, delimiter
            )
        else:
            variant_positions = PositionIndex.from_plink(cfg.bfile)
        trait_positions = read_trait_positions(cfg.trait_positions_file, delimiter)
        logger.info(
            f"Loaded positions for {len(variant_positions)} variants and "
            f"{len(trait_positions)} traits"
        )
        return variant_positions, trait_positions

    def load_error_covariance(self, sample_ids: tuple[str, ...]) -> np.ndarray | None:
        cfg = self.config
        if cfg.scan.model != MODEL_LINEAR_ERROR_COVARIANCE:
            if cfg.error_covariance_file is not None:
                logger.warning(
                    f"Ignoring error covariance file for model {cfg.scan.model!r}"
                )
            return None
        logger.info(f"Loading error covariance from {cfg.error_covariance_file}")
        return read_error_covariance(
            cfg.error_covariance_file, sample_ids, cfg.matrix_format
        )

    def check_memory_requirements(
        self, n_samples: int, n_variants: int, n_traits: int
    ) -> ScanMemoryBreakdown | None:
        """Check memory requirements if memory checking is enabled.

        Args:
            n_samples: Number of samples.
            n_variants: Number of variant rows.
            n_traits: Number of trait rows.

        Returns:
            ScanMemoryBreakdown if check_memory is True, None otherwise.

        Raises:
            MemoryError: If estimated memory exceeds budget or available memory.
        """
        if not self.config.check_memory:
            return None

        scan = self.config.scan
        slots = scan.max_groups - 1 if scan.model == MODEL_CATEGORICAL else 1
        if self.config.trait_positions_file is not None:
            threshold = max(scan.pvalue_threshold_local, scan.pvalue_threshold_distant)
        else:
            threshold = scan.pvalue_threshold
        est = estimate_scan_memory(
            n_samples,
            n_variants,
            n_traits,
            chunk_size=scan.chunk_size,
            workers=scan.workers,
            slots=slots,
            exact_fdr=scan.exact_fdr,
            pvalue_threshold=threshold,
            stream_traits=scan.stream_traits,
        )

        logger.info(
            f"Memory estimate: {est.total_peak_gb:.1f}GB required, "
            f"{est.available_gb:.1f}GB available"
        )

        if (
            self.config.mem_budget is not None
            and est.total_peak_gb > self.config.mem_budget
        ):
            raise MemoryError(
                f"Estimated memory ({est.total_peak_gb:.1f}GB) exceeds "
                f"budget ({self.config.mem_budget}GB). "
                f"Use --no-check-memory to override."
            )

        check_memory_available(est.total_peak_gb, operation="scan")

        return est

    def run(self) -> PipelineResult:
        """Execute the full pipeline.

        Pipeline steps:
        1. Validate inputs
        2. Index variant and trait matrices
        3. Check memory requirements
        4. Load covariates, positions and error covariance
        5. Run the scan

        Returns:
            PipelineResult with the scan summary and timing.
        """
        t_start = time.perf_counter()

        self.validate_inputs()

        variants, traits = self.load_matrices()

        self.check_memory_requirements(
            variants.n_samples, variants.n_features, traits.n_features
        )

        covariates = self.load_covariates()
        variant_positions, trait_positions = self.load_positions()
        error_covariance = self.load_error_covariance(variants.sample_ids)
        load_s = time.perf_counter() - t_start

        output_config = self.output_config
        runner = ScanRunner(
            self.config.scan,
            variants,
            traits,
            covariates=covariates,
            variant_positions=variant_positions,
            trait_positions=trait_positions,
            error_covariance=error_covariance,
            output=output_config,
            show_progress=self.config.show_progress,
        )
        summary = runner.run()
        log_memory_snapshot("after_scan", level="DEBUG")

        total_s = time.perf_counter() - t_start
        logger.info(
            f"Scan complete: {summary.n_tested:,} pairs tested in {total_s:.1f}s"
        )
        return PipelineResult(
            summary=summary,
            output_config=output_config,
            timing={
                "load_s": load_s,
                "scan_s": summary.timing.get("total", 0.0),
                "total_s": total_s,
            },
        )
