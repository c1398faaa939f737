"""Configuration dataclasses for meqtl.

This module contains dataclasses that configure a scan: engine options
(model, thresholds, proximity radius, chunking, FDR mode), the layout of
delimited input matrices, and output paths and logging settings.
"""

from dataclasses import dataclass, field
from pathlib import Path

from meqtl.errors import ConfigError

MODEL_LINEAR = "linear"
MODEL_LINEAR_ERROR_COVARIANCE = "linear-error-covariance"
MODEL_CATEGORICAL = "categorical"

MODELS = (MODEL_LINEAR, MODEL_LINEAR_ERROR_COVARIANCE, MODEL_CATEGORICAL)


@dataclass(frozen=True)
class ScanConfig:
    """Engine options for a single scan.

    Attributes:
        model: Statistic model, one of "linear", "linear-error-covariance"
            or "categorical".
        pvalue_threshold: Raw p-value threshold for the exhaustive ("all")
            output. Used when proximity mode is off.
        pvalue_threshold_local: Threshold for pairs classified "local".
        pvalue_threshold_distant: Threshold for pairs classified "distant".
        distance_radius: Radius in base pairs around a trait interval within
            which a variant is "local". Only consulted in proximity mode.
        chunk_size: Maximum number of rows per matrix chunk.
        exact_fdr: If True, retain accepted p-values for exact
            Benjamini-Hochberg ranks; otherwise estimate ranks from the
            histogram.
        histogram_enabled: If True, keep p-value histograms in the summary.
            Histograms are always accumulated when exact_fdr is False.
        histogram_bins: Number of equal-width bins over [0, 1].
        workers: Worker threads for chunk-pair evaluation.
        max_groups: Maximum number of distinct variant values for the
            categorical model.
        stream_traits: Re-read and prepare trait chunks for every variant
            chunk instead of holding all prepared traits in memory.
        verbose: Enable verbose/debug output.
    """

    model: str = MODEL_LINEAR
    pvalue_threshold: float = 1e-5
    pvalue_threshold_local: float = 1e-3
    pvalue_threshold_distant: float = 1e-5
    distance_radius: int = 1_000_000
    chunk_size: int = 2_000
    exact_fdr: bool = True
    histogram_enabled: bool = True
    histogram_bins: int = 100
    workers: int = 1
    max_groups: int = 3
    stream_traits: bool = False
    verbose: bool = False

    def validate(self) -> None:
        """Check option ranges.

        Raises:
            ConfigError: If any option is out of range.
        """
        if self.model not in MODELS:
            raise ConfigError(
                f"model must be one of {', '.join(MODELS)}, got {self.model!r}"
            )
        for name in (
            "pvalue_threshold",
            "pvalue_threshold_local",
            "pvalue_threshold_distant",
        ):
            value = getattr(self, name)
            if not (0.0 < value <= 1.0):
                raise ConfigError(f"{name} must be in (0, 1], got {value}")
        if self.distance_radius < 0:
            raise ConfigError(
                f"distance_radius must be non-negative, got {self.distance_radius}"
            )
        if self.chunk_size <= 0:
            raise ConfigError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.histogram_bins <= 0:
            raise ConfigError(
                f"histogram_bins must be positive, got {self.histogram_bins}"
            )
        if self.workers <= 0:
            raise ConfigError(f"workers must be positive, got {self.workers}")
        if self.max_groups < 2:
            raise ConfigError(f"max_groups must be at least 2, got {self.max_groups}")


@dataclass(frozen=True)
class MatrixFormat:
    """Layout of a delimited feature-by-sample text matrix.

    Attributes:
        delimiter: Field separator ("\\t" or ",").
        skip_rows: Lines to skip before the header row.
        skip_columns: Columns to skip after the feature id column.
        missing: Token denoting a missing cell.
    """

    delimiter: str = "\t"
    skip_rows: int = 0
    skip_columns: int = 0
    missing: str = "NA"

    def validate(self) -> None:
        """Raise ConfigError for unusable layouts."""
        if not self.delimiter or self.delimiter == "\n":
            raise ConfigError(f"Invalid delimiter: {self.delimiter!r}")
        if self.skip_rows < 0 or self.skip_columns < 0:
            raise ConfigError("skip_rows and skip_columns must be non-negative")


@dataclass
class OutputConfig:
    """Configuration for output files and directories.

    Attributes:
        outdir: Output directory for result files. Created if it doesn't exist.
        prefix: Prefix for output filenames (e.g., "result" produces
            "result.all.txt" and "result.log.txt").
        verbose: Enable verbose/debug output to console.
    """

    outdir: Path = field(default_factory=lambda: Path("output"))
    prefix: str = "result"
    verbose: bool = False

    @property
    def log_path(self) -> Path:
        """Path to the run summary log: {outdir}/{prefix}.log.txt"""
        return self.outdir / f"{self.prefix}.log.txt"

    def result_path(self, category: str) -> Path:
        """Result table of one category: {outdir}/{prefix}.{category}.txt"""
        return self.outdir / f"{self.prefix}.{category}.txt"

    def histogram_path(self, category: str) -> Path:
        """P-value histogram of one category: {outdir}/{prefix}.{category}.hist.txt"""
        return self.outdir / f"{self.prefix}.{category}.hist.txt"

    def ensure_outdir(self) -> None:
        """Create output directory if it doesn't exist."""
        self.outdir.mkdir(parents=True, exist_ok=True)
