"""Variant x trait association scanning.

Key components:
- Residualizer: covariate adjustment by projection on an orthonormal basis
- make_statistic: linear, linear-error-covariance or categorical strategy
- AssociationEngine: block products over (variant chunk, trait chunk) pairs
- ProximityClassifier: local / distant classification of pairs
- CategoryOutput, FileSink, MemorySink: thresholded streaming output
- ExactFdr, HistogramFdr: Benjamini-Hochberg q-values
- ScanRunner: the INIT -> ... -> DONE scan state machine
"""

from meqtl.scan.engine import AssociationEngine, PairResult, PreparedChunk
from meqtl.scan.fdr import ExactFdr, FdrCorrector, HistogramFdr, make_fdr_corrector
from meqtl.scan.histogram import PvalueHistogram
from meqtl.scan.output import (
    OUTPUT_HEADER,
    AssociationRecord,
    CategoryOutput,
    FileSink,
    MemorySink,
    format_record_line,
    read_results,
)
from meqtl.scan.proximity import ProximityClassifier, classify_block, classify_pair
from meqtl.scan.residualize import PreparedBlock, Residualizer, whitening_transform
from meqtl.scan.runner import ScanRunner, ScanState, ScanSummary
from meqtl.scan.statistics import (
    AssociationStatistic,
    BlockStatistics,
    CategoricalStatistic,
    LinearErrorCovarianceStatistic,
    LinearStatistic,
    make_statistic,
)

__all__ = [
    "OUTPUT_HEADER",
    "AssociationEngine",
    "AssociationRecord",
    "AssociationStatistic",
    "BlockStatistics",
    "CategoricalStatistic",
    "CategoryOutput",
    "ExactFdr",
    "FdrCorrector",
    "FileSink",
    "HistogramFdr",
    "LinearErrorCovarianceStatistic",
    "LinearStatistic",
    "MemorySink",
    "PairResult",
    "PreparedBlock",
    "PreparedChunk",
    "ProximityClassifier",
    "PvalueHistogram",
    "Residualizer",
    "ScanRunner",
    "ScanState",
    "ScanSummary",
    "classify_block",
    "classify_pair",
    "format_record_line",
    "make_fdr_corrector",
    "make_statistic",
    "read_results",
    "whitening_transform",
]
