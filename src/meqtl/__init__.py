"""meqtl: streaming variant x trait association scans.

meqtl tests every feature of a variant matrix (genetic markers) against
every feature of a trait matrix (expression levels), adjusting for
covariates, optionally splitting pairs into local and distant by genomic
distance, and keeps only pairs passing a p-value threshold together with
their Benjamini-Hochberg q-values.

Key features:
- Chunked, memory-bounded streaming over delimited text or PLINK inputs
- Linear, error-covariance and categorical (ANOVA) models
- Exact or histogram-based FDR correction

Example:
    >>> from meqtl.api import scan
    >>> summary = scan("snps.txt", "expression.txt", pvalue_threshold=1e-4)
    >>> print(f"{summary.accepted['all']} pairs in {summary.timing['total']:.1f}s")
"""

import sys
from importlib.metadata import version

from loguru import logger

__version__ = version("meqtl")

# Configure loguru with sensible defaults on import
# Uses stdout so output is visible in notebook cells (stderr may be buffered)
# Users can override by calling logger.remove()/add()
logger.remove()
logger.add(
    sys.stdout,
    level="INFO",
    format="{time:HH:mm:ss} | <level>{level: <8}</level> | {message}",
    colorize=True,
)

from meqtl.core.config import ScanConfig  # noqa: E402
from meqtl.scan.runner import ScanRunner, ScanSummary  # noqa: E402

__all__ = ["ScanConfig", "ScanRunner", "ScanSummary", "__version__"]
