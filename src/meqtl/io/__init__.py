"""I/O modules for meqtl.

This package contains readers for the scan inputs:
- matrix: chunked feature-by-sample matrices (delimited text, PLINK, arrays)
- covariate: covariate and error-covariance matrices
- positions: genomic coordinates of variants and traits
"""

from meqtl.io.covariate import read_covariate_file, read_error_covariance
from meqtl.io.matrix import (
    ChunkedMatrix,
    ChunkedMatrixBuilder,
    MatrixChunk,
    check_sample_alignment,
    load_text_matrix,
)
from meqtl.io.positions import (
    FeaturePositions,
    PositionIndex,
    read_trait_positions,
    read_variant_positions,
)

__all__ = [
    "ChunkedMatrix",
    "ChunkedMatrixBuilder",
    "FeaturePositions",
    "MatrixChunk",
    "PositionIndex",
    "check_sample_alignment",
    "load_text_matrix",
    "read_covariate_file",
    "read_error_covariance",
    "read_trait_positions",
    "read_variant_positions",
]
