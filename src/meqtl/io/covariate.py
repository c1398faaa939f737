"""Covariate and error-covariance matrix I/O.

Covariates use the same delimited layout as the variant and trait matrices:
one row per covariate, one column per sample, with a header of sample ids.
No intercept row is expected; the residualizer always adds one.

Missing covariate cells are replaced by the covariate's mean over observed
samples (MatrixEQTL behaviour) so that no sample is dropped from the scan.
"""

from pathlib import Path

import numpy as np
from loguru import logger

from meqtl.core.config import MatrixFormat
from meqtl.errors import AlignmentError, InputFormatError
from meqtl.io.matrix import ChunkedMatrix, load_text_matrix


def read_covariate_file(path: Path, fmt: MatrixFormat | None = None) -> ChunkedMatrix:
    """Read a covariate matrix and mean-impute missing cells.

    Args:
        path: Path to the covariate file (covariates x samples).
        fmt: File layout; defaults to tab-delimited with "NA" missing token.

    Returns:
        In-memory ChunkedMatrix of covariates (possibly zero rows).

    Raises:
        InputFormatError: If a covariate row has no observed values.

    Example:
        Covariate file contents:
        ```
        id      s1   s2   s3   s4
        age     35   42   NA   28
        sex     0    1    1    0
        ```

        >>> cvrt = read_covariate_file(Path("covariates.txt"))
        >>> cvrt.to_array()[0]  # NA replaced by mean(35, 42, 28)
        array([35., 42., 35., 28.])
    """
    raw = load_text_matrix(path, fmt, name="covariates", in_memory=True)
    values = raw.to_array().copy()

    n_missing = 0
    for i, fid in enumerate(raw.feature_ids):
        row = values[i]
        missing = np.isnan(row)
        if missing.all():
            raise InputFormatError(f"Covariate {fid!r} has no observed values")
        if missing.any():
            n_missing += int(missing.sum())
            row[missing] = row[~missing].mean()

    if n_missing:
        logger.info(f"Imputed {n_missing} missing covariate values with row means")

    return ChunkedMatrix.from_array(
        values, list(raw.feature_ids), list(raw.sample_ids), name="covariates"
    )


def read_error_covariance(
    path: Path, sample_ids, fmt: MatrixFormat | None = None
) -> np.ndarray:
    """Read an n_samples x n_samples error covariance matrix.

    The file uses the matrix layout with sample ids both as header and as row
    ids; rows and columns must follow the order of ``sample_ids``.

    Raises:
        AlignmentError: If rows or columns don't follow the scan samples.
        InputFormatError: If the matrix has missing cells or is not symmetric.
    """
    raw = load_text_matrix(path, fmt, name="error covariance", in_memory=True)
    sample_ids = tuple(sample_ids)
    if raw.sample_ids != sample_ids or raw.feature_ids != sample_ids:
        raise AlignmentError(
            f"Error covariance {path} must list the {len(sample_ids)} scan "
            f"samples, in scan order, as both header and row ids"
        )
    sigma = raw.to_array()
    if np.isnan(sigma).any():
        raise InputFormatError(f"Error covariance {path} contains missing values")
    if not np.allclose(sigma, sigma.T):
        raise InputFormatError(f"Error covariance {path} is not symmetric")
    return np.array(sigma)
