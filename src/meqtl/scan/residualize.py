"""Covariate residualization.

The covariate subspace (intercept plus covariates, optionally whitened by
an error covariance) is orthonormalized once with a pivoted QR. Each
feature row is then projected onto its orthogonal complement. After
residualization and scaling to unit norm, the inner product of a variant
row and a trait row is their partial correlation given the covariates,
which turns every per-pair regression into one entry of a matrix product.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import scipy.linalg
from loguru import logger

from meqtl.errors import NumericError

# Residual norms below this fraction of the raw row norm count as zero variance
DEGENERATE_RTOL = 1e-10


@dataclass(frozen=True)
class PreparedBlock:
    """Residualized rows ready for block products.

    Attributes:
        values: Unit-norm residual rows, shape (n_rows, n_samples). For the
            categorical model, shape (n_slots, n_rows, n_samples) holding an
            orthonormal basis of each variant's group indicators.
        norms: Residual norm of each row before normalization.
        valid: False for degenerate rows, whose values are all zero.
        groups: Indicator count per row (categorical model only).
    """

    values: np.ndarray
    norms: np.ndarray
    valid: np.ndarray
    groups: np.ndarray | None = None

    @property
    def n_rows(self) -> int:
        return self.norms.shape[0]

    @property
    def n_degenerate(self) -> int:
        return int((~self.valid).sum())


def impute_row_means(block: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Replace missing cells by the mean of the observed cells in their row.

    Args:
        block: Array (n_rows, n_samples) with NaN for missing cells.

    Returns:
        Tuple of (filled copy, observed count per row). Rows with no observed
        cells are filled with zeros.
    """
    filled = np.array(block, dtype=np.float64, copy=True)
    missing = np.isnan(filled)
    n_observed = filled.shape[1] - missing.sum(axis=1)
    if missing.any():
        with np.errstate(invalid="ignore", divide="ignore"):
            means = np.nansum(filled, axis=1) / n_observed
        means = np.nan_to_num(means, nan=0.0)
        rows, _ = np.nonzero(missing)
        filled[missing] = means[rows]
    return filled, n_observed


def whitening_transform(sigma: np.ndarray) -> np.ndarray:
    """Symmetric inverse square root of an error covariance matrix.

    Right-multiplying sample vectors by the returned matrix W = Sigma^(-1/2)
    turns generalized least squares with error covariance Sigma into
    ordinary least squares.

    Raises:
        NumericError: If Sigma is not positive definite.
    """
    eigenvalues, eigenvectors = scipy.linalg.eigh(sigma)
    tol = eigenvalues.max() * sigma.shape[0] * np.finfo(np.float64).eps
    if eigenvalues.min() <= tol:
        raise NumericError(
            f"Error covariance is not positive definite "
            f"(smallest eigenvalue {eigenvalues.min():.3e})"
        )
    return (eigenvectors / np.sqrt(eigenvalues)) @ eigenvectors.T


class Residualizer:
    """Projects rows onto the orthogonal complement of the covariate space.

    Args:
        covariates: Array (n_covariates, n_samples); may have zero rows, in
            which case residualization is mean-centering.
        transform: Optional (n_samples, n_samples) matrix applied to every
            row (and to the intercept) before projection.

    Raises:
        NumericError: If intercept and covariates are linearly dependent, or
            leave no residual degrees of freedom.
    """

    def __init__(self, covariates: np.ndarray, transform: np.ndarray | None = None):
        covariates = np.asarray(covariates, dtype=np.float64)
        n_samples = covariates.shape[1]
        self.n_covariates = covariates.shape[0]
        self.n_samples = n_samples
        self.transform = transform

        design = np.vstack([np.ones((1, n_samples)), covariates])
        if transform is not None:
            design = design @ transform

        if design.shape[0] >= n_samples:
            raise NumericError(
                f"{self.n_covariates} covariates plus intercept leave no residual "
                f"degrees of freedom with {n_samples} samples"
            )

        q, r, _ = scipy.linalg.qr(design.T, mode="economic", pivoting=True)
        diag = np.abs(np.diag(r))
        tol = diag[0] * max(design.shape) * np.finfo(np.float64).eps
        rank = int((diag > tol).sum())
        if rank < design.shape[0]:
            raise NumericError(
                f"Covariate matrix is rank deficient: rank {rank} for "
                f"{self.n_covariates} covariates plus intercept (duplicate, "
                f"constant or collinear covariates)"
            )
        # Orthonormal basis of the covariate space, shape (n_samples, 1 + n_cvt)
        self.basis = np.ascontiguousarray(q)
        logger.debug(
            f"Residualizer: {self.n_covariates} covariates, {n_samples} samples"
            + (", whitened" if transform is not None else "")
        )

    def residualize(self, rows: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Project rows onto the orthogonal complement of the covariate space.

        Args:
            rows: Array (n_rows, n_samples) without missing values.

        Returns:
            Tuple of (residual rows, residual norms).
        """
        rows = np.asarray(rows, dtype=np.float64)
        if self.transform is not None:
            rows = rows @ self.transform
        resid = rows - (rows @ self.basis) @ self.basis.T
        norms = np.sqrt(np.einsum("ij,ij->i", resid, resid))
        return resid, norms

    def prepare(self, block: np.ndarray) -> PreparedBlock:
        """Impute, residualize and scale rows to unit norm.

        Rows with fewer than two observed cells or (numerically) zero residual
        variance are flagged invalid and zeroed rather than raising, so a
        single degenerate feature never aborts a scan.
        """
        filled, n_observed = impute_row_means(block)
        resid, norms = self.residualize(filled)

        raw = filled if self.transform is None else filled @ self.transform
        raw_norms = np.sqrt(np.einsum("ij,ij->i", raw, raw))
        valid = (n_observed >= 2) & (norms > 0)
        valid &= norms > DEGENERATE_RTOL * raw_norms

        values = np.zeros_like(resid)
        values[valid] = resid[valid] / norms[valid, None]
        return PreparedBlock(values=values, norms=norms, valid=valid)
